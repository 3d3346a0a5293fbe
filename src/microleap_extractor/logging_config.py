import logging
import os
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
NOISY_LOGGERS = ("playwright", "urllib3", "asyncio")


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    """
    Console logs at `level`; the file (which goes into debug bundles) always keeps DEBUG detail.

    Safe to call again: the CLI reconfigures once the config file has been read.
    """
    console_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    handlers: list[logging.Handler] = [console]
    root_level = console_level

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)
        root_level = logging.DEBUG

    logging.basicConfig(level=root_level, format=LOG_FORMAT, handlers=handlers, force=True)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))
