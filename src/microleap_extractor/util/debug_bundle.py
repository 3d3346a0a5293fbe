from __future__ import annotations

import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    label: str = "",
    extra_paths: Optional[Iterable[str]] = None,
) -> Path:
    """
    Zip the page captures under `debug_dir` together with the log file, for attaching to a bug report.

    The browser session file, the state DB and exports are never included: they hold cookies and
    investment data.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    tag = (label or "").strip().lower().replace(" ", "_")
    out_path = out_root / (f"debug_bundle_{tag}_{stamp}.zip" if tag else f"debug_bundle_{stamp}.zip")

    dbg = Path(debug_dir)
    log = Path(log_file) if log_file else None

    def _add(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        try:
            if file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # a capture can vanish between listing and zipping
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if log is not None:
            _add(z, log, arcname=log.name)

        if dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if p.is_file():
                    _add(z, p, arcname=str(Path("debug") / p.relative_to(dbg)))

        for raw in extra_paths or ():
            p = Path(raw)
            if p.is_file():
                _add(z, p, arcname=str(Path("extra") / p.name))
            elif p.is_dir():
                for f in sorted(p.rglob("*")):
                    if f.is_file():
                        _add(z, f, arcname=str(Path("extra") / p.name / f.relative_to(p)))

    return out_path
