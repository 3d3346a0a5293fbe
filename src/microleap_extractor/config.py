from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_BASE_URL = "https://dashboard.microleapasia.com"
DEFAULT_LOGIN_URL_PATTERN = r"/login(\?|$|#)"


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so most users only need `.env`; YAML remains an optional override.
    """
    return {
        "dashboard": {
            "base_url": os.getenv("DASHBOARD_BASE_URL", DEFAULT_BASE_URL),
        },
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=False),
            "storage_state_path": os.getenv("BROWSER_STORAGE_STATE", "data/dashboard_storage_state.json"),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/extractor.log"),
        },
        "export": {
            "out_dir": os.getenv("EXPORT_DIR", "data"),
        },
    }


class DashboardConfig(BaseModel):
    """
    Where the investment dashboard lives and how its pages are addressed.
    """

    base_url: str = DEFAULT_BASE_URL
    list_path: str = "/investment/me"
    detail_path_template: str = "/investment/{id}"
    login_url_pattern: str = DEFAULT_LOGIN_URL_PATTERN

    @model_validator(mode="after")
    def _normalize_and_validate(self) -> "DashboardConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"dashboard.base_url must be a full URL like '{DEFAULT_BASE_URL}'")

        if "{id}" not in self.detail_path_template:
            raise ValueError("dashboard.detail_path_template must contain an '{id}' placeholder")

        try:
            re.compile(self.login_url_pattern)
        except re.error as e:
            raise ValueError(f"dashboard.login_url_pattern is not a valid regex: {e}") from e

        for name in ("list_path", "detail_path_template"):
            value = getattr(self, name)
            if not value.startswith("/"):
                setattr(self, name, "/" + value)

        self.base_url = base_url
        return self

    @property
    def host(self) -> str:
        return (urlparse(self.base_url).netloc or "").lower()

    def list_url(self) -> str:
        return self.base_url + self.list_path

    def detail_url(self, investment_id: str) -> str:
        return self.base_url + self.detail_path_template.format(id=investment_id)


class BrowserConfig(BaseModel):
    # Login is manual, so the browser is headful unless explicitly asked otherwise.
    headless: bool = False
    slow_mo_ms: int = 0
    storage_state_path: str = "data/dashboard_storage_state.json"
    debug_dir: str = "data/debug"


class TimeoutsConfig(BaseModel):
    control_s: float = Field(default=30.0, gt=0)
    extraction_s: float = Field(default=300.0, gt=0)
    page_load_ms: int = Field(default=15_000, ge=0)
    element_wait_ms: int = Field(default=10_000, ge=0)
    page_size_wait_ms: int = Field(default=5_000, ge=0)
    settle_ms: int = Field(default=500, ge=0)
    login_wait_s: float = Field(default=300.0, ge=0)


class StateConfig(BaseModel):
    db_path: str = "data/state.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/extractor.log"


class ActivityLogConfig(BaseModel):
    max_entries: int = Field(default=100, gt=0)
    duplicate_window_ms: int = Field(default=2_000, ge=0)


class ExportConfig(BaseModel):
    out_dir: str = "data"


class AppConfig(BaseModel):
    dashboard: DashboardConfig = DashboardConfig()
    browser: BrowserConfig = BrowserConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()
    activity_log: ActivityLogConfig = ActivityLogConfig()
    export: ExportConfig = ExportConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
