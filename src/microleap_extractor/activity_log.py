from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .models import LogEntry, Severity
from .state import StateStore


logger = logging.getLogger(__name__)

_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ActivityLog:
    """
    Persisted, capped activity history shown to the user.

    Identical (message, severity) pairs within `duplicate_window_ms` are dropped. The tracking map lives in the
    store so suppression also holds across process restarts.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        max_entries: int = 100,
        duplicate_window_ms: int = 2_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_entries = int(max_entries)
        self.duplicate_window_ms = int(duplicate_window_ms)
        self._clock = clock
        self._lock = threading.Lock()

    def add(self, message: str, severity: Severity = "info") -> bool:
        """
        Record a message. Returns False when it was suppressed as a duplicate.
        """
        with self._lock:
            now_ms = self._clock() * 1000.0
            tracking = {
                k: v for k, v in self.store.get_duplicate_tracking().items() if now_ms - v <= self.duplicate_window_ms
            }

            key = f"{message}_{severity}"
            last_seen = tracking.get(key)
            if last_seen is not None and now_ms - last_seen < self.duplicate_window_ms:
                logger.debug("Duplicate log suppressed (%.0fms ago): %s", now_ms - last_seen, message)
                self.store.save_duplicate_tracking(tracking)
                return False
            tracking[key] = now_ms

            stamp = datetime.fromtimestamp(now_ms / 1000.0)
            entry = LogEntry(
                timestamp=stamp.isoformat(timespec="seconds"),
                message=message,
                severity=severity,
                date=stamp.date().isoformat(),
            )
            history = self.store.get_log_history()
            history.append(entry)
            if len(history) > self.max_entries:
                history = history[-self.max_entries :]
            self.store.save_log_entry(history, tracking)

        logger.log(_LEVELS.get(severity, logging.INFO), "%s", message)
        return True

    def history(self, limit: Optional[int] = None) -> list[LogEntry]:
        entries = self.store.get_log_history()
        if limit is not None and limit >= 0:
            return entries[-limit:] if limit else []
        return entries

    def clear(self) -> None:
        self.store.clear_log_history()
        self.add("Log history cleared.")
