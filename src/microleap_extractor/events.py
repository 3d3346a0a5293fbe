from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from .models import ExtractionResult, Severity


logger = logging.getLogger(__name__)

EventKind = Literal["log_message", "progress_update", "extraction_complete", "extraction_error"]


@dataclass(frozen=True)
class Event:
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Fire-and-forget event fan-out from the walk to whoever is listening (CLI, activity log).
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # A broken listener must never stop the walk.
                logger.warning("Event handler failed for kind=%s", event.kind, exc_info=True)

    def log(self, message: str, severity: Severity = "info") -> None:
        self.publish(Event("log_message", {"message": message, "severity": severity}))

    def progress(self, percent: float, text: str) -> None:
        pct = max(0, min(100, int(round(percent))))
        self.publish(Event("progress_update", {"progress": pct, "message": text}))

    def complete(self, result: ExtractionResult) -> None:
        self.publish(Event("extraction_complete", {"data": result.to_json_dict()}))

    def error(self, message: str) -> None:
        self.publish(Event("extraction_error", {"error": message}))
