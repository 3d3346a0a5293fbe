from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from .activity_log import ActivityLog
from .config import AppConfig
from .errors import DashboardNotOpenError, ExtractorError
from .events import Event, EventBus, EventHandler
from .portal.scraper import PageScraper
from .state import StateStore
from .walk import ExtractionWalk, Navigator, WalkTimings


logger = logging.getLogger(__name__)

REQUEST_TIMED_OUT = "Request timed out"


class DashboardBrowser(Navigator, Protocol):
    @property
    def is_started(self) -> bool: ...

    def start(self, *, headless: bool = False, slow_mo_ms: int = 0, force_fresh_session: bool = False) -> None: ...

    def close(self) -> None: ...

    def open_dashboard(self) -> None: ...

    def is_open(self) -> bool: ...

    def looks_logged_in(self) -> bool: ...

    def wait_for_manual_login(self, *, timeout_s: float, poll_ms: int = 1_000) -> bool: ...


@dataclass(frozen=True)
class ControlResponse:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    message: str = ""

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> "ControlResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str) -> "ControlResponse":
        return cls(success=False, error=error)


class Coordinator:
    """
    Control surface for one dashboard session.

    Browser work runs on a single dedicated thread (Playwright's sync API is thread-bound); store-only requests
    run on a second worker so they are answered even while a walk occupies the browser. Every request resolves
    to a `ControlResponse`, including on timeout.
    """

    def __init__(
        self,
        cfg: AppConfig,
        *,
        browser: DashboardBrowser,
        store: StateStore,
        events: Optional[EventBus] = None,
        activity_log: Optional[ActivityLog] = None,
        scraper: Optional[PageScraper] = None,
        force_fresh_session: bool = False,
    ) -> None:
        self.cfg = cfg
        self.browser = browser
        self.store = store
        self.events = events or EventBus()
        self.activity_log = activity_log
        self.scraper = scraper
        self.force_fresh_session = force_fresh_session

        self._browser_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="browser")
        self._control_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="control")

        self._guard = threading.Lock()
        self._extraction_in_progress = False
        self._walk: Optional[ExtractionWalk] = None
        self._extraction_future: Optional[Future] = None
        self._progress = 0

        self.events.subscribe(self._on_event)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        return self.events.subscribe(handler)

    def _on_event(self, event: Event) -> None:
        if event.kind == "log_message" and self.activity_log is not None:
            self.activity_log.add(event.payload.get("message", ""), event.payload.get("severity", "info"))
        elif event.kind == "progress_update":
            self._progress = int(event.payload.get("progress", 0))
        elif event.kind == "extraction_complete":
            self._progress = 100
        elif event.kind == "extraction_error":
            self._progress = 0

    def _await(self, label: str, future: Future, *, timeout_s: float) -> ControlResponse:
        try:
            return future.result(timeout=timeout_s)
        except FutureTimeoutError:
            logger.warning("Request %s timed out after %.0fs", label, timeout_s)
            return ControlResponse.fail(REQUEST_TIMED_OUT)
        except ExtractorError as e:
            return ControlResponse.fail(str(e))
        except Exception as e:
            logger.error("Request %s failed", label, exc_info=True)
            return ControlResponse.fail(str(e) or e.__class__.__name__)

    def _request(
        self,
        label: str,
        fn: Callable[[], ControlResponse],
        *,
        browser: bool = True,
        timeout_s: Optional[float] = None,
    ) -> ControlResponse:
        executor = self._browser_executor if browser else self._control_executor
        timeout = self.cfg.timeouts.control_s if timeout_s is None else timeout_s
        logger.debug("Request %s (timeout=%.0fs)", label, timeout)
        return self._await(label, executor.submit(fn), timeout_s=timeout)

    def _ensure_browser(self) -> None:
        if not self.browser.is_started:
            self.browser.start(
                headless=self.cfg.browser.headless,
                slow_mo_ms=self.cfg.browser.slow_mo_ms,
                force_fresh_session=self.force_fresh_session,
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def open_dashboard(self) -> ControlResponse:
        def _op() -> ControlResponse:
            self._ensure_browser()
            self.browser.open_dashboard()
            logged_in = self.browser.looks_logged_in()
            return ControlResponse.ok(
                "Dashboard opened successfully" if logged_in else "Please log in manually",
                is_logged_in=logged_in,
            )

        return self._request("open_dashboard", _op)

    def check_connection(self) -> ControlResponse:
        def _op() -> ControlResponse:
            is_open = self.browser.is_started and self.browser.is_open()
            return ControlResponse.ok("Dashboard tab found" if is_open else "Dashboard not open", is_open=is_open)

        return self._request("check_connection", _op)

    def check_login(self) -> ControlResponse:
        def _op() -> ControlResponse:
            if not self.browser.is_started or not self.browser.is_open():
                raise DashboardNotOpenError()
            logged_in = self.browser.looks_logged_in()
            return ControlResponse.ok(
                "Logged in successfully" if logged_in else "Please log in first",
                is_logged_in=logged_in,
            )

        return self._request("check_login", _op)

    def wait_for_login(self, timeout_s: Optional[float] = None) -> ControlResponse:
        wait_s = self.cfg.timeouts.login_wait_s if timeout_s is None else float(timeout_s)

        def _op() -> ControlResponse:
            if not self.browser.is_started or not self.browser.is_open():
                raise DashboardNotOpenError()
            logged_in = self.browser.wait_for_manual_login(timeout_s=wait_s)
            return ControlResponse.ok(
                "Logged in successfully" if logged_in else "Still on the login page",
                is_logged_in=logged_in,
            )

        return self._request("wait_for_login", _op, timeout_s=wait_s + self.cfg.timeouts.control_s)

    def start_extraction(self, *, resume: bool = False) -> ControlResponse:
        with self._guard:
            if self._extraction_in_progress:
                logger.info("Extraction already in progress, ignoring duplicate start")
                return ControlResponse.fail("Extraction already in progress")
            self._extraction_in_progress = True
        self._progress = 0

        walk = ExtractionWalk(
            dashboard=self.cfg.dashboard,
            navigator=self.browser,
            store=self.store,
            scraper=self.scraper,
            events=self.events,
            timings=WalkTimings.from_config(self.cfg.timeouts),
        )
        self._walk = walk

        def _op() -> ControlResponse:
            self._ensure_browser()
            if not self.browser.is_open():
                self.browser.open_dashboard()
            result = walk.resume() if resume else walk.run()
            if result is None:
                return ControlResponse.ok("Extraction cancelled", status="cancelled", count=0)
            data = result.to_json_dict()
            message = "Extraction cancelled" if result.status == "cancelled" else "Extraction finished"
            return ControlResponse.ok(message, result=data, count=len(result.investments))

        try:
            future = self._browser_executor.submit(_op)
        except Exception:
            self._release_guard()
            raise
        self._extraction_future = future
        # The guard is held until the walk really stops, even if the caller gives up waiting.
        future.add_done_callback(lambda _f: self._release_guard())
        return self._await("start_extraction", future, timeout_s=self.cfg.timeouts.extraction_s)

    def _release_guard(self) -> None:
        with self._guard:
            self._extraction_in_progress = False

    @property
    def extraction_in_progress(self) -> bool:
        with self._guard:
            return self._extraction_in_progress

    def wait_for_extraction(self, *, poll_s: float = 1.0) -> ControlResponse:
        """
        Block until the last started walk stops and return its outcome.

        Used after `start_extraction` gave up waiting: the walk itself keeps going on the browser thread.
        Waits in `poll_s` slices so Ctrl+C stays responsive.
        """
        future = self._extraction_future
        if future is None:
            return ControlResponse.fail("No active extraction")
        while not future.done():
            wait_futures([future], timeout=poll_s, return_when=FIRST_COMPLETED)
        return self._await("wait_for_extraction", future, timeout_s=0)

    def get_progress(self) -> ControlResponse:
        return self._request(
            "get_progress",
            lambda: ControlResponse.ok(progress=self._progress, in_progress=self.extraction_in_progress),
            browser=False,
        )

    def get_result(self) -> ControlResponse:
        def _op() -> ControlResponse:
            result = self.store.get_result()
            if result is None:
                return ControlResponse.fail("No stored data found")
            return ControlResponse.ok(result=result.to_json_dict())

        return self._request("get_result", _op, browser=False)

    def clear_result(self) -> ControlResponse:
        def _op() -> ControlResponse:
            self.store.clear_all()
            self._progress = 0
            return ControlResponse.ok("Cleared all stored extraction data")

        return self._request("clear_result", _op, browser=False)

    def cancel_extraction(self) -> ControlResponse:
        def _op() -> ControlResponse:
            walk = self._walk
            had_state = self.store.has_state()
            if walk is not None:
                walk.request_cancel()
            self.store.mark_cancelled()
            self._progress = 0
            if had_state or self.extraction_in_progress:
                return ControlResponse.ok("Extraction cancelled")
            return ControlResponse.ok("No active extraction to cancel")

        return self._request("cancel_extraction", _op, browser=False)

    def close(self) -> None:
        # An interrupted walk keeps its continuation record for `resume`.
        walk = self._walk
        if walk is not None:
            walk.request_pause()

        def _op() -> ControlResponse:
            if self.browser.is_started:
                self.browser.close()
            return ControlResponse.ok()

        self._request("close", _op)
        self._browser_executor.shutdown(wait=False)
        self._control_executor.shutdown(wait=False)
