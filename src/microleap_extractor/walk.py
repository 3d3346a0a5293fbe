"""
Resumable page-by-page extraction walk.

Each investment's detail page is reached by a full browser navigation, and any in-memory progress is treated as
lost at that point: every step re-reads the continuation record from the store and decides what to do from it
and the current URL. Killing the process mid-walk and calling `resume()` continues at `currentIndex`.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol
from urllib.parse import urlparse

from .config import DashboardConfig, TimeoutsConfig
from .errors import ExtractorError, NoInvestmentsFoundError, WalkStateError
from .events import EventBus
from .models import ExtractionRecord, ExtractionResult, ExtractionState, InvestmentSummary
from .portal.scraper import HtmlTableScraper, PageScraper
from .portal.selectors import DashboardSelectors
from .state import StateStore


logger = logging.getLogger(__name__)


class Navigator(Protocol):
    @property
    def current_url(self) -> str: ...

    def navigate(self, url: str) -> None: ...

    def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool: ...

    def settle(self, delay_ms: int) -> None: ...

    def widen_page_size(self, *, timeout_ms: int) -> bool: ...

    def content(self) -> str: ...

    def save_debug(self, name_prefix: str) -> None: ...


class WalkPhase(str, Enum):
    NOT_STARTED = "not_started"
    LISTING = "listing"
    WALKING = "walking"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PageLoadDecision(str, Enum):
    IGNORE = "ignore"  # no walk in progress
    PROCESS = "process"  # scraped the current investment's page
    RESUME = "resume"  # walk in progress but browser was elsewhere; navigated back on track
    RESTART = "restart"  # continuation record was unusable and has been discarded
    BUSY = "busy"  # another step is already running on this page
    PAUSED = "paused"  # stopped on request; continuation record kept for resume()
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WalkTimings:
    element_wait_ms: int = 10_000
    page_size_wait_ms: int = 5_000
    settle_ms: int = 500

    @classmethod
    def from_config(cls, timeouts: TimeoutsConfig) -> "WalkTimings":
        return cls(
            element_wait_ms=timeouts.element_wait_ms,
            page_size_wait_ms=timeouts.page_size_wait_ms,
            settle_ms=timeouts.settle_ms,
        )


class _Cancelled(Exception):
    pass


class _Paused(Exception):
    pass


def _progress_after(done: int, total: int) -> float:
    # Listing occupies 0-20%, detail pages 20-90%, completion jumps to 100%.
    return 20 + (done / total) * 70 if total else 90


def _same_page(a: str, b: str) -> bool:
    pa, pb = urlparse(a or ""), urlparse(b or "")
    return pa.netloc.lower() == pb.netloc.lower() and pa.path.rstrip("/") == pb.path.rstrip("/")


class ExtractionWalk:
    def __init__(
        self,
        *,
        dashboard: DashboardConfig,
        navigator: Navigator,
        store: StateStore,
        scraper: Optional[PageScraper] = None,
        events: Optional[EventBus] = None,
        selectors: Optional[DashboardSelectors] = None,
        timings: Optional[WalkTimings] = None,
    ) -> None:
        self.dashboard = dashboard
        self.navigator = navigator
        self.store = store
        self.selectors = selectors or DashboardSelectors()
        self.scraper = scraper or HtmlTableScraper(self.selectors)
        self.events = events or EventBus()
        self.timings = timings or WalkTimings()

        self.phase = WalkPhase.NOT_STARTED
        self._cancel = threading.Event()
        self._pause = threading.Event()
        self._step_lock = threading.Lock()
        # True once this walk has seen/written a continuation record; from then on a missing record means
        # someone cancelled us through the store.
        self._owns_state = False
        self._completion_sent = False
        self._resume_target: Optional[str] = None

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def request_cancel(self) -> None:
        self._cancel.set()

    def request_pause(self) -> None:
        """
        Stop at the next step boundary but keep the continuation record, so `resume()` can pick it up later.
        """
        self._pause.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> Optional[ExtractionResult]:
        """
        Start a fresh walk: scrape the list page, then visit every detail page.

        Returns the stored result (None when cancelled before any investment was listed).
        """
        try:
            self._list_investments()
        except _Cancelled:
            return self._finish_cancelled()
        except _Paused:
            return self._finish_paused()
        except Exception as e:
            self._fail(e)
            raise
        return self._drive()

    def resume(self) -> Optional[ExtractionResult]:
        """
        Continue a walk from the persisted continuation record.
        """
        try:
            state = self.store.get_state()
        except WalkStateError as e:
            self._fail(e)
            raise
        if state is None:
            err = WalkStateError("No extraction in progress to resume")
            self._fail(err)
            raise err
        self.events.log(
            f"Resuming extraction at investment {state.current_index + 1}/{state.total}",
            "info",
        )
        return self._drive()

    def on_page_load(self) -> PageLoadDecision:
        """
        Page-load hook: decide from the persisted record and the current URL whether there is work to do.
        """
        if not self._step_lock.acquire(blocking=False):
            logger.info("Extraction step already in progress on this page; skipping duplicate load event")
            return PageLoadDecision.BUSY
        try:
            return self._on_page_load()
        except _Cancelled:
            self._finish_cancelled()
            return PageLoadDecision.CANCELLED
        except _Paused:
            self._finish_paused()
            return PageLoadDecision.PAUSED
        except Exception as e:
            self._fail(e)
            raise
        finally:
            self._step_lock.release()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _drive(self) -> Optional[ExtractionResult]:
        while True:
            decision = self.on_page_load()
            if decision in (PageLoadDecision.PROCESS, PageLoadDecision.RESUME) and self.phase is WalkPhase.WALKING:
                continue
            if decision is PageLoadDecision.RESTART:
                self.events.log("Saved extraction progress was unreadable; starting over", "warning")
                return self.run()
            break
        return self.store.get_result()

    def _list_investments(self) -> None:
        self.phase = WalkPhase.LISTING
        self._owns_state = False
        self._completion_sent = False
        self._resume_target = None

        self.events.log("Opening investment list...")
        self._navigate(self.dashboard.list_url())

        try:
            self.navigator.widen_page_size(timeout_ms=self.timings.page_size_wait_ms)
        except Exception as e:
            logger.warning("Could not set page size: %s", e)
        self._check_cancelled()

        self.events.progress(10, "Extracting investment list...")
        investments = self.scraper.scrape_list(self.navigator.content())
        for inv in investments:
            self.events.log(f"extracting investment list: {inv.id}: {inv.note}: {inv.status}: {inv.amount}")
        self._check_cancelled()

        if not investments:
            raise NoInvestmentsFoundError()
        self.events.progress(15, f"Found {len(investments)} investments. Extracting details...")

        state = ExtractionState(investment_list=investments)
        self._check_cancelled()
        self.store.save_progress(state, ExtractionResult.from_state(state), create=True)
        self._owns_state = True
        self.phase = WalkPhase.WALKING

        first = investments[0]
        self.events.progress(20, f"Navigating to first investment: {first.id}")
        self._navigate(self.dashboard.detail_url(first.id))

    def _on_page_load(self) -> PageLoadDecision:
        self._check_cancelled()
        try:
            state = self.store.get_state()
        except WalkStateError as e:
            logger.warning("Discarding unusable extraction state: %s", e)
            self.store.clear_state()
            self._owns_state = False
            return PageLoadDecision.RESTART
        if state is None:
            return PageLoadDecision.IGNORE

        self._owns_state = True
        self.phase = WalkPhase.WALKING

        current = state.current
        if current is None:
            self._complete(state)
            return PageLoadDecision.PROCESS

        expected = self.dashboard.detail_url(current.id)
        if not _same_page(self.navigator.current_url, expected):
            if self._resume_target == expected:
                # Already tried once and the site sent us elsewhere (e.g. session expired -> login page).
                raise ExtractorError(
                    f"Could not open investment page {expected} (landed on {self.navigator.current_url})"
                )
            logger.info("Not on the expected investment page; navigating to %s", expected)
            self._resume_target = expected
            self._navigate(expected)
            return PageLoadDecision.RESUME

        self._resume_target = None
        self._process_step(state, current)
        return PageLoadDecision.PROCESS

    def _process_step(self, state: ExtractionState, current: InvestmentSummary) -> None:
        total = state.total
        self.events.log(
            f"Starting extraction for investment {current.id} ({state.current_index + 1}/{total})"
        )

        # Readiness: bounded wait for the detail table, then let late content settle.
        self.navigator.wait_for_selector(self.selectors.detail_ready, timeout_ms=self.timings.element_wait_ms)
        self.navigator.settle(self.timings.settle_ms)
        self._check_cancelled()

        record = self._scrape_record(current)
        self._check_cancelled()

        new_state = state.advance(record)
        done = new_state.current_index
        nxt = new_state.current
        if nxt is None:
            self.events.progress(_progress_after(done, total), f"Completed {done}/{total} investments")
            self._complete(new_state)
            return

        if not self.store.save_progress(new_state, ExtractionResult.from_state(new_state)):
            # The record was deleted after the last check: a cancel from another process.
            raise _Cancelled()
        self.events.progress(_progress_after(done, total), f"Completed {done}/{total} investments")

        logger.info("Navigating to next investment: %s", nxt.id)
        self._navigate(self.dashboard.detail_url(nxt.id))

    def _scrape_record(self, current: InvestmentSummary) -> ExtractionRecord:
        self.events.log(f"Extracting details for investment {current.id}")
        try:
            html = self.navigator.content()
            details = self.scraper.scrape_detail(html)
            for key, value in details.items():
                logger.debug("detail %s: %s = %s", current.id, key, value)

            self.events.log(f"Extracting payment schedule for investment {current.id}")
            schedule = self.scraper.scrape_schedule(html)
            for n, payment in enumerate(schedule, start=1):
                self.events.log(
                    f"Payment {n}: {payment.payment_date} - Status: {payment.repayment_status} "
                    f"- Total: {payment.total_settled}"
                )
        except Exception as e:
            # One broken page must not sink the whole run; keep a minimal record and move on.
            logger.warning("Failed to extract investment %s", current.id, exc_info=True)
            self.events.log(f"Error extracting details for {current.id}: {e}", "error")
            self.navigator.save_debug("detail_failed_" + re.sub(r"[^a-zA-Z0-9_-]+", "_", current.id))
            return ExtractionRecord.failed(current, str(e))

        self.events.log(
            f"Found {len(details)} detail fields and {len(schedule)} payment entries for {current.id}",
            "success",
        )
        return ExtractionRecord.merge(current, details, schedule)

    def _complete(self, state: ExtractionState) -> None:
        result = ExtractionResult.from_state(state, status="completed")
        self.store.finish(result)
        self.phase = WalkPhase.COMPLETED

        self.events.progress(100, "Extraction completed successfully!")
        self.events.log(f"Extraction completed! Found {result.total_investments} investments", "success")
        if not self._completion_sent:
            self._completion_sent = True
            self.events.complete(result)

    def _finish_cancelled(self) -> Optional[ExtractionResult]:
        result = self.store.mark_cancelled() if self._owns_state else None
        self.phase = WalkPhase.CANCELLED
        self.events.log("Extraction cancelled", "warning")
        return result

    def _finish_paused(self) -> Optional[ExtractionResult]:
        self.phase = WalkPhase.PAUSED
        self.events.log("Extraction paused; run resume to continue", "warning")
        return self.store.get_result() if self._owns_state else None

    def _fail(self, err: BaseException) -> None:
        self.phase = WalkPhase.FAILED
        if self._owns_state:
            self.store.clear_state()
        message = str(err) or err.__class__.__name__
        logger.error("Extraction failed: %s", message)
        self.events.log(f"Extraction failed: {message}", "error")
        self.events.error(message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._pause.is_set():
            raise _Paused()
        if self._cancel.is_set():
            raise _Cancelled()
        if self._owns_state and self.phase is WalkPhase.WALKING and not self.store.has_state():
            raise _Cancelled()

    def _navigate(self, url: str) -> None:
        self._check_cancelled()
        self.navigator.navigate(url)
