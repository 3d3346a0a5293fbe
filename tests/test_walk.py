from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from microleap_extractor.config import DashboardConfig
from microleap_extractor.errors import ExtractorError, NoInvestmentsFoundError, WalkStateError
from microleap_extractor.events import Event, EventBus
from microleap_extractor.models import ExtractionResult, ExtractionState
from microleap_extractor.state import EXTRACTION_STATE_KEY, StateStore
from microleap_extractor.walk import ExtractionWalk, PageLoadDecision, WalkPhase, WalkTimings


BASE = "https://dash.test"
DASHBOARD = DashboardConfig(base_url=BASE)


class HostKilled(BaseException):
    """Stands in for the process dying mid-navigation."""


def _list_page(ids: list[str]) -> str:
    rows = "".join(
        f"<tr><td>{n}</td><td>{i}</td><td>note {i}</td><td>Active</td><td>RM {n}00.00</td></tr>"
        for n, i in enumerate(ids, start=1)
    )
    return f"<html><body><table><tbody>{rows}</tbody></table></body></html>"


def _detail_page(inv_id: str, *, payments: int) -> str:
    pay_rows = "".join(
        "<tr>" + "".join(f"<td>{c}</td>" for c in [n, f"Month {n} (0{n}/01/2024)", "Paid"] + ["1.00"] * 8) + "</tr>"
        for n in range(1, payments + 1)
    )
    schedule = f"<table><tbody>{pay_rows}</tbody></table>" if payments else ""
    return (
        "<html><body><table>"
        f"<tr><td>Investment ID</td><td>:</td><td>{inv_id}</td></tr>"
        "<tr><td>Total Gross Return (%)</td><td>:</td><td>12.5</td></tr>"
        f"</table>{schedule}</body></html>"
    )


class FakeNavigator:
    def __init__(self, pages: dict[str, str], *, redirects: Optional[dict[str, str]] = None) -> None:
        self.pages = pages
        self.redirects = redirects or {}
        self.url = ""
        self.visits: list[str] = []
        self.debug_saves: list[str] = []
        # url -> callback run when that url is navigated to
        self.on_navigate: dict[str, Callable[[], None]] = {}

    @property
    def current_url(self) -> str:
        return self.url

    def navigate(self, url: str) -> None:
        self.visits.append(url)
        hook = self.on_navigate.get(url)
        if hook is not None:
            hook()
        self.url = self.redirects.get(url, url)

    def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool:
        return "<table" in self.content()

    def settle(self, delay_ms: int) -> None:
        return None

    def widen_page_size(self, *, timeout_ms: int) -> bool:
        return False

    def content(self) -> str:
        return self.pages.get(self.url, "<html><body></body></html>")

    def save_debug(self, name_prefix: str) -> None:
        self.debug_saves.append(name_prefix)


def _site(details: dict[str, str]) -> dict[str, str]:
    pages = {DASHBOARD.list_url(): _list_page(list(details))}
    for inv_id, html in details.items():
        pages[DASHBOARD.detail_url(inv_id)] = html
    return pages


def _default_site() -> dict[str, str]:
    return _site(
        {
            "INV-001": _detail_page("INV-001", payments=2),
            "INV-002": _detail_page("INV-002", payments=0),
        }
    )


def _walk(nav: FakeNavigator, store: StateStore, events: Optional[list[Event]] = None) -> ExtractionWalk:
    bus = EventBus()
    if events is not None:
        bus.subscribe(events.append)
    return ExtractionWalk(
        dashboard=DASHBOARD,
        navigator=nav,
        store=store,
        events=bus,
        timings=WalkTimings(element_wait_ms=0, page_size_wait_ms=0, settle_ms=0),
    )


@pytest.fixture()
def store(tmp_path: Path):
    s = StateStore(str(tmp_path / "state.db"))
    try:
        yield s
    finally:
        s.close()


def test_walk_end_to_end(store: StateStore) -> None:
    events: list[Event] = []
    nav = FakeNavigator(_default_site())
    walk = _walk(nav, store, events)

    result = walk.run()

    assert result is not None
    assert result.status == "completed"
    assert result.total_investments == 2
    assert result.investments_with_schedules == 1
    assert result.completion_date is not None
    assert walk.phase is WalkPhase.COMPLETED
    assert store.has_state() is False

    first, second = result.investments
    assert first.id == "INV-001"
    assert first.note == "note INV-001"
    assert first.model_extra["total_gross_return"] == "12.5"
    assert [p.payment_date for p in first.payment_schedule] == ["01/01/2024", "02/01/2024"]
    assert second.payment_schedule == []

    assert nav.visits == [
        DASHBOARD.list_url(),
        DASHBOARD.detail_url("INV-001"),
        DASHBOARD.detail_url("INV-002"),
    ]

    progress = [e.payload["progress"] for e in events if e.kind == "progress_update"]
    assert progress == [10, 15, 20, 55, 90, 100]
    assert [e.kind for e in events].count("extraction_complete") == 1
    complete = next(e for e in events if e.kind == "extraction_complete")
    assert complete.payload["data"]["total_investments"] == 2


def test_resume_after_crash_matches_uninterrupted_run(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "clean.db")) as clean_store:
        clean = _walk(FakeNavigator(_default_site()), clean_store).run()
    assert clean is not None

    with StateStore(str(tmp_path / "crash.db")) as store:
        nav = FakeNavigator(_default_site())

        def _die() -> None:
            raise HostKilled()

        nav.on_navigate[DASHBOARD.detail_url("INV-002")] = _die
        with pytest.raises(HostKilled):
            _walk(nav, store).run()

        state = store.get_state()
        assert state is not None
        assert state.current_index == 1

        resumed = _walk(FakeNavigator(_default_site()), store).resume()

    assert resumed is not None
    assert resumed.status == "completed"
    assert [inv.to_json_dict() for inv in resumed.investments] == [inv.to_json_dict() for inv in clean.investments]


def test_resume_without_state_raises(store: StateStore) -> None:
    walk = _walk(FakeNavigator(_default_site()), store)
    with pytest.raises(WalkStateError):
        walk.resume()
    assert walk.phase is WalkPhase.FAILED


def test_cancel_request_stops_walk_and_keeps_partial_result(store: StateStore) -> None:
    nav = FakeNavigator(_default_site())
    walk = _walk(nav, store)
    nav.on_navigate[DASHBOARD.detail_url("INV-002")] = walk.request_cancel

    result = walk.run()

    assert walk.phase is WalkPhase.CANCELLED
    assert result is not None
    assert result.status == "cancelled"
    assert result.cancelled_at is not None
    assert [inv.id for inv in result.investments] == ["INV-001"]
    assert store.has_state() is False


def test_cancel_through_store_stops_walk(store: StateStore) -> None:
    nav = FakeNavigator(_default_site())
    walk = _walk(nav, store)
    # what a `cancel` from another process does
    nav.on_navigate[DASHBOARD.detail_url("INV-002")] = lambda: store.mark_cancelled()

    result = walk.run()

    assert walk.phase is WalkPhase.CANCELLED
    assert result is not None
    assert result.status == "cancelled"
    assert len(result.investments) == 1


class CancelledBeforeSaveStore(StateStore):
    """Another process cancels right before the first progress write."""

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path)
        self.cancelled_once = False

    def save_progress(self, state: ExtractionState, result: ExtractionResult, *, create: bool = False) -> bool:
        if not create and not self.cancelled_once:
            self.cancelled_once = True
            self.mark_cancelled()
        return super().save_progress(state, result, create=create)


def test_cancel_landing_before_progress_write_is_honoured(tmp_path: Path) -> None:
    nav = FakeNavigator(_default_site())
    with CancelledBeforeSaveStore(str(tmp_path / "state.db")) as store:
        walk = _walk(nav, store)

        result = walk.run()

        assert walk.phase is WalkPhase.CANCELLED
        assert result is not None
        assert result.status == "cancelled"
        assert result.investments == []
        assert store.has_state() is False
        stored = store.get_result()
        assert stored is not None and stored.status == "cancelled"
    assert DASHBOARD.detail_url("INV-001") in nav.visits
    assert DASHBOARD.detail_url("INV-002") not in nav.visits


def test_cancel_during_listing_leaves_store_untouched(store: StateStore) -> None:
    nav = FakeNavigator(_default_site())
    walk = _walk(nav, store)
    nav.on_navigate[DASHBOARD.list_url()] = walk.request_cancel

    assert walk.run() is None
    assert walk.phase is WalkPhase.CANCELLED
    assert store.get_result() is None


def test_pause_keeps_state_for_resume(store: StateStore) -> None:
    nav = FakeNavigator(_default_site())
    walk = _walk(nav, store)
    nav.on_navigate[DASHBOARD.detail_url("INV-002")] = walk.request_pause

    paused = walk.run()

    assert walk.phase is WalkPhase.PAUSED
    assert paused is not None
    assert paused.status == "in_progress"
    assert store.has_state() is True

    result = _walk(FakeNavigator(_default_site()), store).resume()
    assert result is not None
    assert result.status == "completed"
    assert result.total_investments == 2


def test_failed_detail_page_records_error_and_continues(store: StateStore) -> None:
    site = _site(
        {
            "INV-001": "<html><body><p>Something went wrong</p></body></html>",
            "INV-002": _detail_page("INV-002", payments=1),
        }
    )
    nav = FakeNavigator(site)

    result = _walk(nav, store).run()

    assert result is not None
    assert result.status == "completed"
    assert result.total_investments == 2
    assert result.investments_with_schedules == 1

    broken = result.investments[0].to_json_dict()
    assert broken["id"] == "INV-001"
    assert broken["payment_schedule"] == []
    assert "No tables found" in broken["error"]
    assert "error" not in result.investments[1].to_json_dict()
    assert nav.debug_saves == ["detail_failed_INV-001"]


def test_empty_list_fails(store: StateStore) -> None:
    events: list[Event] = []
    nav = FakeNavigator({DASHBOARD.list_url(): _list_page([])})
    walk = _walk(nav, store, events)

    with pytest.raises(NoInvestmentsFoundError):
        walk.run()

    assert walk.phase is WalkPhase.FAILED
    assert store.has_state() is False
    assert store.get_result() is None
    errors = [e.payload["error"] for e in events if e.kind == "extraction_error"]
    assert errors == ["No investments found in the list"]


def test_duplicate_page_load_is_ignored_while_step_runs(store: StateStore) -> None:
    nav = FakeNavigator(_default_site())
    walk = _walk(nav, store)
    seen: list[PageLoadDecision] = []
    nav.on_navigate[DASHBOARD.detail_url("INV-002")] = lambda: seen.append(walk.on_page_load())

    result = walk.run()

    assert seen == [PageLoadDecision.BUSY]
    assert result is not None and result.total_investments == 2


def test_page_load_without_walk_is_ignored(store: StateStore) -> None:
    walk = _walk(FakeNavigator(_default_site()), store)
    assert walk.on_page_load() is PageLoadDecision.IGNORE


def test_unreadable_state_is_discarded(store: StateStore) -> None:
    store._write(**{EXTRACTION_STATE_KEY: {"investmentList": "nope"}})
    walk = _walk(FakeNavigator(_default_site()), store)

    assert walk.on_page_load() is PageLoadDecision.RESTART
    assert store.has_state() is False


def test_redirect_away_from_detail_page_fails(store: StateStore) -> None:
    nav = FakeNavigator(
        _default_site(),
        redirects={DASHBOARD.detail_url("INV-002"): f"{BASE}/login?next=/investment/INV-002"},
    )
    walk = _walk(nav, store)

    with pytest.raises(ExtractorError, match="Could not open investment page"):
        walk.run()

    assert walk.phase is WalkPhase.FAILED
    assert store.has_state() is False
    # first landing plus one retry
    assert nav.visits.count(DASHBOARD.detail_url("INV-002")) == 2
