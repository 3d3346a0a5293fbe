from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from microleap_extractor.errors import WalkStateError
from microleap_extractor.models import (
    ExtractionRecord,
    ExtractionResult,
    ExtractionState,
    InvestmentSummary,
    PaymentScheduleEntry,
)
from microleap_extractor.state import EXTRACTION_STATE_KEY, StateStore


def _state(n: int = 3, done: int = 0) -> ExtractionState:
    invs = [InvestmentSummary(id=f"INV-{i}", note=f"n{i}", status="Active", amount="100") for i in range(n)]
    state = ExtractionState(investment_list=invs)
    for inv in invs[:done]:
        state = state.advance(ExtractionRecord.merge(inv, {"tenure": "6"}, [PaymentScheduleEntry(payment_date="d")]))
    return state


def test_state_creates_backup(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    s = StateStore(str(db_path))
    try:
        s.save_state(_state())
    finally:
        s.close()

    bak = tmp_path / "state.db.bak"
    assert db_path.exists()
    assert bak.exists()
    assert bak.stat().st_size > 0


def test_state_restores_from_backup_when_db_corrupted(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"

    s1 = StateStore(str(db_path))
    try:
        state = _state(2, done=2)
        s1.finish(ExtractionResult.from_state(state, status="completed"))
    finally:
        s1.close()

    db_path.write_bytes(b"not a sqlite db")

    s2 = StateStore(str(db_path))
    try:
        restored = s2.get_result()
        assert restored is not None
        assert restored.status == "completed"
        assert restored.total_investments == 2
    finally:
        s2.close()

    quarantined = list(tmp_path.glob("state.db.corrupt-*"))
    assert quarantined, "expected quarantined corrupted db file to be created"


def test_save_progress_round_trips_state_and_result(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        state = _state(3, done=1)
        s.save_progress(state, ExtractionResult.from_state(state), create=True)

        loaded = s.get_state()
        assert loaded is not None
        assert loaded.current_index == 1
        assert loaded.total == 3
        assert loaded.detailed_investments[0].model_extra == {"tenure": "6"}

        result = s.get_result()
        assert result is not None
        assert result.status == "in_progress"
        assert result.progress == 1
        assert result.total == 3
        assert result.total_investments == 1
        assert result.investments_with_schedules == 1


def test_state_is_persisted_with_camel_case_keys(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    with StateStore(str(db_path)) as s:
        s.save_state(_state(1))

    conn = sqlite3.connect(db_path)
    try:
        (value,) = conn.execute("SELECT value FROM records WHERE key = ?;", (EXTRACTION_STATE_KEY,)).fetchone()
    finally:
        conn.close()
    for key in ("investmentList", "currentIndex", "detailedInvestments", "startTime"):
        assert key in value


def test_inconsistent_state_raises(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        s._write(**{EXTRACTION_STATE_KEY: {"investmentList": [{"id": "a"}], "currentIndex": 1, "detailedInvestments": []}})
        with pytest.raises(WalkStateError):
            s.get_state()

        s._write(**{EXTRACTION_STATE_KEY: {"investmentList": [], "currentIndex": 5, "detailedInvestments": []}})
        with pytest.raises(WalkStateError):
            s.get_state()


def test_finish_drops_state(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        state = _state(1, done=1)
        s.save_progress(state, ExtractionResult.from_state(state), create=True)
        s.finish(ExtractionResult.from_state(state, status="completed"))

        assert s.has_state() is False
        result = s.get_result()
        assert result is not None
        assert result.status == "completed"
        assert result.completion_date is not None


def test_mark_cancelled_keeps_partial_investments(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        state = _state(3, done=2)
        s.save_progress(state, ExtractionResult.from_state(state), create=True)

        result = s.mark_cancelled()
        assert result is not None
        assert result.status == "cancelled"
        assert result.cancelled_at is not None
        assert len(result.investments) == 2
        assert s.has_state() is False

        stored = s.get_result()
        assert stored is not None and stored.status == "cancelled"


def test_mark_cancelled_leaves_completed_result_alone(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        s.finish(ExtractionResult.from_state(_state(1, done=1), status="completed"))

        result = s.mark_cancelled()
        assert result is not None
        assert result.status == "completed"
        assert result.cancelled_at is None


def test_mark_cancelled_with_nothing_stored(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        assert s.mark_cancelled() is None


def test_clear_all_keeps_logs_unless_asked(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        state = _state(1)
        s.save_progress(state, ExtractionResult.from_state(state), create=True)
        s.save_duplicate_tracking({"x_info": 1.0})

        s.clear_all()
        assert s.has_state() is False
        assert s.get_result() is None
        assert s.get_duplicate_tracking() == {"x_info": 1.0}

        s.clear_all(include_logs=True)
        assert s.get_duplicate_tracking() == {}


def test_save_progress_does_not_recreate_deleted_state(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        state = _state(3, done=1)
        assert s.save_progress(state, ExtractionResult.from_state(state), create=True) is True
        s.mark_cancelled()

        later = _state(3, done=2)
        assert s.save_progress(later, ExtractionResult.from_state(later)) is False

        assert s.has_state() is False
        result = s.get_result()
        assert result is not None
        assert result.status == "cancelled"
        assert len(result.investments) == 1


def test_save_progress_updates_existing_state(tmp_path: Path) -> None:
    with StateStore(str(tmp_path / "state.db")) as s:
        first = _state(3, done=1)
        s.save_progress(first, ExtractionResult.from_state(first), create=True)

        later = _state(3, done=2)
        assert s.save_progress(later, ExtractionResult.from_state(later)) is True

        loaded = s.get_state()
        assert loaded is not None and loaded.current_index == 2
        result = s.get_result()
        assert result is not None and result.total_investments == 2
