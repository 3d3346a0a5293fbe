from __future__ import annotations

import json
import logging
import shutil
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .errors import WalkStateError
from .models import ExtractionResult, ExtractionState, LogEntry


logger = logging.getLogger(__name__)

EXTRACTION_STATE_KEY = "extraction_state"
EXTRACTION_RESULT_KEY = "extraction_result"
LOG_HISTORY_KEY = "log_history"
DUPLICATE_TRACKING_KEY = "duplicate_tracking"


class StateStore:
    """
    JSON key-value records in SQLite: walk continuation, user-facing result and activity log.

    The connection is shared between the coordinator's worker threads, so every access goes through a lock.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")
        self._lock = threading.RLock()

        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "StateStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        A walk's continuation record lives here, so an unreadable file is set aside (not deleted) and the
        copy taken after the last completed walk is used instead.
        """
        if not self.db_path.exists():
            return self._connect()

        conn = self._open_checked()
        if conn is not None:
            return conn

        logger.warning("State DB %s failed its integrity check; moving it aside", self.db_path)
        self._quarantine_db_files()
        if not self._backup_path.exists():
            logger.warning("No state DB backup at %s; starting with an empty store", self._backup_path)
            return self._connect()

        try:
            shutil.copy2(self._backup_path, self.db_path)
        except OSError:
            logger.warning("Could not copy state DB backup; starting with an empty store", exc_info=True)
            return self._connect()
        conn = self._open_checked()
        if conn is None:
            logger.warning("State DB backup is unreadable too; starting with an empty store")
            self._quarantine_db_files()
            return self._connect()
        logger.warning("Restored state DB from %s (progress since the last completed walk is lost)", self._backup_path)
        return conn

    def _open_checked(self) -> Optional[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error:
            return None
        try:
            row = conn.execute("PRAGMA quick_check;").fetchone()
            if row and row[0] == "ok":
                return conn
        except sqlite3.DatabaseError:
            logger.debug("State DB %s is not readable", self.db_path, exc_info=True)
        conn.close()
        return None

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for suffix in ("", "-wal", "-shm"):
            p = Path(str(self.db_path) + suffix)
            if not p.exists():
                continue
            try:
                p.replace(p.with_name(f"{p.name}.corrupt-{stamp}"))
            except OSError:
                logger.debug("Could not move aside %s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return
        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("State DB backup failed", exc_info=True)

    def backup(self) -> None:
        """
        Snapshot the store to `<db_path>.bak` through SQLite's online backup, swapped in atomically.
        """
        out = self._backup_path
        tmp = out.with_name(out.name + ".tmp")
        tmp.unlink(missing_ok=True)

        dst = sqlite3.connect(tmp)
        try:
            with self._lock:
                self._conn.backup(dst)
        finally:
            dst.close()
        tmp.replace(out)

    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Raw JSON records
    # ------------------------------------------------------------------

    def _get_json(self, key: str) -> Optional[Any]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM records WHERE key = ?;", (key,)).fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def _put(self, key: str, value: Any) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            """
            INSERT INTO records(key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
            """,
            (key, json.dumps(value), now),
        )

    def _delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM records WHERE key = ?;", (key,))

    def _write(self, **records: Any) -> None:
        """
        Apply puts (value) and deletes (None) in a single transaction.
        """
        with self._lock:
            with self._conn:
                for key, value in records.items():
                    if value is None:
                        self._delete(key)
                    else:
                        self._put(key, value)

    # ------------------------------------------------------------------
    # Extraction state (walk continuation)
    # ------------------------------------------------------------------

    def has_state(self) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM records WHERE key = ? LIMIT 1;", (EXTRACTION_STATE_KEY,)
            ).fetchone()
        return row is not None

    def get_state(self) -> Optional[ExtractionState]:
        """
        Raises WalkStateError when a record exists but cannot be decoded into a consistent state.
        """
        try:
            raw = self._get_json(EXTRACTION_STATE_KEY)
        except json.JSONDecodeError as e:
            raise WalkStateError(f"Extraction state is not valid JSON: {e}") from e
        if raw is None:
            return None
        try:
            return ExtractionState.model_validate(raw)
        except ValidationError as e:
            raise WalkStateError(f"Extraction state is inconsistent: {e}") from e

    def save_state(self, state: ExtractionState) -> None:
        self._write(**{EXTRACTION_STATE_KEY: state.to_json_dict()})

    def clear_state(self) -> None:
        self._write(**{EXTRACTION_STATE_KEY: None})

    # ------------------------------------------------------------------
    # Extraction result (user-facing)
    # ------------------------------------------------------------------

    def get_result(self) -> Optional[ExtractionResult]:
        raw = self._get_json(EXTRACTION_RESULT_KEY)
        if raw is None:
            return None
        return ExtractionResult.model_validate(raw)

    def save_result(self, result: ExtractionResult) -> None:
        self._write(**{EXTRACTION_RESULT_KEY: result.to_json_dict()})

    def clear_result(self) -> None:
        self._write(**{EXTRACTION_RESULT_KEY: None})

    # ------------------------------------------------------------------
    # Combined writes
    # ------------------------------------------------------------------

    def save_progress(self, state: ExtractionState, result: ExtractionResult, *, create: bool = False) -> bool:
        """
        Persist the continuation record and the result it produced together.

        Unless `create` is set, the record is only rewritten if it still exists; returns False (and writes
        nothing) when it was deleted in the meantime, i.e. the walk was cancelled through the store.
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self._conn:
                if create:
                    self._put(EXTRACTION_STATE_KEY, state.to_json_dict())
                else:
                    cur = self._conn.execute(
                        "UPDATE records SET value = ?, updated_at = ? WHERE key = ?;",
                        (json.dumps(state.to_json_dict()), now, EXTRACTION_STATE_KEY),
                    )
                    if cur.rowcount == 0:
                        return False
                self._put(EXTRACTION_RESULT_KEY, result.to_json_dict())
        return True

    def finish(self, result: ExtractionResult) -> None:
        """
        Store the final result and drop the continuation record in one step.
        """
        self._write(
            **{
                EXTRACTION_STATE_KEY: None,
                EXTRACTION_RESULT_KEY: result.to_json_dict(),
            }
        )
        if result.status == "completed":
            self._maybe_backup(if_missing=False)

    def mark_cancelled(self) -> Optional[ExtractionResult]:
        """
        Delete the continuation record and flip an in-progress result to `cancelled`.

        Returns the (possibly updated) stored result, if any.
        """
        with self._lock:
            result = self.get_result()
            if result is not None and result.status == "in_progress":
                result = result.as_cancelled()
                self._write(
                    **{
                        EXTRACTION_STATE_KEY: None,
                        EXTRACTION_RESULT_KEY: result.to_json_dict(),
                    }
                )
            else:
                self._write(**{EXTRACTION_STATE_KEY: None})
        return result

    def clear_all(self, *, include_logs: bool = False) -> None:
        records: dict[str, Any] = {EXTRACTION_STATE_KEY: None, EXTRACTION_RESULT_KEY: None}
        if include_logs:
            records[LOG_HISTORY_KEY] = None
            records[DUPLICATE_TRACKING_KEY] = None
        self._write(**records)

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def get_log_history(self) -> list[LogEntry]:
        raw = self._get_json(LOG_HISTORY_KEY) or []
        out: list[LogEntry] = []
        for item in raw:
            try:
                out.append(LogEntry.model_validate(item))
            except ValidationError:
                logger.debug("Skipping malformed log entry: %r", item)
        return out

    def save_log_history(self, entries: list[LogEntry]) -> None:
        self._write(**{LOG_HISTORY_KEY: [e.model_dump() for e in entries]})

    def get_duplicate_tracking(self) -> dict[str, float]:
        raw = self._get_json(DUPLICATE_TRACKING_KEY) or {}
        return {str(k): float(v) for k, v in raw.items()}

    def save_log_entry(self, entries: list[LogEntry], tracking: dict[str, float]) -> None:
        self._write(
            **{
                LOG_HISTORY_KEY: [e.model_dump() for e in entries],
                DUPLICATE_TRACKING_KEY: tracking,
            }
        )

    def save_duplicate_tracking(self, tracking: dict[str, float]) -> None:
        self._write(**{DUPLICATE_TRACKING_KEY: tracking})

    def clear_log_history(self) -> None:
        self._write(**{LOG_HISTORY_KEY: None, DUPLICATE_TRACKING_KEY: None})
