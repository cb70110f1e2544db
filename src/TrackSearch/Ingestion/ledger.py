# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.Ingestion.ledger",
#   "purpose": "SQLite run ledger with first-writer-wins step memoization",
#   "sections": [
#     {"id": "stepledger", "name": "StepLedger", "anchor": "class-stepledger", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""SQLite-backed run ledger for track ingestion.

This module records every ingestion run and the memoized value of each
completed step. It guarantees:

- **Memoization**: ``step_results`` rows are inserted with ``INSERT OR IGNORE``
  on ``(run_id, step_id)``; the first recorded value wins and is never updated.
- **Coalescing**: ``open_run`` returns the existing run for an ISRC created
  inside the idempotency window unless the request forces reprocessing.
- **Crash-safety**: run status and attempt counts live in the database, so
  ``pending_runs`` lists everything a restarted process must resume.

**Schema:**

    CREATE TABLE ingestion_runs (
      run_id TEXT PRIMARY KEY,
      isrc TEXT NOT NULL,
      status TEXT NOT NULL,
      attempts INTEGER NOT NULL DEFAULT 0,
      force INTEGER NOT NULL DEFAULT 0,
      request_json TEXT NOT NULL,
      created_at REAL NOT NULL,
      updated_at REAL NOT NULL,
      next_attempt_at REAL,
      error_kind TEXT,
      error_message TEXT
    );

    CREATE TABLE step_results (
      run_id TEXT NOT NULL,
      isrc TEXT NOT NULL,
      step_id TEXT NOT NULL,
      value_json TEXT NOT NULL,
      completed_at REAL NOT NULL,
      PRIMARY KEY (run_id, step_id)
    );

All methods are synchronous and are called from the event loop thread; each
one is a single short transaction, so no two coroutines interleave inside it.
"""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..logging import get_logger, log_event
from .models import RunRecord, RunStatus, StepId, StepResult, TrackIngestionRequest

__all__ = ["StepLedger"]

LOGGER = get_logger(__name__, base_fields={"component": "ledger"})

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ingestion_runs (
  run_id TEXT PRIMARY KEY,
  isrc TEXT NOT NULL,
  status TEXT NOT NULL,
  attempts INTEGER NOT NULL DEFAULT 0,
  force INTEGER NOT NULL DEFAULT 0,
  request_json TEXT NOT NULL,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  next_attempt_at REAL,
  error_kind TEXT,
  error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_isrc_created ON ingestion_runs(isrc, created_at);
CREATE INDEX IF NOT EXISTS idx_runs_status ON ingestion_runs(status);

CREATE TABLE IF NOT EXISTS step_results (
  run_id TEXT NOT NULL,
  isrc TEXT NOT NULL,
  step_id TEXT NOT NULL,
  value_json TEXT NOT NULL,
  completed_at REAL NOT NULL,
  PRIMARY KEY (run_id, step_id)
);
"""

_MAX_ERROR_CHARS = 2000


class StepLedger:
    """Durable record of ingestion runs and their completed steps.

    Args:
        path: SQLite file, or ``":memory:"`` for an ephemeral ledger.
        wal_mode: Enable WAL journaling (ignored for in-memory databases).
        clock: Wall clock returning epoch seconds, injectable for tests.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        wal_mode: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = str(path)
        self._clock = clock
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, timeout=10.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()
        log_event(LOGGER, "debug", "ledger_opened", path=self.path, wal_mode=wal_mode)

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------ runs

    def open_run(
        self, request: TrackIngestionRequest, *, window_s: float
    ) -> Tuple[RunRecord, bool]:
        """Return the run that should handle ``request``.

        Args:
            request: Trigger with a normalized (uppercase) ISRC.
            window_s: Idempotency window in seconds.

        Returns:
            ``(run, created)``. ``created`` is ``False`` when the request was
            coalesced into a run created less than ``window_s`` ago.
        """
        now = self._clock()
        with self._conn:
            if not request.force_reprocess and window_s > 0:
                row = self._conn.execute(
                    """
                    SELECT * FROM ingestion_runs
                    WHERE isrc = ? AND created_at >= ?
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    (request.isrc, now - window_s),
                ).fetchone()
                if row is not None:
                    return self._row_to_run(row), False

            run_id = uuid.uuid4().hex
            self._conn.execute(
                """
                INSERT INTO ingestion_runs
                (run_id, isrc, status, attempts, force, request_json, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    request.isrc,
                    RunStatus.PENDING.value,
                    int(request.force_reprocess),
                    json.dumps(request.to_dict()),
                    now,
                    now,
                ),
            )
        run = self.get_run(run_id)
        if run is None:
            raise RuntimeError(f"run {run_id} vanished right after insert")
        return run, True

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        row = self._conn.execute(
            "SELECT * FROM ingestion_runs WHERE run_id = ?", (run_id,)
        ).fetchone()
        return self._row_to_run(row) if row is not None else None

    def latest_run(self, isrc: str) -> Optional[RunRecord]:
        row = self._conn.execute(
            "SELECT * FROM ingestion_runs WHERE isrc = ? ORDER BY created_at DESC LIMIT 1",
            (isrc,),
        ).fetchone()
        return self._row_to_run(row) if row is not None else None

    def mark_running(self, run_id: str) -> int:
        """Start an attempt and return the run's total attempt count."""
        now = self._clock()
        with self._conn:
            self._conn.execute(
                """
                UPDATE ingestion_runs
                SET status = ?, attempts = attempts + 1, updated_at = ?, next_attempt_at = NULL
                WHERE run_id = ?
                """,
                (RunStatus.RUNNING.value, now, run_id),
            )
            row = self._conn.execute(
                "SELECT attempts FROM ingestion_runs WHERE run_id = ?", (run_id,)
            ).fetchone()
        if row is None:
            raise KeyError(f"unknown run {run_id}")
        return int(row["attempts"])

    def mark_retrying(
        self,
        run_id: str,
        *,
        next_attempt_at: float,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self._set_status(
            run_id,
            RunStatus.RETRYING,
            next_attempt_at=next_attempt_at,
            error_kind=error_kind,
            error_message=error_message,
        )

    def mark_completed(self, run_id: str) -> None:
        self._set_status(run_id, RunStatus.COMPLETED)

    def mark_failed(self, run_id: str, *, error_kind: str, error_message: str) -> None:
        self._set_status(
            run_id, RunStatus.FAILED, error_kind=error_kind, error_message=error_message
        )

    def _set_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        next_attempt_at: Optional[float] = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._conn:
            cursor = self._conn.execute(
                """
                UPDATE ingestion_runs
                SET status = ?, updated_at = ?, next_attempt_at = ?,
                    error_kind = ?, error_message = ?
                WHERE run_id = ?
                """,
                (
                    status.value,
                    self._clock(),
                    next_attempt_at,
                    error_kind,
                    error_message[:_MAX_ERROR_CHARS] if error_message else None,
                    run_id,
                ),
            )
        if cursor.rowcount == 0:
            raise KeyError(f"unknown run {run_id}")

    def pending_runs(self) -> List[RunRecord]:
        """Runs that have not reached a terminal state, oldest first."""
        rows = self._conn.execute(
            """
            SELECT * FROM ingestion_runs
            WHERE status IN (?, ?, ?)
            ORDER BY created_at ASC
            """,
            (RunStatus.PENDING.value, RunStatus.RUNNING.value, RunStatus.RETRYING.value),
        ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def stats(self) -> Dict[str, int]:
        """Count runs per status plus recorded steps."""
        counts = {status.value: 0 for status in RunStatus}
        for row in self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM ingestion_runs GROUP BY status"
        ):
            counts[row["status"]] = int(row["n"])
        counts["steps"] = int(
            self._conn.execute("SELECT COUNT(*) FROM step_results").fetchone()[0]
        )
        return counts

    # ----------------------------------------------------------------- steps

    def get_step(self, run_id: str, step_id: StepId) -> Optional[StepResult]:
        row = self._conn.execute(
            "SELECT * FROM step_results WHERE run_id = ? AND step_id = ?",
            (run_id, step_id.value),
        ).fetchone()
        return self._row_to_step(row) if row is not None else None

    def record_step(self, run_id: str, isrc: str, step_id: StepId, value: Any) -> StepResult:
        """Persist ``value`` for ``step_id`` unless a value is already recorded.

        Returns:
            The recorded result, which is the earlier value when one existed.
        """
        with self._conn:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO step_results
                (run_id, isrc, step_id, value_json, completed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (run_id, isrc, step_id.value, json.dumps(value), self._clock()),
            )
        if cursor.rowcount == 0:
            log_event(
                LOGGER, "debug", "ledger_step_already_recorded", run_id=run_id, step=step_id.value
            )
        result = self.get_step(run_id, step_id)
        if result is None:
            raise RuntimeError(f"step {step_id.value} of run {run_id} was not persisted")
        return result

    def completed_steps(self, run_id: str) -> Dict[StepId, StepResult]:
        rows = self._conn.execute(
            "SELECT * FROM step_results WHERE run_id = ?", (run_id,)
        ).fetchall()
        return {StepId(row["step_id"]): self._row_to_step(row) for row in rows}

    def purge_steps(self, before: float) -> int:
        """Delete step rows of terminal runs last updated before ``before``.

        Returns:
            Number of step rows removed.
        """
        with self._conn:
            cursor = self._conn.execute(
                """
                DELETE FROM step_results WHERE run_id IN (
                    SELECT run_id FROM ingestion_runs
                    WHERE status IN (?, ?) AND updated_at < ?
                )
                """,
                (RunStatus.COMPLETED.value, RunStatus.FAILED.value, before),
            )
        removed = cursor.rowcount
        log_event(LOGGER, "info", "ledger_steps_purged", removed=removed, before=before)
        return removed

    # --------------------------------------------------------------- helpers

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            isrc=row["isrc"],
            status=RunStatus(row["status"]),
            attempts=int(row["attempts"]),
            force=bool(row["force"]),
            request=TrackIngestionRequest(**json.loads(row["request_json"])),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            next_attempt_at=row["next_attempt_at"],
            error_kind=row["error_kind"],
            error_message=row["error_message"],
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepResult:
        return StepResult(
            step_id=StepId(row["step_id"]),
            value=json.loads(row["value_json"]),
            completed_at=datetime.fromtimestamp(row["completed_at"], tz=timezone.utc),
        )
