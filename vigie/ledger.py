"""Run history for scheduled and manual refresh jobs.

Rows are created ``running`` and transition exactly once to ``completed`` or
``failed``. Nothing here deletes rows.
"""

from dataclasses import replace
from logging import getLogger
from sqlite3 import connect
from threading import Lock
from typing import Callable, Optional

from .errors import RunStateError
from .models import RunOutcome, RunRecord, RunStatus
from .utils import format_timestamp, now_utc, parse_timestamp

LOG = getLogger(__name__)
DEFAULT_RECENT_LIMIT = 50


def _check_outcome(outcome: RunOutcome) -> None:
    if outcome.status == RunStatus.RUNNING:
        raise RunStateError("a run can only complete as completed or failed")


class MemoryLedger:
    def __init__(self, clock: Callable = now_utc):
        self._clock = clock
        self._runs: dict[int, RunRecord] = {}
        self._next_id = 1
        self._lock = Lock()

    def create_run(self, job_type: str) -> int:
        with self._lock:
            run_id = self._next_id
            self._next_id += 1
            self._runs[run_id] = RunRecord(
                id=run_id,
                job_type=job_type,
                status=RunStatus.RUNNING,
                started_at=self._clock(),
            )
        LOG.debug("Started %s run %s", job_type, run_id)
        return run_id

    def complete_run(self, run_id: int, outcome: RunOutcome) -> RunRecord:
        _check_outcome(outcome)
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                raise RunStateError(f"unknown run {run_id}")
            if record.status != RunStatus.RUNNING:
                raise RunStateError(f"run {run_id} already {record.status.value}")
            record = replace(
                record,
                status=outcome.status,
                completed_at=self._clock(),
                items_checked=outcome.items_checked,
                items_updated=outcome.items_updated,
                error_message=outcome.error_message,
            )
            self._runs[run_id] = record
        return record

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def recent_runs(self, job_type: Optional[str] = None, limit: int = DEFAULT_RECENT_LIMIT) -> list[RunRecord]:
        with self._lock:
            runs = [run for run in self._runs.values() if job_type is None or run.job_type == job_type]
        runs.sort(key=lambda run: (run.started_at, run.id), reverse=True)
        return runs[:limit]


class SqliteLedger:
    def __init__(self, path: str, clock: Callable = now_utc, timeout: float = 5.0):
        self.path = path
        self._clock = clock
        self.timeout = timeout
        connection = self._connect()
        try:
            with connection:
                connection.execute(
                    "CREATE TABLE IF NOT EXISTS batch_runs ("
                    " id INTEGER PRIMARY KEY AUTOINCREMENT,"
                    " job_type TEXT NOT NULL,"
                    " status TEXT NOT NULL,"
                    " started_at TEXT NOT NULL,"
                    " completed_at TEXT,"
                    " items_checked INTEGER NOT NULL DEFAULT 0,"
                    " items_updated INTEGER NOT NULL DEFAULT 0,"
                    " error_message TEXT)"
                )
        finally:
            connection.close()

    def _connect(self):
        return connect(self.path, timeout=self.timeout)

    def create_run(self, job_type: str) -> int:
        connection = self._connect()
        try:
            with connection:
                cursor = connection.execute(
                    "INSERT INTO batch_runs (job_type, status, started_at) VALUES (?, ?, ?)",
                    (job_type, RunStatus.RUNNING.value, format_timestamp(self._clock())),
                )
                run_id = cursor.lastrowid
        finally:
            connection.close()
        LOG.debug("Started %s run %s", job_type, run_id)
        return run_id

    def complete_run(self, run_id: int, outcome: RunOutcome) -> RunRecord:
        _check_outcome(outcome)
        connection = self._connect()
        try:
            with connection:
                cursor = connection.execute(
                    "UPDATE batch_runs SET status = ?, completed_at = ?, items_checked = ?,"
                    " items_updated = ?, error_message = ? WHERE id = ? AND status = ?",
                    (
                        outcome.status.value,
                        format_timestamp(self._clock()),
                        outcome.items_checked,
                        outcome.items_updated,
                        outcome.error_message,
                        run_id,
                        RunStatus.RUNNING.value,
                    ),
                )
                updated = cursor.rowcount
        finally:
            connection.close()
        record = self.get_run(run_id)
        if record is None:
            raise RunStateError(f"unknown run {run_id}")
        if not updated:
            raise RunStateError(f"run {run_id} already {record.status.value}")
        return record

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        connection = self._connect()
        try:
            row = connection.execute(
                "SELECT id, job_type, status, started_at, completed_at, items_checked,"
                " items_updated, error_message FROM batch_runs WHERE id = ?",
                (run_id,),
            ).fetchone()
        finally:
            connection.close()
        return _row_to_record(row) if row is not None else None

    def recent_runs(self, job_type: Optional[str] = None, limit: int = DEFAULT_RECENT_LIMIT) -> list[RunRecord]:
        query = (
            "SELECT id, job_type, status, started_at, completed_at, items_checked,"
            " items_updated, error_message FROM batch_runs"
        )
        params: tuple = ()
        if job_type is not None:
            query += " WHERE job_type = ?"
            params = (job_type,)
        query += " ORDER BY started_at DESC, id DESC LIMIT ?"
        connection = self._connect()
        try:
            rows = connection.execute(query, params + (limit,)).fetchall()
        finally:
            connection.close()
        return [_row_to_record(row) for row in rows]


def _row_to_record(row) -> RunRecord:
    return RunRecord(
        id=row[0],
        job_type=row[1],
        status=RunStatus(row[2]),
        started_at=parse_timestamp(row[3]),
        completed_at=parse_timestamp(row[4]),
        items_checked=row[5] or 0,
        items_updated=row[6] or 0,
        error_message=row[7],
    )
