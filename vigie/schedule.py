"""Next-run computation for recurring jobs.

The result only moves when the anchor run or the configured interval changes.
Polling the calculator repeatedly between those changes returns the very same
timestamp, including the "no runs yet" case where the anchor is the moment
the calculator first saw that interval.
"""

from datetime import datetime, timedelta
from logging import getLogger
from typing import Callable, Iterable, Optional

from croniter import croniter

from .models import RunRecord, RunStatus, ScheduleConfig, ScheduleState
from .utils import now_utc

LOG = getLogger(__name__)
NO_RUN_ANCHOR = "none"


class ScheduleCalculator:
    def __init__(
        self,
        configs: Optional[dict[str, ScheduleConfig]] = None,
        ledger=None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.configs: dict[str, ScheduleConfig] = dict(configs or {})
        self.ledger = ledger
        self._clock = clock
        self._states: dict[str, ScheduleState] = {}
        self._invalid_crons: set[str] = set()

    def state_for(self, job_type: str) -> ScheduleState:
        return self._states.setdefault(job_type, ScheduleState())

    def compute_next_scheduled_run(self, job_type: str) -> Optional[datetime]:
        config = self.configs.get(job_type)
        if config is None:
            self.state_for(job_type).clear()
            return None
        runs = self.ledger.recent_runs(job_type) if self.ledger is not None else []
        return self.compute_next(config, runs, job_type)

    def compute_next(
        self,
        config: ScheduleConfig,
        runs: Iterable[RunRecord],
        job_type: str,
        state: Optional[ScheduleState] = None,
    ) -> Optional[datetime]:
        memo = state if state is not None else self.state_for(job_type)
        schedule_key = self._schedule_key(config)
        if not config.enabled or schedule_key is None:
            memo.clear()
            return None

        anchor_id, anchor_time = _find_anchor(runs, job_type)
        if (
            memo.base_scheduled_time is not None
            and memo.last_anchor_id == anchor_id
            and memo.last_anchor_interval == schedule_key
        ):
            return memo.base_scheduled_time

        if anchor_time is None:
            anchor_time = self._clock()
        next_run = self._advance(config, anchor_time)
        if next_run is None:
            memo.clear()
            return None
        memo.last_anchor_id = anchor_id
        memo.last_anchor_interval = schedule_key
        memo.base_scheduled_time = next_run
        LOG.debug("Next %s run at %s (anchor %s)", job_type, next_run.isoformat(), anchor_id)
        return next_run

    def _schedule_key(self, config: ScheduleConfig):
        if config.interval_minutes:
            return config.interval_minutes
        if config.cron and config.cron not in self._invalid_crons:
            return config.cron
        return None

    def _advance(self, config: ScheduleConfig, anchor: datetime) -> Optional[datetime]:
        if config.interval_minutes:
            return anchor + timedelta(minutes=config.interval_minutes)
        try:
            return croniter(config.cron, anchor).get_next(datetime)
        except (ValueError, KeyError) as error:
            LOG.warning("Invalid schedule cron expression %s: %s", config.cron, error)
            self._invalid_crons.add(config.cron)
            return None


def _find_anchor(runs: Iterable[RunRecord], job_type: str) -> tuple[str, Optional[datetime]]:
    relevant = sorted(
        (run for run in runs if run.job_type == job_type),
        key=lambda run: (run.started_at, run.id),
        reverse=True,
    )
    for run in relevant:
        if run.status == RunStatus.COMPLETED and run.completed_at is not None:
            return str(run.id), run.completed_at
    for run in relevant:
        if run.status == RunStatus.RUNNING and run.started_at is not None:
            return str(run.id), run.started_at
    return NO_RUN_ANCHOR, None
