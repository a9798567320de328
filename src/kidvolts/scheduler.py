"""Weekly batch job scheduling for KidVolts."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .bazaar import REPLENISH_JOB
from .exceptions import KidVoltsError
from .ledger import DECAY_JOB
from .models import BatchResult
from .ops import StructuredLogger
from .persistence import RecordStore

MARKER_PREFIX = "scheduler_last_firing:"

_CRON_DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}


class Weekday(IntEnum):
    """Enum representing days of the week for scheduling."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @classmethod
    def from_datetime(cls, moment: datetime) -> "Weekday":
        return cls(moment.weekday())

    @classmethod
    def from_cron(cls, value: int) -> "Weekday":
        # cron counts from Sunday (0 or 7); datetime counts from Monday.
        return cls((value - 1) % 7)


def _cron_number(raw: str, low: int, high: int, label: str, expression: str) -> int:
    if not raw.isdigit():
        raise ValueError(f"Unsupported {label} field {raw!r} in schedule {expression!r}.")
    value = int(raw)
    if not low <= value <= high:
        raise ValueError(f"{label.capitalize()} {value} out of range in schedule {expression!r}.")
    return value


@dataclass(frozen=True, slots=True)
class WeeklySchedule:
    """Fires once a week on ``weekday`` at ``at``."""

    weekday: Weekday
    at: time = time(0, 0)

    @classmethod
    def from_cron(cls, expression: str) -> "WeeklySchedule":
        """Parse a weekly cron expression such as ``0 0 * * 2``."""

        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"Schedule {expression!r} must have five cron fields.")
        minute_raw, hour_raw, day_raw, month_raw, weekday_raw = fields
        if day_raw != "*" or month_raw != "*":
            raise ValueError(f"Schedule {expression!r} must be weekly (day and month set to '*').")
        minute = _cron_number(minute_raw, 0, 59, "minute", expression)
        hour = _cron_number(hour_raw, 0, 23, "hour", expression)
        day_name = weekday_raw.strip().lower()[:3]
        if day_name in _CRON_DAY_NAMES:
            cron_day = _CRON_DAY_NAMES[day_name]
        else:
            cron_day = _cron_number(weekday_raw, 0, 7, "weekday", expression)
        return cls(weekday=Weekday.from_cron(cron_day), at=time(hour, minute))

    def previous_firing(self, moment: datetime) -> datetime:
        """Return the latest firing at or before ``moment``."""

        days_back = (moment.weekday() - self.weekday) % 7
        candidate = datetime.combine(moment.date() - timedelta(days=days_back), self.at)
        if candidate > moment:
            candidate -= timedelta(days=7)
        return candidate

    def next_firing(self, moment: datetime) -> datetime:
        """Return the first firing strictly after ``moment``."""

        return self.previous_firing(moment) + timedelta(days=7)


@dataclass(frozen=True, slots=True)
class ScheduledJob:
    name: str
    schedule: WeeklySchedule
    action: Callable[[], BatchResult]


class Scheduler:
    """Run batch jobs on their weekly schedules.

    Each job's last completed firing is persisted in the store. A tick runs a
    job whenever a firing newer than that marker has passed, so firings that
    were missed while the process was down run on the next tick. The marker
    only advances after the job returns, which makes delivery at-least-once.
    """

    def __init__(
        self,
        store: RecordStore,
        jobs: Sequence[ScheduledJob],
        *,
        clock: Callable[[], datetime] = datetime.now,
        poll_seconds: float = 60.0,
        logger: StructuredLogger | None = None,
    ) -> None:
        names = [job.name for job in jobs]
        if len(set(names)) != len(names):
            raise ValueError("Scheduled job names must be unique.")
        self._store = store
        self._jobs: Tuple[ScheduledJob, ...] = tuple(jobs)
        self._clock = clock
        self._poll_seconds = poll_seconds
        self._logger = logger or StructuredLogger()
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def jobs(self) -> Tuple[ScheduledJob, ...]:
        return self._jobs

    def job(self, name: str) -> ScheduledJob:
        for job in self._jobs:
            if job.name == name:
                return job
        raise KeyError(f"Unknown scheduled job '{name}'.")

    def last_firing(self, name: str) -> Optional[datetime]:
        raw = self._store.get_meta(MARKER_PREFIX + name)
        return datetime.fromisoformat(raw) if raw else None

    def next_runs(self, *, at: Optional[datetime] = None) -> Dict[str, datetime]:
        moment = at or self._clock()
        return {job.name: job.schedule.next_firing(moment) for job in self._jobs}

    def tick(self, *, at: Optional[datetime] = None) -> Dict[str, BatchResult]:
        """Run every job whose latest firing has not completed yet."""

        moment = at or self._clock()
        results: Dict[str, BatchResult] = {}
        with self._tick_lock:
            for job in self._jobs:
                firing = job.schedule.previous_firing(moment)
                last = self.last_firing(job.name)
                if last is None:
                    self._store.set_meta(MARKER_PREFIX + job.name, firing.isoformat())
                    self._logger.log("scheduler_baseline", job=job.name, firing=firing.isoformat())
                    continue
                if last >= firing:
                    continue
                try:
                    result = job.action()
                except (KidVoltsError, SQLAlchemyError) as exc:
                    self._logger.log("scheduler_job_failed", job=job.name, firing=firing.isoformat(), error=str(exc))
                    continue
                self._store.set_meta(MARKER_PREFIX + job.name, firing.isoformat())
                results[job.name] = result
                self._logger.log(
                    "scheduler_job_ran",
                    job=job.name,
                    firing=firing.isoformat(),
                    touched=result.touched,
                    failures=len(result.failures),
                )
        return results

    def run_now(self, name: str) -> BatchResult:
        """Run a job immediately without moving its schedule marker."""

        job = self.job(name)
        with self._tick_lock:
            result = job.action()
        self._logger.log("scheduler_manual_run", job=name, touched=result.touched, failures=len(result.failures))
        return result

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="kidvolts-scheduler", daemon=True)
        self._thread.start()
        self._logger.log("scheduler_started", jobs=[job.name for job in self._jobs], poll_seconds=self._poll_seconds)

    def stop(self, *, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        self._logger.log("scheduler_stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as exc:
                # A failed tick must not end the thread; the next poll retries.
                self._logger.log("scheduler_tick_failed", error=str(exc), error_type=type(exc).__name__)
            self._stop.wait(self._poll_seconds)


def build_jobs(
    *,
    replenish: Callable[[], BatchResult],
    decay: Callable[[], BatchResult],
    replenish_cron: str,
    decay_cron: str,
) -> List[ScheduledJob]:
    return [
        ScheduledJob(REPLENISH_JOB, WeeklySchedule.from_cron(replenish_cron), replenish),
        ScheduledJob(DECAY_JOB, WeeklySchedule.from_cron(decay_cron), decay),
    ]


__all__ = ["MARKER_PREFIX", "Weekday", "WeeklySchedule", "ScheduledJob", "Scheduler", "build_jobs"]
