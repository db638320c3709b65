from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .models import ScheduleConfig

# called by the trigger when a scheduled job is due; re-admits the job
FireCallback = Callable[[], Awaitable[Any]]

_INTERVAL = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(expression: str) -> timedelta:
    """``"90"``, ``"30s"``, ``"5m"``, ``"2h"`` or ``"1d"``."""
    m = _INTERVAL.match(str(expression))
    if not m:
        raise ValueError(f"Invalid interval expression: {expression!r}")
    seconds = float(m.group(1)) * _UNITS[m.group(2).lower()]
    if seconds <= 0:
        raise ValueError(f"Interval must be positive: {expression!r}")
    return timedelta(seconds=seconds)


def compute_next_run(schedule: Optional[ScheduleConfig], now: datetime) -> Optional[datetime]:
    """Next due time for INTERVAL schedules; CRON and EVENT are left to the trigger."""
    if schedule is None or not schedule.enabled or schedule.type != "INTERVAL":
        return None
    return now + parse_interval(schedule.expression)


class TriggerScheduler(ABC):
    """External time/event source that calls back when a scheduled job is due."""

    @abstractmethod
    def schedule(self, job_id: str, schedule: ScheduleConfig, fire: FireCallback) -> Optional[datetime]:  # pragma: no cover
        """Register ``fire`` for the job; returns the next fire time when known."""
        ...

    @abstractmethod
    def unschedule(self, job_id: str) -> None:  # pragma: no cover
        ...


class ApschedulerTrigger(TriggerScheduler):
    """TriggerScheduler backed by APScheduler's AsyncIOScheduler."""

    def __init__(self, scheduler: Any = None) -> None:
        self._scheduler = scheduler
        self._log = logging.getLogger(__name__)

    def _s(self):
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        return self._scheduler

    def _trigger(self, schedule: ScheduleConfig):
        if schedule.type == "INTERVAL":
            return IntervalTrigger(seconds=parse_interval(schedule.expression).total_seconds(), timezone=schedule.timezone)
        if schedule.type == "CRON":
            return CronTrigger.from_crontab(schedule.expression, timezone=schedule.timezone)
        return None

    def start(self) -> None:
        s = self._s()
        if not s.running:
            s.start()

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def schedule(self, job_id: str, schedule: ScheduleConfig, fire: FireCallback) -> Optional[datetime]:
        if not schedule.enabled:
            return None
        trigger = self._trigger(schedule)
        if trigger is None:
            # EVENT schedules are fired by their producer through queue_job
            return None
        job = self._s().add_job(fire, trigger=trigger, id=job_id, replace_existing=True)
        next_run = getattr(job, "next_run_time", None)
        if next_run is None:
            next_run = trigger.get_next_fire_time(None, datetime.now(timezone.utc))
        self._log.info("Scheduled job %s (%s %s) next=%s", job_id, schedule.type, schedule.expression, next_run)
        return next_run

    def unschedule(self, job_id: str) -> None:
        s = self._s()
        if s.get_job(job_id) is not None:
            s.remove_job(job_id)
