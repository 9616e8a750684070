"""
Periodic jobs for the reminder service.

Runs the reminder dispatch job on a fixed interval and sweeps expired
sent-reminder markers, using APScheduler's thread-based scheduler so the
synchronous dispatch code runs outside the request event loop.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "reminder_dispatch"
SWEEP_JOB_ID = "sent_reminder_sweep"


class ReminderScheduler:
    """Owns the background scheduler and the two reminder jobs."""

    def __init__(
        self,
        *,
        dispatch: Callable[[], object],
        sweep: Callable[[], int],
        dispatch_interval: timedelta = timedelta(minutes=15),
        sweep_interval: timedelta = timedelta(minutes=10),
    ) -> None:
        if dispatch_interval <= timedelta(0) or sweep_interval <= timedelta(0):
            raise ValueError("scheduler intervals must be positive")
        self._dispatch = dispatch
        self._sweep = sweep
        self._dispatch_interval = dispatch_interval
        self._sweep_interval = sweep_interval
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_dispatch,
            IntervalTrigger(seconds=int(self._dispatch_interval.total_seconds())),
            id=DISPATCH_JOB_ID,
            name="Reminder dispatch",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.run_sweep,
            IntervalTrigger(seconds=int(self._sweep_interval.total_seconds())),
            id=SWEEP_JOB_ID,
            name="Sent reminder sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "reminder scheduler started (dispatch every %s, sweep every %s)",
            self._dispatch_interval,
            self._sweep_interval,
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("reminder scheduler stopped")

    def job_ids(self) -> list[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    def run_dispatch(self) -> None:
        try:
            self._dispatch()
        except Exception:
            logger.exception("scheduled reminder dispatch failed")

    def run_sweep(self) -> None:
        try:
            self._sweep()
        except Exception:
            logger.exception("sent reminder sweep failed")
