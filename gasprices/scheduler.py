"""Refresh window policy and one-shot timer registration.

Refreshes happen in three fixed daily windows, local time: 17:00, 20:00 and
00:00 of the following calendar day.

``next_refresh_time`` is a pure function of the last update time; the
``RefreshScheduler`` hands the resulting time to an APScheduler
``BackgroundScheduler`` as a single ``date`` job.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "gasprices_refresh"
FIRST_WINDOW_HOUR = 17
SECOND_WINDOW_HOUR = 20


def next_refresh_time(last_updated: dt.datetime) -> dt.datetime:
    """Return the start of the first refresh window after ``last_updated``."""
    hour = last_updated.hour
    if hour < FIRST_WINDOW_HOUR:
        result = last_updated.replace(hour=FIRST_WINDOW_HOUR)
    elif hour < SECOND_WINDOW_HOUR:
        result = last_updated.replace(hour=SECOND_WINDOW_HOUR)
    else:
        result = (last_updated + dt.timedelta(days=1)).replace(hour=0)
    return result.replace(minute=0, second=0, microsecond=0)


class RefreshScheduler:
    """Arrange for a callable to run once at-or-after a given time."""

    def __init__(self, backend: BaseScheduler | None = None):
        self.backend = backend or BackgroundScheduler()

    def schedule(self, trigger_time: dt.datetime, func: Callable[[], object]) -> None:
        """Replace any pending refresh with one firing at ``trigger_time``."""
        self.backend.add_job(
            func,
            trigger="date",
            run_date=trigger_time,
            id=REFRESH_JOB_ID,
            name="Gas prices refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            # One-shot chain: a late firing must still run, never be skipped.
            misfire_grace_time=None,
        )
        logger.info("Next refresh scheduled for %s", trigger_time.isoformat())

    def pending_run_time(self) -> Optional[dt.datetime]:
        job = self.backend.get_job(REFRESH_JOB_ID)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def start(self) -> None:
        self.backend.start()

    def shutdown(self, wait: bool = True) -> None:
        if self.backend.running:
            self.backend.shutdown(wait=wait)
