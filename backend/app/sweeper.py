"""
Expiry sweeper: flips `active` off for plans that are past `valid_until`.

Access checks never rely on the flag alone, so a late sweep only delays the
audit trail, never leaks access. Every run is one predicate UPDATE, which makes
it idempotent and safe to run concurrently with itself and with reads.
"""

from __future__ import annotations

import datetime as dt
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import session_scope
from app.models import Grant, utcnow

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None


def sweep_expired_grants(db: Session, now: dt.datetime | None = None) -> int:
    now = now or utcnow()
    res = db.execute(
        update(Grant)
        .where((Grant.active == True) & (Grant.valid_until <= now))  # noqa: E712
        .values(active=False)
        .execution_options(synchronize_session=False)
    )
    count = int(res.rowcount or 0)
    if count:
        logger.info("Expiry sweep deactivated %s plan(s)", count)
    return count


def run_scheduled_sweep() -> int:
    """Scheduler entrypoint. Storage errors are logged; the next run retries."""
    try:
        with session_scope() as db:
            return sweep_expired_grants(db)
    except SQLAlchemyError:
        logger.exception("Expiry sweep failed; will retry on next run")
        return 0


def start_scheduler(interval_seconds: int) -> BackgroundScheduler | None:
    global _scheduler
    if interval_seconds <= 0:
        return None
    if _scheduler is not None and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone=dt.timezone.utc)
    scheduler.add_job(
        run_scheduled_sweep,
        IntervalTrigger(seconds=int(interval_seconds)),
        id="expire_grants",
        name="Expire pay-per-view plans",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    _scheduler = scheduler
    logger.info("Expiry sweeper scheduled every %ss", interval_seconds)
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Expiry sweeper stopped")
    _scheduler = None
