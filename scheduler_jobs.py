"""
CheckOnMe APScheduler Jobs

- Escalation sweep on an interval no longer than half the minimum grace period,
  so an overdue check-in is picked up well inside its grace window.
- Local trigger platform: one "date" job per armed check-in on the same scheduler.
- At startup: rebuild pending triggers from the store, then sweep once so anything
  that went overdue while the service was down escalates immediately.
"""

from __future__ import annotations

import logging
import pytz

from apscheduler.schedulers.asyncio import AsyncIOScheduler

import checkins
import reconciler
import triggers
from config import MIN_GRACE_MINUTES, SWEEP_INTERVAL_SECONDS, TIMEZONE

log = logging.getLogger(__name__)
TZ = pytz.timezone(TIMEZONE)
SWEEP_JOB_ID = "escalation_sweep"


def sweep_interval_seconds() -> int:
    ceiling = max(5, (MIN_GRACE_MINUTES * 60) // 2)
    return max(5, min(SWEEP_INTERVAL_SECONDS, ceiling))


def run_sweep():
    """Interval job body; never lets an exception kill the job."""
    try:
        reconciler.sweep()
    except Exception:
        log.exception("escalation sweep failed")


def rebuild_triggers() -> int:
    ts = triggers.current()
    if ts is None:
        return 0
    return ts.reconcile_all(checkins.all_scheduled_checkins())


def install_scheduler(app):
    scheduler = AsyncIOScheduler(timezone=TZ)
    platform = triggers.APSchedulerPlatform(scheduler, on_fire=checkins.handle_trigger_fired)
    triggers.install(triggers.TriggerScheduler(platform))

    interval = sweep_interval_seconds()
    scheduler.add_job(
        run_sweep, "interval", seconds=interval, id=SWEEP_JOB_ID, max_instances=1, coalesce=True
    )
    scheduler.start()
    app.state.scheduler = scheduler
    log.info("scheduler started; sweep every %ds", interval)

    # Rebuild local triggers from the store, then catch up on anything overdue
    try:
        armed = rebuild_triggers()
        log.info("startup trigger rebuild armed %d check-in(s)", armed)
    except Exception:
        log.exception("Initial trigger rebuild failed")
    run_sweep()
    return scheduler


def shutdown_scheduler(app):
    scheduler = getattr(app.state, "scheduler", None)
    triggers.install(None)
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
