"""
CheckOnMe local trigger scheduler

Arms one wake-up per check-in at its scheduled time, independent of the
escalation sweep. The platform underneath only knows schedule / cancel /
cancel_all / list_pending, so the trigger_id <-> check-in mapping is kept in
the trigger_map table: re-arming one check-in cancels exactly its own trigger
and leaves every other alarm in place.

reconcile_all() is the clear-and-rebuild path used at startup (or whenever the
platform state can't be trusted): drop every pending trigger, then arm one per
still-scheduled future check-in.

Platforms
---------
APSchedulerPlatform   one "date" job per trigger on an APScheduler scheduler
Any object with the same five methods works (tests use an in-memory fake).
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from apscheduler.jobstores.base import JobLookupError

import config
import db
import lifecycle
from errors import PermissionDenied
from models import CheckIn
from utils import iso_utc, now_utc, to_utc

log = logging.getLogger(__name__)

JOB_PREFIX = "trigger:"


class APSchedulerPlatform:
    """Local-notification primitives on top of an APScheduler scheduler."""

    def __init__(self, scheduler, on_fire: Callable[..., Any], permission: Optional[bool] = None):
        self.scheduler = scheduler
        self.on_fire = on_fire
        self._granted = config.LOCAL_ALERTS_ENABLED if permission is None else permission

    def permission_granted(self) -> bool:
        return self._granted

    def request_permission(self) -> bool:
        # nothing to prompt on a server; the toggle is the answer
        return self._granted

    def schedule(self, fire_at: dt.datetime, payload: Dict[str, Any]) -> str:
        trigger_id = f"{JOB_PREFIX}{uuid.uuid4().hex[:12]}"
        self.scheduler.add_job(
            self.on_fire,
            "date",
            run_date=fire_at,
            id=trigger_id,
            kwargs=dict(payload),
            misfire_grace_time=300,
            replace_existing=True,
        )
        return trigger_id

    def cancel(self, trigger_id: str) -> None:
        try:
            self.scheduler.remove_job(trigger_id)
        except JobLookupError:
            pass

    def cancel_all(self) -> None:
        for job in self.scheduler.get_jobs():
            if job.id.startswith(JOB_PREFIX):
                self.cancel(job.id)

    def list_pending(self) -> List[Dict[str, Any]]:
        out = []
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(JOB_PREFIX):
                continue
            out.append({"trigger_id": job.id, "fire_at": getattr(job, "next_run_time", None), **job.kwargs})
        return out


class TriggerScheduler:
    def __init__(self, platform):
        self.platform = platform
        # arm/disarm/reconcile are serialised so a rebuild can't interleave with an arm
        self._lock = threading.RLock()

    def _ensure_permission(self) -> None:
        if self.platform.permission_granted():
            return
        if not self.platform.request_permission():
            raise PermissionDenied("Notification permission not granted; confirm manually from the check-in screen")

    def arm(
        self,
        user_id: str,
        checkin_id: str,
        scheduled_time: dt.datetime,
        title: str,
        now: Optional[dt.datetime] = None,
    ) -> Optional[str]:
        """
        Install exactly one pending trigger for this check-in, replacing any
        previous one. Returns the trigger id, or None when the time has passed.
        """
        now = to_utc(now or now_utc())
        fire_at = to_utc(scheduled_time)
        with self._lock:
            self._ensure_permission()
            key = db.checkin_key(user_id, checkin_id)
            self._drop(key)
            if fire_at <= now:
                log.warning("not arming %s: scheduled time %s already passed", checkin_id, fire_at.isoformat())
                return None
            trigger_id = self.platform.schedule(
                fire_at, {"user_id": user_id, "checkin_id": checkin_id, "title": title or "Check-in"}
            )
            db.save_trigger(key, trigger_id, iso_utc(fire_at))
            log.info("armed %s for %s (%s)", checkin_id, fire_at.isoformat(), trigger_id)
            return trigger_id

    def disarm(self, user_id: str, checkin_id: str) -> bool:
        """Remove the pending trigger if there is one. Missing trigger is not an error."""
        with self._lock:
            return self._drop(db.checkin_key(user_id, checkin_id))

    def forget(self, user_id: str, checkin_id: str) -> None:
        """Drop the mapping for a trigger that has already fired."""
        with self._lock:
            db.delete_trigger(db.checkin_key(user_id, checkin_id))

    def _drop(self, key: str) -> bool:
        existing = db.get_trigger(key)
        if not existing:
            return False
        self.platform.cancel(existing["trigger_id"])
        db.delete_trigger(key)
        log.debug("disarmed %s (%s)", key, existing["trigger_id"])
        return True

    def reconcile_all(self, checkins: Iterable[CheckIn], now: Optional[dt.datetime] = None) -> int:
        """Clear every pending trigger and re-arm each future scheduled check-in."""
        now = to_utc(now or now_utc())
        with self._lock:
            self.platform.cancel_all()
            db.clear_triggers()
            self._ensure_permission()
            armed = 0
            for c in checkins:
                if c.status != lifecycle.SCHEDULED or to_utc(c.scheduled_time) <= now:
                    continue
                if self.arm(c.user_id, c.id, c.scheduled_time, c.title, now=now):
                    armed += 1
            log.info("trigger rebuild: %d armed", armed)
            return armed

    def pending(self) -> List[Dict[str, Any]]:
        return self.platform.list_pending()

    def pending_for(self, user_id: str, checkin_id: str) -> List[Dict[str, Any]]:
        return [
            p for p in self.pending()
            if p.get("user_id") == user_id and p.get("checkin_id") == checkin_id
        ]

    def is_armed(self, user_id: str, checkin_id: str) -> bool:
        return bool(self.pending_for(user_id, checkin_id))


_current: Optional[TriggerScheduler] = None


def install(scheduler: Optional[TriggerScheduler]) -> None:
    global _current
    _current = scheduler


def current() -> Optional[TriggerScheduler]:
    return _current
