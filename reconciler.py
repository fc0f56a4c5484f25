"""
CheckOnMe escalation reconciler

The device-independent backstop. Each sweep:
- reads the escalation index for scheduled/active records whose
  response_deadline + grace is already in the past
- escalates each one on its own (one bad record never stops the sweep;
  a failed status write is simply picked up again next cycle)
- retries failed delivery channels of already-escalated check-ins
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import checkins
import config
import confirmation
import contacts
import db
import lifecycle
import notifier
from errors import AlreadyResolved, CheckInError, StoreUnavailable
from models import CheckIn
from utils import iso_utc, now_utc

log = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    escalated: List[str] = field(default_factory=list)
    missed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    retried_deliveries: int = 0
    pruned_sessions: int = 0

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "escalated": self.escalated,
            "missed": self.missed,
            "skipped": self.skipped,
            "failed": self.failed,
            "retried_deliveries": self.retried_deliveries,
            "pruned_sessions": self.pruned_sessions,
        }


def find_overdue(now: Optional[dt.datetime] = None) -> List[CheckIn]:
    """Open check-ins whose escalation cutoff has passed, oldest first."""
    cutoff = iso_utc(now or now_utc())
    items = []
    for status in lifecycle.OPEN_STATUSES:
        items.extend(db.query_by_index(db.ESCALATION_INDEX, status, cutoff))
    items.sort(key=lambda i: i["gsi1sk"])
    return [checkins.from_item(i) for i in items]


def sweep(now: Optional[dt.datetime] = None) -> SweepReport:
    now = now or now_utc()
    report = SweepReport()
    for checkin in find_overdue(now):
        report.checked += 1
        try:
            result = checkins.escalate_checkin(checkin.user_id, checkin.id, now=now)
        except AlreadyResolved as e:
            log.debug("sweep: %s already %s", checkin.id, e.status)
            report.skipped.append(checkin.id)
            continue
        except StoreUnavailable:
            log.exception("sweep: store unavailable escalating %s; retrying next cycle", checkin.id)
            report.failed.append(checkin.id)
            continue
        except Exception:
            log.exception("sweep: escalating %s failed", checkin.id)
            report.failed.append(checkin.id)
            continue
        if result.status == lifecycle.MISSED:
            report.missed.append(checkin.id)
        else:
            report.escalated.append(checkin.id)

    try:
        report.retried_deliveries = retry_failed_deliveries()
    except CheckInError:
        log.exception("sweep: delivery retry pass failed")

    report.pruned_sessions = confirmation.registry.prune()

    if report.checked or report.retried_deliveries:
        log.info("sweep: %s", report.as_dict())
    return report


def _split_key(checkin_key: str):
    user_part, checkin_part = checkin_key.split("|", 1)
    return user_part.split(":", 1)[1], checkin_part.split(":", 1)[1]


def retry_failed_deliveries() -> int:
    """Resend failed channels of escalated check-ins. Returns number of resends."""
    rows = db.list_retryable_deliveries(config.DELIVERY_MAX_ATTEMPTS)
    if not rows:
        return 0
    resent = 0
    touched = {}
    for row in rows:
        user_id, checkin_id = _split_key(row["checkin_key"])
        try:
            checkin = checkins.get_checkin(user_id, checkin_id)
        except CheckInError as e:
            log.warning("delivery retry: %s unavailable: %s", row["checkin_key"], e.message)
            continue
        if checkin.status != lifecycle.ESCALATED:
            continue
        target = next(
            (t for t in contacts.resolve_targets(checkin) if t.key == row["target"]), None
        )
        if target is None:
            log.warning("delivery retry: target %s no longer on %s", row["target"], checkin_id)
            continue
        notifier.deliver_one(lifecycle.build_escalation_event(checkin), target, row["channel"])
        resent += 1
        touched[row["checkin_key"]] = checkin

    for ck, checkin in touched.items():
        status = notifier.summarize(db.list_deliveries(ck))
        checkins.set_delivery_status(checkin, status)
    return resent
