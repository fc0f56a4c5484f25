"""
CheckOnMe check-in service

Runs lifecycle transitions against the record store. Every status change is a
compare-and-set write (expected status must still be scheduled/active), so the
device path and the escalation sweep can race without a lock: whoever loses the
write re-reads the record and either treats it as done (escalate) or reports
AlreadyResolved.

Side effects that follow a committed write (trigger arm/disarm, notification
dispatch) never roll the write back; a failed disarm is repaired by the next
trigger rebuild and a fired trigger on a resolved record is ignored.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional

import config
import contacts
import db
import lifecycle
import notifier
import triggers
import verify
from errors import AlreadyResolved, CheckInError, InvalidTransition, NotFound, PermissionDenied, StoreUnavailable
from models import CheckIn, CheckInCreate, CheckInEdit
from utils import iso_utc, now_utc

log = logging.getLogger(__name__)

FAR_FUTURE = "9999-12-31T23:59:59+00:00"


# ---- record <-> item ----

def to_item(checkin: CheckIn) -> Dict[str, Any]:
    item = {"pk": db.user_pk(checkin.user_id), "sk": db.checkin_sk(checkin.id)}
    item.update(checkin.model_dump(mode="json"))
    item["gsi1pk"] = checkin.status
    item["gsi1sk"] = iso_utc(lifecycle.escalate_after(checkin))
    return item


def from_item(item: Dict[str, Any]) -> CheckIn:
    return CheckIn.model_validate(item)


def _write(checkin: CheckIn, expect: Optional[tuple] = None) -> bool:
    return db.put_item(to_item(checkin), expect_status=expect)


# ---- reads ----

def get_checkin(user_id: str, checkin_id: str) -> CheckIn:
    item = db.get_item(db.user_pk(user_id), db.checkin_sk(checkin_id))
    if not item:
        raise NotFound("Check-in not found")
    return from_item(item)


def list_checkins(user_id: str) -> List[CheckIn]:
    """Owner's check-ins, most recent scheduled time first."""
    items = db.query_by_prefix(db.user_pk(user_id), "checkin:")
    out = [from_item(i) for i in items]
    out.sort(key=lambda c: c.scheduled_time, reverse=True)
    return out


def all_scheduled_checkins() -> List[CheckIn]:
    """Every still-scheduled check-in across owners (via the escalation index)."""
    return [from_item(i) for i in db.query_by_index(db.ESCALATION_INDEX, lifecycle.SCHEDULED, FAR_FUTURE)]


# ---- trigger helpers ----

def _arm(checkin: CheckIn, now: dt.datetime) -> bool:
    ts = triggers.current()
    if ts is None:
        log.debug("no trigger scheduler installed; %s not armed", checkin.id)
        return False
    try:
        return ts.arm(checkin.user_id, checkin.id, checkin.scheduled_time, checkin.title, now=now) is not None
    except PermissionDenied as e:
        log.warning("check-in %s saved but not armed: %s", checkin.id, e.message)
        return False


def _disarm(checkin: CheckIn) -> None:
    ts = triggers.current()
    if ts is None:
        return
    try:
        ts.disarm(checkin.user_id, checkin.id)
    except StoreUnavailable:
        log.exception("disarm failed for %s; next trigger rebuild will drop it", checkin.id)


# ---- writes ----

def create_checkin(user_id: str, data: CheckInCreate, *, now: Optional[dt.datetime] = None) -> CheckIn:
    now = now or now_utc()
    checkin = lifecycle.new_checkin(user_id, data, now)
    contacts.check_targets(checkin)
    if not db.put_item(to_item(checkin), if_absent=True):
        raise StoreUnavailable("Check-in id collision, please retry")
    log.info("created check-in %s for %s (deadline %s)", checkin.id, user_id, checkin.response_deadline.isoformat())
    _arm(checkin, now)
    return checkin


def edit_checkin(user_id: str, checkin_id: str, edit: CheckInEdit, *, now: Optional[dt.datetime] = None) -> CheckIn:
    now = now or now_utc()
    current = get_checkin(user_id, checkin_id)
    updated = lifecycle.apply_edit(current, edit, now)
    contacts.check_targets(updated)
    if not _write(updated, expect=(lifecycle.SCHEDULED,)):
        raise AlreadyResolved(get_checkin(user_id, checkin_id).status)
    log.info("edited check-in %s (deadline %s)", checkin_id, updated.response_deadline.isoformat())
    # arm() cancels the previous trigger before installing the new one
    _arm(updated, now)
    return updated


def cancel_checkin(user_id: str, checkin_id: str, *, now: Optional[dt.datetime] = None) -> CheckIn:
    now = now or now_utc()
    current = get_checkin(user_id, checkin_id)
    cancelled = lifecycle.cancel(current, user_id, now)
    if not _write(cancelled, expect=lifecycle.OPEN_STATUSES):
        raise AlreadyResolved(get_checkin(user_id, checkin_id).status)
    log.info("cancelled check-in %s", checkin_id)
    _disarm(cancelled)
    return cancelled


def delete_checkin(user_id: str, checkin_id: str) -> CheckIn:
    """Remove a scheduled or cancelled check-in. Anything that reached a contact is kept."""
    current = get_checkin(user_id, checkin_id)
    if current.status not in lifecycle.DELETABLE_STATUSES:
        raise InvalidTransition(current.status, "deleted")
    if not db.delete_item(db.user_pk(user_id), db.checkin_sk(checkin_id), expect_status=lifecycle.DELETABLE_STATUSES):
        try:
            latest = get_checkin(user_id, checkin_id)
        except NotFound:
            return current
        raise InvalidTransition(latest.status, "deleted")
    log.info("deleted check-in %s", checkin_id)
    _disarm(current)
    return current


def activate_checkin(user_id: str, checkin_id: str, *, now: Optional[dt.datetime] = None) -> CheckIn:
    now = now or now_utc()
    current = get_checkin(user_id, checkin_id)
    active = lifecycle.activate(current, now)
    if active is current:
        return current
    if not _write(active, expect=(lifecycle.SCHEDULED,)):
        latest = get_checkin(user_id, checkin_id)
        if latest.status == lifecycle.ACTIVE:
            return latest
        raise AlreadyResolved(latest.status)
    log.info("check-in %s is awaiting confirmation", checkin_id)
    return active


def acknowledge_checkin(user_id: str, checkin_id: str, *, now: Optional[dt.datetime] = None) -> CheckIn:
    now = now or now_utc()
    current = get_checkin(user_id, checkin_id)
    acked = lifecycle.acknowledge(current, now)
    if not _write(acked, expect=lifecycle.OPEN_STATUSES):
        raise AlreadyResolved(get_checkin(user_id, checkin_id).status)
    log.info("check-in %s acknowledged", checkin_id)
    _disarm(acked)
    return acked


def escalate_checkin(
    user_id: str,
    checkin_id: str,
    *,
    now: Optional[dt.datetime] = None,
    reason: str = lifecycle.REASON_DEADLINE,
) -> CheckIn:
    """
    Escalate an open check-in and dispatch its alert exactly once.
    Already escalated -> returned unchanged, nothing sent.
    Escalation disabled or nobody reachable -> recorded as missed instead.
    """
    now = now or now_utc()
    current = get_checkin(user_id, checkin_id)
    if current.status == lifecycle.ESCALATED:
        return current
    if current.status in lifecycle.TERMINAL_STATUSES:
        raise AlreadyResolved(current.status)

    if not config.ESCALATION_ENABLED or not notifier.has_deliverable_target(current):
        missed = lifecycle.mark_missed(current, now, reason)
        if not _write(missed, expect=lifecycle.OPEN_STATUSES):
            raise AlreadyResolved(get_checkin(user_id, checkin_id).status)
        log.warning("check-in %s missed its deadline; escalation suppressed", checkin_id)
        _disarm(missed)
        return missed

    escalated, event = lifecycle.escalate(current, now, reason)
    if not _write(escalated, expect=lifecycle.OPEN_STATUSES):
        latest = get_checkin(user_id, checkin_id)
        if latest.status == lifecycle.ESCALATED:
            log.debug("check-in %s already escalated by a concurrent path", checkin_id)
            return latest
        raise AlreadyResolved(latest.status)
    log.warning("check-in %s escalated (%s)", checkin_id, reason)
    _disarm(escalated)

    try:
        delivery = notifier.dispatch_escalation(event)
    except Exception:
        # status is committed; failed channels are retried from the deliveries table
        log.exception("dispatch failed for escalated check-in %s", checkin_id)
        delivery = "failed"
    return set_delivery_status(escalated, delivery)


def set_delivery_status(checkin: CheckIn, delivery: str) -> CheckIn:
    updated = checkin.model_copy(update={"delivery_status": delivery})
    try:
        _write(updated, expect=(lifecycle.ESCALATED,))
    except StoreUnavailable:
        log.exception("could not record delivery status for %s", checkin.id)
    return updated


# ---- trigger callback ----

def handle_trigger_fired(user_id: str, checkin_id: str, title: str = "") -> None:
    """Local trigger fired: prompt the owner and mark the check-in active."""
    ts = triggers.current()
    if ts is not None:
        ts.forget(user_id, checkin_id)
    try:
        checkin = activate_checkin(user_id, checkin_id)
    except (AlreadyResolved, NotFound) as e:
        log.info("trigger for %s ignored: %s", checkin_id, e.message)
        return
    except CheckInError:
        log.exception("trigger for %s could not activate the check-in", checkin_id)
        return
    reached = notifier.send_owner_reminder(checkin, verify.verification_link(checkin))
    log.info("trigger fired for %s (%s); reminder reached %d device(s)", checkin_id, title or checkin.title, reached)
