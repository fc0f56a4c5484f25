"""
CheckOnMe lifecycle engine - pure state-machine logic for a check-in.

No I/O here: every function takes a CheckIn (plus `now`) and returns a new
CheckIn. Persistence, triggers and notification dispatch live in checkins.py.

    scheduled -> active -> acknowledged
        |          |    -> escalated
        |          |    -> missed        (escalation suppressed)
        +----------+--> cancelled        (owner only)

scheduled may also jump straight to acknowledged / escalated / missed
(code entered before the alarm fired, or the device never woke up).
Nothing ever returns to scheduled.
"""

from __future__ import annotations

import datetime as dt
import re
import secrets
import uuid
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from config import DEFAULT_GRACE_MINUTES
from errors import AlreadyResolved, InvalidTransition, NotFound, ValidationError
from models import CheckIn, CheckInCreate, CheckInEdit, EscalationEvent
from utils import to_utc

SCHEDULED = "scheduled"
ACTIVE = "active"
ACKNOWLEDGED = "acknowledged"
ESCALATED = "escalated"
MISSED = "missed"
CANCELLED = "cancelled"

OPEN_STATUSES: Tuple[str, ...] = (SCHEDULED, ACTIVE)
DELETABLE_STATUSES: Tuple[str, ...] = (SCHEDULED, CANCELLED)
TERMINAL_STATUSES: FrozenSet[str] = frozenset({ACKNOWLEDGED, ESCALATED, MISSED, CANCELLED})

VALID_TRANSITIONS: Dict[str, List[str]] = {
    SCHEDULED: [ACTIVE, ACKNOWLEDGED, ESCALATED, MISSED, CANCELLED],
    ACTIVE: [ACKNOWLEDGED, ESCALATED, MISSED, CANCELLED],
    ACKNOWLEDGED: [],
    ESCALATED: [],
    MISSED: [],
    CANCELLED: [],
}

REASON_DEADLINE = "deadline"
REASON_ATTEMPTS = "attempts_exhausted"

# edit fields an explicit null resets; any other null is "leave as is"
CLEARED_BY_NULL: Dict[str, Any] = {
    "description": "",
    "location": None,
    "companions": [],
    "contacts": [],
    "custom_contacts": [],
}

_CODE_RE = re.compile(r"[0-9]{4}")


def can_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, [])


def is_open(checkin: CheckIn) -> bool:
    return checkin.status in OPEN_STATUSES


def _require(checkin: CheckIn, target: str) -> None:
    if can_transition(checkin.status, target):
        return
    if checkin.status in TERMINAL_STATUSES:
        raise AlreadyResolved(checkin.status)
    raise InvalidTransition(checkin.status, target)


# ---- derived fields ----

def generate_code() -> str:
    return f"{secrets.randbelow(10000):04d}"


def is_valid_code(code: Optional[str]) -> bool:
    """Exactly four ASCII digits; nothing is stripped or padded."""
    return isinstance(code, str) and _CODE_RE.fullmatch(code) is not None


def compute_deadline(scheduled_time: dt.datetime, interval_minutes: int) -> dt.datetime:
    return to_utc(scheduled_time) + dt.timedelta(minutes=interval_minutes)


def escalate_after(checkin: CheckIn) -> dt.datetime:
    """Instant from which the reconciler treats the check-in as overdue."""
    return checkin.response_deadline + dt.timedelta(minutes=checkin.grace_minutes)


def within_response_window(checkin: CheckIn, now: dt.datetime) -> bool:
    return to_utc(now) <= escalate_after(checkin)


def escalation_level(checkin: CheckIn) -> int:
    """0 = nothing pending, 1 = user is being prompted, 2 = contacts involved."""
    if checkin.status == ACTIVE:
        return 1
    if checkin.status in (ESCALATED, MISSED):
        return 2
    return 0


# ---- validation ----

def _validate(
    title: str,
    interval_minutes: int,
    grace_minutes: int,
    code: str,
    contacts: List[str],
    custom_contacts: list,
) -> None:
    problems: List[str] = []
    if not (title or "").strip():
        problems.append("title must not be empty")
    if not isinstance(interval_minutes, int) or interval_minutes < 1:
        problems.append("interval_minutes must be a positive integer")
    if not isinstance(grace_minutes, int) or grace_minutes < 0:
        problems.append("grace_minutes must be zero or more")
    if not is_valid_code(code):
        problems.append("confirmation_code must be exactly 4 digits")
    if not [c for c in contacts if str(c).strip()] and not custom_contacts:
        problems.append("at least one contact is required")
    for i, cc in enumerate(custom_contacts):
        if not (cc.phone or cc.email):
            problems.append(f"custom contact {i + 1} needs a phone or email")
    if problems:
        raise ValidationError(problems)


# ---- transitions ----

def new_checkin(
    user_id: str,
    data: CheckInCreate,
    now: dt.datetime,
    checkin_id: Optional[str] = None,
) -> CheckIn:
    """Build a validated `scheduled` record. Raises ValidationError."""
    code = data.confirmation_code if data.confirmation_code is not None else generate_code()
    grace = data.grace_minutes if data.grace_minutes is not None else DEFAULT_GRACE_MINUTES
    _validate(data.title, data.interval_minutes, grace, code, data.contacts, data.custom_contacts)

    scheduled = to_utc(data.scheduled_time)
    now = to_utc(now)
    return CheckIn(
        id=checkin_id or uuid.uuid4().hex[:12],
        user_id=user_id,
        title=data.title.strip(),
        description=data.description,
        type=data.type,
        status=SCHEDULED,
        scheduled_time=scheduled,
        interval_minutes=data.interval_minutes,
        response_deadline=compute_deadline(scheduled, data.interval_minutes),
        grace_minutes=grace,
        created_at=now,
        updated_at=now,
        confirmation_code=code,
        contacts=[c.strip() for c in data.contacts if str(c).strip()],
        custom_contacts=list(data.custom_contacts),
        companions=list(data.companions),
        location=data.location,
    )


def apply_edit(checkin: CheckIn, edit: CheckInEdit, now: dt.datetime) -> CheckIn:
    """Replace mutable fields of a still-scheduled record and recompute the deadline."""
    if checkin.status != SCHEDULED:
        if checkin.status in TERMINAL_STATUSES:
            raise AlreadyResolved(checkin.status, f"Only scheduled check-ins can be edited (status: {checkin.status})")
        raise InvalidTransition(checkin.status, SCHEDULED)

    updates = {}
    for name in edit.model_fields_set - {"regenerate_code"}:
        value = getattr(edit, name)
        if value is not None:
            updates[name] = value
        elif name in CLEARED_BY_NULL:
            updates[name] = CLEARED_BY_NULL[name]
    if edit.regenerate_code:
        updates["confirmation_code"] = generate_code()
    candidate = checkin.model_copy(update=updates)

    _validate(
        candidate.title,
        candidate.interval_minutes,
        candidate.grace_minutes,
        candidate.confirmation_code,
        candidate.contacts,
        candidate.custom_contacts,
    )
    scheduled = to_utc(candidate.scheduled_time)
    return candidate.model_copy(update={
        "title": candidate.title.strip(),
        "contacts": [c.strip() for c in candidate.contacts if str(c).strip()],
        "scheduled_time": scheduled,
        "response_deadline": compute_deadline(scheduled, candidate.interval_minutes),
        "updated_at": to_utc(now),
    })


def activate(checkin: CheckIn, now: dt.datetime) -> CheckIn:
    """scheduled -> active (trigger fired / challenge opened). Already active is a no-op."""
    if checkin.status == ACTIVE:
        return checkin
    _require(checkin, ACTIVE)
    return checkin.model_copy(update={"status": ACTIVE, "updated_at": to_utc(now)})


def acknowledge(checkin: CheckIn, now: dt.datetime) -> CheckIn:
    _require(checkin, ACKNOWLEDGED)
    now = to_utc(now)
    return checkin.model_copy(update={"status": ACKNOWLEDGED, "acknowledged_at": now, "updated_at": now})


def escalate(
    checkin: CheckIn,
    now: dt.datetime,
    reason: str = REASON_DEADLINE,
) -> Tuple[CheckIn, Optional[EscalationEvent]]:
    """
    open -> escalated, returning the event for the notification collaborator.
    Escalating an already-escalated record is a no-op: (record, None).
    """
    if checkin.status == ESCALATED:
        return checkin, None
    _require(checkin, ESCALATED)
    now = to_utc(now)
    updated = checkin.model_copy(update={
        "status": ESCALATED,
        "escalated_at": now,
        "updated_at": now,
        "escalation_reason": reason,
        "delivery_status": "pending",
    })
    return updated, build_escalation_event(updated)


def mark_missed(checkin: CheckIn, now: dt.datetime, reason: str = REASON_DEADLINE) -> CheckIn:
    """open -> missed: the deadline passed but escalation was suppressed."""
    if checkin.status == MISSED:
        return checkin
    _require(checkin, MISSED)
    return checkin.model_copy(update={"status": MISSED, "updated_at": to_utc(now), "escalation_reason": reason})


def cancel(checkin: CheckIn, user_id: str, now: dt.datetime) -> CheckIn:
    if checkin.user_id != user_id:
        raise NotFound("Check-in not found")
    _require(checkin, CANCELLED)
    return checkin.model_copy(update={"status": CANCELLED, "updated_at": to_utc(now)})


def build_escalation_event(checkin: CheckIn) -> EscalationEvent:
    return EscalationEvent(
        checkin_id=checkin.id,
        user_id=checkin.user_id,
        title=checkin.title,
        scheduled_time=checkin.scheduled_time,
        response_deadline=checkin.response_deadline,
        escalated_at=checkin.escalated_at or checkin.updated_at,
        reason=checkin.escalation_reason or REASON_DEADLINE,
        contacts=list(checkin.contacts),
        custom_contacts=list(checkin.custom_contacts),
        companions=list(checkin.companions),
        location=checkin.location,
    )
