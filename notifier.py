"""
CheckOnMe notification dispatch

Escalation alerts go to every resolved target over each declared channel that
has an address (sms / call via Twilio, email via SMTP). Each target/channel
outcome is written to the deliveries table so the reconciler can retry only
the channels that failed. Owner reminders go out as APNs pushes.

Exports:
- escalation_message(event) / reminder_message(checkin, link)
- has_deliverable_target(checkin) -> bool
- dispatch_escalation(event) -> delivery status ("sent" | "partial" | "failed")
- deliver_one(event, target, channel) -> bool
- summarize(rows) -> delivery status
- send_owner_reminder(checkin) -> number of devices reached
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import apns_client
import contacts
import db
import email_client
import twilio_client
from models import CheckIn, EscalationEvent, EscalationTarget
from utils import fmt_local, format_phone_number

log = logging.getLogger(__name__)

ALERT_SUBJECT = "Safety Alert: Check-in Missed"


# ---- message templates ----

def escalation_message(event: EscalationEvent) -> str:
    lines = [
        f"SAFETY ALERT: {event.user_id} failed to check in for \"{event.title}\" "
        f"scheduled at {fmt_local(event.scheduled_time)}. They may need assistance."
    ]
    if event.location:
        loc = event.location
        where = f"{loc.label} " if loc.label else ""
        lines.append(
            f"Last known location: {where}https://maps.google.com/?q={loc.latitude},{loc.longitude}"
        )
    if event.companions:
        names = ", ".join(c.name for c in event.companions)
        lines.append(f"With: {names}")
    lines.append("This is an automated message from the CheckOnMe safety app.")
    return "\n".join(lines)


def call_script(event: EscalationEvent) -> str:
    return (
        f"This is a CheckOnMe safety alert. {event.user_id} did not check in for "
        f"{event.title}, scheduled at {fmt_local(event.scheduled_time)}. "
        f"Please try to reach them."
    )


def reminder_message(checkin: CheckIn, link: Optional[str] = None) -> str:
    parts = [f"Time to check in for \"{checkin.title}\"."]
    if link:
        parts.append(f"Verify: {link}")
    parts.append(f"Deadline: {fmt_local(checkin.response_deadline)}")
    return "\n".join(parts)


# ---- escalation delivery ----

def _address(target: EscalationTarget, channel: str) -> str:
    if channel in ("sms", "call"):
        return format_phone_number(target.phone or "")
    return target.email or ""


def has_deliverable_target(checkin: CheckIn | EscalationEvent) -> bool:
    return any(contacts.usable_channels(t) for t in contacts.resolve_targets(checkin))


def deliver_one(event: EscalationEvent, target: EscalationTarget, channel: str) -> bool:
    """Send one alert and record the outcome. Never raises for channel failures."""
    ck = db.checkin_key(event.user_id, event.checkin_id)
    address = _address(target, channel)
    try:
        if channel == "sms":
            provider_id = twilio_client.send_sms(address, escalation_message(event))
        elif channel == "call":
            provider_id = twilio_client.place_alert_call(address, ck, target.key, call_script(event))
        elif channel == "email":
            provider_id = email_client.send_email(address, ALERT_SUBJECT, escalation_message(event))
        else:
            raise ValueError(f"unknown channel {channel}")
    except Exception as e:
        log.warning("escalation %s: %s via %s to %s failed: %s", event.checkin_id, target.key, channel, address, e)
        db.record_delivery(ck, target.key, channel, address, "failed", error=str(e)[:500])
        return False
    db.record_delivery(ck, target.key, channel, address, "sent", provider_id=provider_id)
    log.info("escalation %s: %s via %s sent (%s)", event.checkin_id, target.key, channel, provider_id)
    return True


def summarize(rows: List[Dict[str, Any]]) -> str:
    ok = sum(1 for r in rows if r.get("status") in ("sent", "confirmed"))
    if rows and ok == len(rows):
        return "sent"
    if ok:
        return "partial"
    return "failed"


def dispatch_escalation(event: EscalationEvent) -> str:
    targets = contacts.resolve_targets(event)
    attempted = 0
    for target in targets:
        for channel in contacts.usable_channels(target):
            attempted += 1
            deliver_one(event, target, channel)
    if not attempted:
        log.error("escalation %s had no deliverable target", event.checkin_id)
        return "failed"
    status = summarize(db.list_deliveries(db.checkin_key(event.user_id, event.checkin_id)))
    log.info("escalation %s dispatched: %d channel(s), status=%s", event.checkin_id, attempted, status)
    return status


# ---- owner reminder ----

def send_owner_reminder(checkin: CheckIn, link: Optional[str] = None) -> int:
    tokens = db.list_device_tokens(checkin.user_id)
    body = reminder_message(checkin, link)
    reached = 0
    for token in tokens:
        try:
            apns_client.send_push(
                token,
                "Check-in Required",
                body,
                {"checkInId": checkin.id, "type": "checkin_alarm", "requiresCode": True},
            )
            reached += 1
        except Exception as e:
            log.warning("reminder push for %s to %s… failed: %s", checkin.id, token[:8], e)
    return reached
