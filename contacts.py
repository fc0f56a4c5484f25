"""
CheckOnMe contacts

Permanent emergency contacts live in the owner's partition under "contact:{id}".
A check-in references them by id and may also carry inline custom contacts;
resolve_targets() flattens both into the list the notifier walks.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

import db
from errors import ValidationError
from models import CheckIn, Contact, ContactIn, EscalationEvent, EscalationTarget

log = logging.getLogger(__name__)


def put_contact(user_id: str, data: ContactIn, contact_id: Optional[str] = None) -> Contact:
    contact = Contact(id=contact_id or uuid.uuid4().hex[:12], user_id=user_id, **data.model_dump())
    item = {"pk": db.user_pk(user_id), "sk": db.contact_sk(contact.id), **contact.model_dump(mode="json")}
    db.put_item(item)
    return contact


def get_contact(user_id: str, contact_id: str) -> Optional[Contact]:
    item = db.get_item(db.user_pk(user_id), db.contact_sk(contact_id))
    if not item:
        return None
    return Contact.model_validate(item)


def list_contacts(user_id: str) -> List[Contact]:
    items = db.query_by_prefix(db.user_pk(user_id), "contact:")
    contacts = [Contact.model_validate(i) for i in items]
    contacts.sort(key=lambda c: (not c.is_primary, c.first_name.lower()))
    return contacts


def resolve_targets(source: CheckIn | EscalationEvent) -> List[EscalationTarget]:
    """Permanent contacts first (in the order the check-in lists them), then custom ones."""
    user_id = source.user_id
    checkin_id = getattr(source, "checkin_id", None) or getattr(source, "id", "")
    targets: List[EscalationTarget] = []
    seen = set()

    for contact_id in source.contacts:
        if contact_id in seen:
            continue
        seen.add(contact_id)
        contact = get_contact(user_id, contact_id)
        if not contact:
            log.warning("check-in %s references unknown contact %s; skipping", checkin_id, contact_id)
            continue
        targets.append(EscalationTarget(
            key=db.contact_sk(contact.id),
            name=contact.name,
            phone=contact.phone_number,
            email=contact.email,
            notification_methods=list(contact.notification_methods),
        ))

    for i, cc in enumerate(source.custom_contacts):
        targets.append(EscalationTarget(
            key=f"custom:{i}",
            name=cc.name,
            phone=cc.phone,
            email=cc.email,
            notification_methods=list(cc.notification_methods),
        ))
    return targets


def implied_channels(target: EscalationTarget) -> List[str]:
    """Text whoever has a phone, email whoever has an address."""
    out: List[str] = []
    if target.phone:
        out.append("sms")
    if target.email:
        out.append("email")
    return out


def check_targets(source: CheckIn) -> None:
    """
    Every referenced contact must exist, and someone must be reachable.
    Raises ValidationError otherwise.
    """
    problems: List[str] = []
    for contact_id in source.contacts:
        if get_contact(source.user_id, contact_id) is None:
            problems.append(f"unknown contact {contact_id}")
    if not problems and not any(usable_channels(t) for t in resolve_targets(source)):
        problems.append("no contact has a phone number or email for its notification methods")
    if problems:
        raise ValidationError(problems)


def usable_channels(target: EscalationTarget) -> List[str]:
    """Declared channels that have an address to deliver to."""
    if not target.notification_methods:
        return implied_channels(target)
    out: List[str] = []
    for method in target.notification_methods:
        if method in ("sms", "call") and target.phone:
            out.append(method)
        elif method == "email" and target.email:
            out.append(method)
    return out
