import datetime as dt

import pytest

import lifecycle
from errors import AlreadyResolved, InvalidTransition, NotFound, ValidationError
from models import CheckInCreate, CheckInEdit, Companion, CustomContact, Location

T = dt.datetime(2026, 5, 1, 18, 0, tzinfo=dt.timezone.utc)
NOW = T - dt.timedelta(hours=2)


def _create(**overrides):
    fields = dict(
        title="Trail run",
        scheduled_time=T,
        interval_minutes=60,
        confirmation_code="4821",
        contacts=["c1"],
    )
    fields.update(overrides)
    return lifecycle.new_checkin("u1", CheckInCreate(**fields), NOW)


def test_new_checkin_derives_deadline_and_starts_scheduled():
    c = _create()
    assert c.status == lifecycle.SCHEDULED
    assert c.response_deadline == T + dt.timedelta(minutes=60)
    assert c.response_deadline > c.scheduled_time
    assert c.acknowledged_at is None and c.escalated_at is None
    assert c.grace_minutes == 10


def test_code_is_generated_when_absent():
    c = _create(confirmation_code=None)
    assert lifecycle.is_valid_code(c.confirmation_code)


def test_validation_collects_every_problem():
    with pytest.raises(ValidationError) as ei:
        _create(title="  ", interval_minutes=0, confirmation_code="12a4", contacts=[])
    problems = ei.value.problems
    assert len(problems) == 4
    assert ei.value.code == "validation_error"


def test_custom_contact_needs_an_address():
    with pytest.raises(ValidationError) as ei:
        _create(contacts=[], custom_contacts=[CustomContact(name="Kim")])
    assert "custom contact 1 needs a phone or email" in ei.value.problems


def test_custom_contact_alone_satisfies_contact_requirement():
    c = _create(contacts=[], custom_contacts=[CustomContact(name="Kim", email="kim@example.com")])
    assert c.custom_contacts[0].name == "Kim"


@pytest.mark.parametrize("code,ok", [
    ("0000", True),
    ("4821", True),
    ("482", False),
    ("48210", False),
    (" 482", False),
    ("48a1", False),
    ("٤٨٢١", False),
    (None, False),
])
def test_is_valid_code(code, ok):
    assert lifecycle.is_valid_code(code) is ok


def test_no_transition_returns_to_scheduled():
    for targets in lifecycle.VALID_TRANSITIONS.values():
        assert lifecycle.SCHEDULED not in targets
    for status in lifecycle.TERMINAL_STATUSES:
        assert lifecycle.VALID_TRANSITIONS[status] == []


def test_acknowledge_sets_timestamp():
    c = lifecycle.acknowledge(_create(), T)
    assert c.status == lifecycle.ACKNOWLEDGED
    assert c.acknowledged_at == T
    assert c.escalated_at is None


def test_escalate_emits_event_with_full_contact_set():
    c = _create(custom_contacts=[CustomContact(name="Kim", phone="5125550100")])
    escalated, event = lifecycle.escalate(c, T, lifecycle.REASON_DEADLINE)
    assert escalated.status == lifecycle.ESCALATED
    assert escalated.escalated_at == T
    assert escalated.acknowledged_at is None
    assert event.contacts == ["c1"]
    assert [cc.name for cc in event.custom_contacts] == ["Kim"]
    assert event.reason == "deadline"


def test_escalate_is_idempotent():
    escalated, _ = lifecycle.escalate(_create(), T)
    again, event = lifecycle.escalate(escalated, T + dt.timedelta(minutes=5))
    assert again == escalated
    assert event is None


def test_acknowledge_after_escalation_is_already_resolved():
    escalated, _ = lifecycle.escalate(_create(), T)
    with pytest.raises(AlreadyResolved) as ei:
        lifecycle.acknowledge(escalated, T)
    assert ei.value.status == "escalated"


def test_edit_recomputes_deadline_and_keeps_code():
    c = _create()
    later = T + dt.timedelta(hours=3)
    edited = lifecycle.apply_edit(c, CheckInEdit(scheduled_time=later, interval_minutes=30), NOW)
    assert edited.response_deadline == later + dt.timedelta(minutes=30)
    assert edited.confirmation_code == "4821"
    assert edited.title == c.title


def test_edit_can_regenerate_code():
    edited = lifecycle.apply_edit(_create(), CheckInEdit(regenerate_code=True), NOW)
    assert lifecycle.is_valid_code(edited.confirmation_code)


def test_edit_rejects_invalid_fields():
    with pytest.raises(ValidationError):
        lifecycle.apply_edit(_create(), CheckInEdit(confirmation_code="99"), NOW)


def test_edit_null_clears_optional_fields():
    c = _create(
        description="north loop",
        location=Location(latitude=30.27, longitude=-97.74, label="Barton Creek"),
        companions=[Companion(name="Jo")],
    )
    edited = lifecycle.apply_edit(c, CheckInEdit(location=None, companions=None, description=None), NOW)
    assert edited.location is None
    assert edited.companions == []
    assert edited.description == ""
    # unset fields and nulls on required fields are left alone
    kept = lifecycle.apply_edit(c, CheckInEdit(title=None), NOW)
    assert kept.title == c.title and kept.location == c.location


def test_edit_clearing_every_contact_is_rejected():
    with pytest.raises(ValidationError) as ei:
        lifecycle.apply_edit(_create(), CheckInEdit(contacts=None), NOW)
    assert "at least one contact is required" in ei.value.problems


def test_edit_only_while_scheduled():
    active = lifecycle.activate(_create(), T)
    with pytest.raises(InvalidTransition):
        lifecycle.apply_edit(active, CheckInEdit(title="x"), T)
    acked = lifecycle.acknowledge(active, T)
    with pytest.raises(AlreadyResolved):
        lifecycle.apply_edit(acked, CheckInEdit(title="x"), T)


def test_cancel_requires_owner():
    with pytest.raises(NotFound):
        lifecycle.cancel(_create(), "someone-else", T)
    assert lifecycle.cancel(_create(), "u1", T).status == lifecycle.CANCELLED


def test_mark_missed_only_from_open():
    missed = lifecycle.mark_missed(_create(), T)
    assert missed.status == lifecycle.MISSED
    assert missed.escalated_at is None
    with pytest.raises(AlreadyResolved):
        lifecycle.mark_missed(lifecycle.acknowledge(_create(), T), T)


def test_escalation_level():
    c = _create()
    assert lifecycle.escalation_level(c) == 0
    active = lifecycle.activate(c, T)
    assert lifecycle.escalation_level(active) == 1
    assert lifecycle.escalation_level(lifecycle.escalate(active, T)[0]) == 2
    assert lifecycle.escalation_level(lifecycle.mark_missed(active, T)) == 2
    assert lifecycle.escalation_level(lifecycle.acknowledge(active, T)) == 0


def test_response_window_includes_grace():
    c = _create(grace_minutes=10)
    cutoff = c.response_deadline + dt.timedelta(minutes=10)
    assert lifecycle.within_response_window(c, cutoff)
    assert not lifecycle.within_response_window(c, cutoff + dt.timedelta(seconds=1))
