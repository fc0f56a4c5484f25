import datetime as dt

import config
import checkins
import contacts
import db
import lifecycle
import reconciler
from models import ContactIn

from conftest import NOW

HOUR = dt.timedelta(hours=1)


def _overdue(make_checkin, **kw):
    """Scheduled two hours ago with a one-hour interval: deadline one hour ago."""
    return make_checkin(now=NOW - 3 * HOUR, scheduled=NOW - 2 * HOUR, interval=60, **kw)


def test_find_overdue_returns_only_past_deadlines(make_checkin):
    a = _overdue(make_checkin, title="A")
    make_checkin(scheduled=NOW, interval=60, title="B")
    assert [c.id for c in reconciler.find_overdue(NOW)] == [a.id]


def test_find_overdue_respects_grace(make_checkin):
    c = make_checkin(now=NOW - 2 * HOUR, scheduled=NOW - 65 * dt.timedelta(minutes=1), interval=60, grace=10)
    # deadline was 5 minutes ago, still inside the 10 minute grace
    assert reconciler.find_overdue(NOW) == []
    assert [x.id for x in reconciler.find_overdue(NOW + dt.timedelta(minutes=6))] == [c.id]


def test_find_overdue_includes_active_and_skips_resolved(make_checkin, registry):
    active = _overdue(make_checkin)
    acked = _overdue(make_checkin)
    checkins.activate_checkin("u1", active.id, now=NOW - 2 * HOUR)
    checkins.acknowledge_checkin("u1", acked.id, now=NOW - 2 * HOUR)
    assert [c.id for c in reconciler.find_overdue(NOW)] == [active.id]


def test_sweep_escalates_once(make_checkin, dispatched, outbox):
    a = _overdue(make_checkin)
    report = reconciler.sweep(NOW)
    assert report.escalated == [a.id]

    stored = checkins.get_checkin("u1", a.id)
    assert stored.status == lifecycle.ESCALATED
    assert stored.escalated_at == NOW
    assert stored.delivery_status == "sent"
    assert len(dispatched) == 1
    assert outbox.sms[0][0] == "+15125550100"

    again = reconciler.sweep(NOW + dt.timedelta(minutes=1))
    assert again.checked == 0
    assert len(dispatched) == 1


def test_escalate_twice_dispatches_once(make_checkin, dispatched):
    a = _overdue(make_checkin)
    first = checkins.escalate_checkin("u1", a.id, now=NOW)
    second = checkins.escalate_checkin("u1", a.id, now=NOW + dt.timedelta(minutes=3))
    assert first.status == second.status == lifecycle.ESCALATED
    assert second.escalated_at == first.escalated_at
    assert len(dispatched) == 1


def test_suppressed_escalation_is_missed(make_checkin, dispatched, monkeypatch):
    monkeypatch.setattr(config, "ESCALATION_ENABLED", False)
    a = _overdue(make_checkin)
    report = reconciler.sweep(NOW)
    assert report.missed == [a.id]
    stored = checkins.get_checkin("u1", a.id)
    assert stored.status == lifecycle.MISSED
    assert stored.escalated_at is None
    assert dispatched == []


def test_no_usable_channel_is_missed(make_checkin, dispatched):
    kim = contacts.put_contact("u1", ContactIn(first_name="Kim", phone_number="5125550122"))
    a = _overdue(make_checkin, contacts=[kim.id], custom=[])
    # phone removed after the check-in was saved; sms still declared
    contacts.put_contact(
        "u1", ContactIn(first_name="Kim", email="kim@example.com", notification_methods=["sms"]), contact_id=kim.id,
    )
    reconciler.sweep(NOW)
    assert checkins.get_checkin("u1", a.id).status == lifecycle.MISSED
    assert dispatched == []


def test_one_bad_record_does_not_stop_the_sweep(make_checkin, monkeypatch):
    bad = _overdue(make_checkin, title="bad")
    good = _overdue(make_checkin, title="good")
    real = checkins.escalate_checkin

    def flaky(user_id, checkin_id, **kw):
        if checkin_id == bad.id:
            raise RuntimeError("boom")
        return real(user_id, checkin_id, **kw)

    monkeypatch.setattr(checkins, "escalate_checkin", flaky)
    report = reconciler.sweep(NOW)

    assert report.failed == [bad.id]
    assert report.escalated == [good.id]
    assert checkins.get_checkin("u1", bad.id).status == lifecycle.SCHEDULED


def test_failed_channel_is_retried_without_reescalating(make_checkin, outbox, dispatched):
    a = _overdue(make_checkin)
    outbox.failing.add("sms")
    escalated = checkins.escalate_checkin("u1", a.id, now=NOW)
    assert escalated.delivery_status == "failed"

    outbox.failing.clear()
    assert reconciler.retry_failed_deliveries() == 1

    ck = db.checkin_key("u1", a.id)
    [row] = db.list_deliveries(ck)
    assert row["status"] == "sent"
    assert row["attempts"] == 2
    stored = checkins.get_checkin("u1", a.id)
    assert stored.delivery_status == "sent"
    assert stored.escalated_at == escalated.escalated_at
    assert len(dispatched) == 1


def test_delivery_retries_stop_at_the_limit(make_checkin, outbox, monkeypatch):
    monkeypatch.setattr(config, "DELIVERY_MAX_ATTEMPTS", 3)
    a = _overdue(make_checkin)
    outbox.failing.add("sms")
    checkins.escalate_checkin("u1", a.id, now=NOW)

    resends = [reconciler.retry_failed_deliveries() for _ in range(4)]
    assert resends == [1, 1, 0, 0]
    [row] = db.list_deliveries(db.checkin_key("u1", a.id))
    assert row["attempts"] == 3
    assert row["status"] == "failed"


def test_sweep_prunes_sessions_of_resolved_checkins(make_checkin, registry):
    live = make_checkin(title="live")
    for title in ("a", "b", "c"):
        c = make_checkin(title=title)
        registry.open("u1", c.id, now=NOW)
        checkins.cancel_checkin("u1", c.id, now=NOW)
    registry.open("u1", live.id, now=NOW)
    assert len(registry) == 4

    report = reconciler.sweep(NOW)
    assert report.pruned_sessions == 3
    assert len(registry) == 1
    assert registry.get("u1", live.id) is not None
