import datetime as dt

import pytest
import pytz
from apscheduler.schedulers.background import BackgroundScheduler

import checkins
import db
import lifecycle
import triggers
from errors import PermissionDenied
from models import CheckInEdit

from conftest import NOW


def test_create_arms_exactly_one_trigger(make_checkin, trigger_scheduler):
    c = make_checkin()
    pending = trigger_scheduler.pending_for("u1", c.id)
    assert len(pending) == 1
    assert pending[0]["fire_at"] == c.scheduled_time
    assert pending[0]["title"] == "Evening hike"


def test_edit_replaces_the_previous_trigger(make_checkin, trigger_scheduler, platform):
    c = make_checkin()
    other = make_checkin(title="Other")
    new_time = NOW + dt.timedelta(hours=5)
    checkins.edit_checkin("u1", c.id, CheckInEdit(scheduled_time=new_time), now=NOW)

    pending = trigger_scheduler.pending_for("u1", c.id)
    assert len(pending) == 1
    assert pending[0]["fire_at"] == new_time
    # unrelated alarms are left alone
    assert trigger_scheduler.is_armed("u1", other.id)
    assert len(platform.jobs) == 2


def test_rearming_is_idempotent(make_checkin, trigger_scheduler):
    c = make_checkin()
    for _ in range(3):
        trigger_scheduler.arm("u1", c.id, c.scheduled_time, c.title, now=NOW)
    assert len(trigger_scheduler.pending_for("u1", c.id)) == 1


def test_disarm_without_trigger_is_a_noop(trigger_scheduler):
    assert trigger_scheduler.disarm("u1", "missing") is False


def test_cancel_and_acknowledge_disarm(make_checkin, trigger_scheduler, registry):
    a = make_checkin()
    b = make_checkin()
    checkins.cancel_checkin("u1", a.id, now=NOW)
    registry.submit("u1", b.id, "4821", now=NOW)
    assert trigger_scheduler.pending() == []
    assert db.list_triggers() == []


def test_past_time_is_not_armed(trigger_scheduler):
    assert trigger_scheduler.arm("u1", "late", NOW - dt.timedelta(minutes=1), "Late", now=NOW) is None
    assert trigger_scheduler.pending() == []


def test_permission_denied_leaves_record_valid(make_checkin, trigger_scheduler, platform):
    platform.granted = False
    c = make_checkin()
    assert checkins.get_checkin("u1", c.id).status == lifecycle.SCHEDULED
    assert trigger_scheduler.pending() == []
    assert platform.permission_requests >= 1
    with pytest.raises(PermissionDenied):
        trigger_scheduler.arm("u1", c.id, c.scheduled_time, c.title, now=NOW)


def test_reconcile_all_clears_and_rebuilds(make_checkin, trigger_scheduler, platform):
    future = make_checkin()
    acked = make_checkin()
    checkins.acknowledge_checkin("u1", acked.id, now=NOW)
    platform.schedule(NOW + dt.timedelta(hours=2), {"user_id": "u1", "checkin_id": "ghost", "title": "stale"})

    armed = trigger_scheduler.reconcile_all(checkins.all_scheduled_checkins(), now=NOW)

    assert armed == 1
    ids = [p["checkin_id"] for p in trigger_scheduler.pending()]
    assert ids == [future.id]
    assert [t["checkin_key"] for t in db.list_triggers()] == [db.checkin_key("u1", future.id)]


def test_reconcile_skips_checkins_whose_time_has_passed(make_checkin, trigger_scheduler):
    make_checkin()
    later = NOW + dt.timedelta(hours=2)
    assert trigger_scheduler.reconcile_all(checkins.all_scheduled_checkins(), now=later) == 0


def test_trigger_fire_activates_and_reminds_owner(make_checkin, outbox):
    db.register_device("u1", "devtoken-abcdef")
    c = make_checkin()
    checkins.handle_trigger_fired("u1", c.id, c.title)

    assert checkins.get_checkin("u1", c.id).status == lifecycle.ACTIVE
    assert db.get_trigger(db.checkin_key("u1", c.id)) is None
    assert len(outbox.pushes) == 1
    token, title, payload = outbox.pushes[0]
    assert token == "devtoken-abcdef"
    assert payload["checkInId"] == c.id


def test_trigger_fire_on_resolved_checkin_is_ignored(make_checkin, outbox):
    db.register_device("u1", "devtoken-abcdef")
    c = make_checkin()
    checkins.cancel_checkin("u1", c.id, now=NOW)
    checkins.handle_trigger_fired("u1", c.id, c.title)
    assert checkins.get_checkin("u1", c.id).status == lifecycle.CANCELLED
    assert outbox.pushes == []


@pytest.fixture
def aps():
    scheduler = BackgroundScheduler(timezone=pytz.utc)
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)


def _noop(**kwargs):
    return None


def test_apscheduler_platform_schedule_and_cancel(aps):
    platform = triggers.APSchedulerPlatform(aps, on_fire=_noop, permission=True)
    fire_at = dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=1)
    tid = platform.schedule(fire_at, {"user_id": "u1", "checkin_id": "c1", "title": "Hike"})

    assert tid.startswith(triggers.JOB_PREFIX)
    pending = platform.list_pending()
    assert [p["trigger_id"] for p in pending] == [tid]
    assert pending[0]["checkin_id"] == "c1"

    platform.cancel(tid)
    platform.cancel(tid)
    assert platform.list_pending() == []


def test_apscheduler_cancel_all_keeps_other_jobs(aps):
    aps.add_job(_noop, "interval", minutes=1, id="escalation_sweep")
    platform = triggers.APSchedulerPlatform(aps, on_fire=_noop, permission=True)
    fire_at = dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=1)
    platform.schedule(fire_at, {"user_id": "u1", "checkin_id": "c1", "title": "A"})
    platform.schedule(fire_at, {"user_id": "u1", "checkin_id": "c2", "title": "B"})

    platform.cancel_all()

    assert platform.list_pending() == []
    assert aps.get_job("escalation_sweep") is not None


def test_apscheduler_platform_permission_toggle(aps):
    platform = triggers.APSchedulerPlatform(aps, on_fire=_noop, permission=False)
    ts = triggers.TriggerScheduler(platform)
    with pytest.raises(PermissionDenied):
        ts.arm("u1", "c1", NOW + dt.timedelta(hours=1), "Hike", now=NOW)
