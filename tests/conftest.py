import datetime as dt

import pytest

import apns_client
import checkins
import config
import confirmation
import db
import email_client
import notifier
import triggers
import twilio_client
from models import CheckInCreate, CustomContact

NOW = dt.datetime(2026, 5, 1, 12, 0, tzinfo=dt.timezone.utc)


class FakePlatform:
    """In-memory local-notification platform."""

    def __init__(self, granted=True):
        self.granted = granted
        self.jobs = {}
        self.permission_requests = 0
        self._n = 0

    def permission_granted(self):
        return self.granted

    def request_permission(self):
        self.permission_requests += 1
        return self.granted

    def schedule(self, fire_at, payload):
        self._n += 1
        trigger_id = f"fake:{self._n}"
        self.jobs[trigger_id] = {"trigger_id": trigger_id, "fire_at": fire_at, **payload}
        return trigger_id

    def cancel(self, trigger_id):
        self.jobs.pop(trigger_id, None)

    def cancel_all(self):
        self.jobs.clear()

    def list_pending(self):
        return list(self.jobs.values())


class Outbox:
    """Captures outbound sends; channels listed in `failing` raise instead."""

    def __init__(self):
        self.sms = []
        self.calls = []
        self.emails = []
        self.pushes = []
        self.failing = set()

    def send_sms(self, to, body):
        if "sms" in self.failing:
            raise RuntimeError("twilio sms unavailable")
        self.sms.append((to, body))
        return f"sms-{len(self.sms)}"

    def place_alert_call(self, to, checkin_key, target, say_text):
        if "call" in self.failing:
            raise RuntimeError("twilio voice unavailable")
        self.calls.append((to, checkin_key, target))
        return f"call-{len(self.calls)}"

    def send_email(self, to, subject, body):
        if "email" in self.failing:
            raise RuntimeError("smtp unavailable")
        self.emails.append((to, subject, body))
        return f"email-{len(self.emails)}"

    def send_push(self, token, title, body, payload, category="CHECKIN_CHALLENGE"):
        if "push" in self.failing:
            raise RuntimeError("apns unavailable")
        self.pushes.append((token, title, payload))
        return True


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_FILE", str(tmp_path / "checkonme-test.db"))
    monkeypatch.setattr(config, "ESCALATION_ENABLED", True)
    monkeypatch.setattr(config, "TWILIO_AUTH", None)
    monkeypatch.setattr(config, "SIMULATE_CALL", True)
    monkeypatch.setattr(config, "ADMIN_TOKEN", None)
    db.init_db()
    yield


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture(autouse=True)
def trigger_scheduler(platform):
    ts = triggers.TriggerScheduler(platform)
    triggers.install(ts)
    yield ts
    triggers.install(None)


@pytest.fixture(autouse=True)
def registry(monkeypatch):
    reg = confirmation.ChallengeRegistry(budget=5)
    monkeypatch.setattr(confirmation, "registry", reg)
    return reg


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    box = Outbox()
    monkeypatch.setattr(twilio_client, "send_sms", box.send_sms)
    monkeypatch.setattr(twilio_client, "place_alert_call", box.place_alert_call)
    monkeypatch.setattr(email_client, "send_email", box.send_email)
    monkeypatch.setattr(apns_client, "send_push", box.send_push)
    return box


@pytest.fixture
def dispatched(monkeypatch):
    """Every escalation event handed to the notifier."""
    events = []
    real = notifier.dispatch_escalation

    def spy(event):
        events.append(event)
        return real(event)

    monkeypatch.setattr(notifier, "dispatch_escalation", spy)
    return events


@pytest.fixture
def make_checkin():
    def _make(
        user_id="u1",
        *,
        now=NOW,
        scheduled=None,
        interval=60,
        code="4821",
        grace=None,
        contacts=None,
        custom=None,
        title="Evening hike",
    ):
        data = CheckInCreate(
            title=title,
            type="hiking",
            scheduled_time=scheduled or now + dt.timedelta(hours=1),
            interval_minutes=interval,
            grace_minutes=grace,
            confirmation_code=code,
            contacts=contacts or [],
            custom_contacts=(
                custom if custom is not None
                else [CustomContact(name="Sam", phone="5125550100", notification_methods=["sms"])]
            ),
        )
        return checkins.create_checkin(user_id, data, now=now)

    return _make
