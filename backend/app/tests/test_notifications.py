"""
Tests for the notification gate and delivery planning.
"""
import asyncio
import httpx
import pytest
from app.core.config import settings
from app.models import Channel, EventType, NotificationLog
from app.services import notification_service, roster_service
from app.services.events import DomainEvent
from app.services.notification_gate import effective_preferences, set_preference, should_notify


def test_defaults_are_email_on_sms_off(db, factory):
    person = factory.person("Ana", phone="+15550100")
    assert should_notify(person.id, EventType.ACTIVITY_CREATED, Channel.EMAIL, db) is True
    assert should_notify(person.id, EventType.ROSTER_LOCKED, Channel.SMS, db) is False


def test_channel_without_address_is_never_eligible(db, factory):
    person = factory.person("Ana")
    person.email = None
    db.commit()
    set_preference(person.id, EventType.ROSTER_LOCKED, db, email_enabled=True, sms_enabled=True)

    assert should_notify(person.id, EventType.ROSTER_LOCKED, Channel.EMAIL, db) is False
    assert should_notify(person.id, EventType.ROSTER_LOCKED, Channel.SMS, db) is False


def test_sms_limited_to_money_events(db, factory):
    person = factory.person("Ana", phone="+15550100")
    for event_type in EventType:
        set_preference(person.id, event_type, db, sms_enabled=True)

    eligible = {e for e in EventType if should_notify(person.id, e, Channel.SMS, db)}
    assert eligible == {EventType.ROSTER_LOCKED, EventType.PAYMENT_REMINDER_DUE}


def test_stored_preference_overrides_default(db, factory):
    person = factory.person("Ana")
    set_preference(person.id, EventType.ACTIVITY_CREATED, db, email_enabled=False)

    assert should_notify(person.id, EventType.ACTIVITY_CREATED, Channel.EMAIL, db) is False
    assert should_notify(person.id, EventType.ACTIVITY_CANCELLED, Channel.EMAIL, db) is True


def test_unknown_or_inactive_person(db, factory):
    assert should_notify(9999, EventType.ACTIVITY_CREATED, Channel.EMAIL, db) is False

    person = factory.person("Ana")
    person.is_active = False
    db.commit()
    assert should_notify(person.id, EventType.ACTIVITY_CREATED, Channel.EMAIL, db) is False


def test_set_preference_keeps_unset_flags(db, factory):
    person = factory.person("Ana", phone="+15550100")
    set_preference(person.id, EventType.ROSTER_LOCKED, db, sms_enabled=True)
    preference = set_preference(person.id, EventType.ROSTER_LOCKED, db, email_enabled=False)

    assert preference.sms_enabled is True
    assert preference.email_enabled is False


def test_effective_preferences(db, factory):
    person = factory.person("Ana")
    set_preference(person.id, EventType.WAITLISTED_PROMOTED, db, email_enabled=False)

    rows = {row["event_type"]: row for row in effective_preferences(person.id, db)}

    assert set(rows) == set(EventType)
    assert rows[EventType.WAITLISTED_PROMOTED]["email_enabled"] is False
    assert rows[EventType.WAITLISTED_PROMOTED]["is_default"] is False
    assert rows[EventType.ACTIVITY_CREATED]["is_default"] is True
    assert rows[EventType.ROSTER_LOCKED]["sms_supported"] is True
    assert rows[EventType.ACTIVITY_CREATED]["sms_supported"] is False


def test_plan_deliveries_carries_payment_request(db, locked_activity, guests):
    erik = guests[0]
    erik.phone = "+15550199"
    db.commit()
    set_preference(erik.id, EventType.ROSTER_LOCKED, db, sms_enabled=True)
    membership = roster_service.get_membership(locked_activity.id, erik.id, db)
    obligation = membership.obligation

    deliveries = notification_service.plan_deliveries(
        [DomainEvent(EventType.ROSTER_LOCKED, erik.id, locked_activity.id, obligation.id)], db
    )

    assert [d["channel"] for d in deliveries] == ["email", "sms"]
    email = deliveries[0]
    assert email["address"] == erik.email
    assert email["amount"] == "9.60"
    assert email["payment_note"].endswith(f"#courtside-{obligation.correlation_token}")
    assert email["payment_link"].startswith("https://venmo.com/erik-berg?")
    assert deliveries[1]["address"] == "+15550199"


def test_dispatch_without_webhook_does_nothing(db, factory, session_factory, monkeypatch):
    monkeypatch.setattr(settings, "NOTIFY_WEBHOOK_URL", "")
    person = factory.person("Ana")
    delivery = {
        "event_type": "activity_created", "channel": "email", "person_id": person.id, "activity_id": None,
    }

    asyncio.run(notification_service.dispatch_deliveries([delivery], session_factory=session_factory))

    assert db.query(NotificationLog).count() == 0


@pytest.mark.parametrize("status_code, success", [(200, True), (500, False)])
def test_dispatch_logs_outcome(db, factory, session_factory, monkeypatch, status_code, success):
    posted = []

    def handler(request):
        posted.append(request)
        return httpx.Response(status_code, text="upstream says no" if status_code >= 400 else "ok")

    real_client = httpx.AsyncClient

    def client_with_mock_transport(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(settings, "NOTIFY_WEBHOOK_URL", "https://hooks.example.com/notify")
    monkeypatch.setattr(notification_service.httpx, "AsyncClient", client_with_mock_transport)

    person = factory.person("Ana")
    db.commit()
    delivery = {
        "event_type": "activity_cancelled", "channel": "email", "person_id": person.id, "activity_id": None,
    }

    asyncio.run(notification_service.dispatch_deliveries([delivery], session_factory=session_factory))

    assert len(posted) == 1
    log = db.query(NotificationLog).one()
    assert log.event_type == EventType.ACTIVITY_CANCELLED
    assert log.channel == Channel.EMAIL
    assert log.success is success
    if not success:
        assert log.error_message.startswith("HTTP 500")


def test_announce_drains_events(db, factory, owner):
    ana = factory.person("Ana")
    group = factory.group(owner, [ana])
    activity = factory.activity(owner, group)
    factory.commit(activity, ana)

    roster_service.cancel_activity(activity.id, db)
    deliveries = notification_service.announce(db, None)

    assert {d["person_id"] for d in deliveries} == {owner.id, ana.id}
    assert notification_service.announce(db, None) == []
