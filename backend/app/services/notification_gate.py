"""
Notification gate: should this person hear about this event on this channel?

Pure policy lookup over stored preferences. No delivery happens here.
"""
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
from app.models.notification import Channel, EventType, NotificationPreference
from app.models.person import Person

CHANNEL_DEFAULTS = {
    Channel.EMAIL: True,
    Channel.SMS: False,
}

# Text messages are only sent for time-sensitive money events
SMS_EVENT_TYPES = frozenset({EventType.ROSTER_LOCKED, EventType.PAYMENT_REMINDER_DUE})


def _has_address(person: Person, channel: Channel) -> bool:
    if channel == Channel.EMAIL:
        return bool(person.email)
    return bool(person.phone)


def get_preference(person_id: int, event_type: EventType, db: Session) -> Optional[NotificationPreference]:
    return db.query(NotificationPreference).filter(
        NotificationPreference.person_id == person_id,
        NotificationPreference.event_type == event_type
    ).first()


def should_notify(person_id: int, event_type: EventType, channel: Channel, db: Session) -> bool:
    """
    Missing preference rows resolve to the channel default. A channel without
    an on-file address for the person is never eligible.
    """
    person = db.query(Person).filter(Person.id == person_id).first()
    if not person or not person.is_active:
        return False
    if not _has_address(person, channel):
        return False
    if channel == Channel.SMS and event_type not in SMS_EVENT_TYPES:
        return False

    preference = get_preference(person_id, event_type, db)
    if preference is None:
        return CHANNEL_DEFAULTS[channel]
    if channel == Channel.EMAIL:
        return bool(preference.email_enabled)
    return bool(preference.sms_enabled)


def effective_preferences(person_id: int, db: Session) -> List[Dict]:
    """One entry per event type: the stored row, or the defaults when none is stored."""
    stored = {
        p.event_type: p
        for p in db.query(NotificationPreference).filter(NotificationPreference.person_id == person_id).all()
    }
    result = []
    for event_type in EventType:
        preference = stored.get(event_type)
        result.append({
            "event_type": event_type,
            "email_enabled": preference.email_enabled if preference else CHANNEL_DEFAULTS[Channel.EMAIL],
            "sms_enabled": preference.sms_enabled if preference else CHANNEL_DEFAULTS[Channel.SMS],
            "sms_supported": event_type in SMS_EVENT_TYPES,
            "is_default": preference is None,
        })
    return result


def set_preference(
    person_id: int,
    event_type: EventType,
    db: Session,
    email_enabled: Optional[bool] = None,
    sms_enabled: Optional[bool] = None
) -> NotificationPreference:
    """Create or update the stored preference row. Unset flags keep their current value."""
    preference = get_preference(person_id, event_type, db)
    if preference is None:
        preference = NotificationPreference(
            person_id=person_id,
            event_type=event_type,
            email_enabled=CHANNEL_DEFAULTS[Channel.EMAIL],
            sms_enabled=CHANNEL_DEFAULTS[Channel.SMS]
        )
        db.add(preference)
    if email_enabled is not None:
        preference.email_enabled = email_enabled
    if sms_enabled is not None:
        preference.sms_enabled = sms_enabled
    db.commit()
    db.refresh(preference)
    return preference
