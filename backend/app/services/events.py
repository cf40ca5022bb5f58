"""
Domain events emitted by roster and ledger transitions.

Events are buffered on the SQLAlchemy session while a unit of work runs and
drained by the caller after commit. A rollback (see app.db.session.atomic)
discards them, so an event is only ever announced for a transition that landed.
"""
from typing import List, Optional
from sqlalchemy.orm import Session
from app.models.notification import EventType

_EVENTS_KEY = "domain_events"


class DomainEvent:
    """Minimal addressing info for the delivery service."""

    def __init__(
        self,
        event_type: EventType,
        person_id: int,
        activity_id: int,
        obligation_id: Optional[int] = None
    ):
        self.event_type = event_type
        self.person_id = person_id
        self.activity_id = activity_id
        self.obligation_id = obligation_id

    def __repr__(self):
        return (
            f"<DomainEvent {self.event_type.value} person={self.person_id} "
            f"activity={self.activity_id}>"
        )

    def __eq__(self, other):
        if not isinstance(other, DomainEvent):
            return NotImplemented
        return (
            self.event_type == other.event_type
            and self.person_id == other.person_id
            and self.activity_id == other.activity_id
            and self.obligation_id == other.obligation_id
        )


def record_event(
    db: Session,
    event_type: EventType,
    person_id: int,
    activity_id: int,
    obligation_id: Optional[int] = None
) -> DomainEvent:
    """Buffer an event on the session until the transaction commits."""
    event = DomainEvent(event_type, person_id, activity_id, obligation_id)
    db.info.setdefault(_EVENTS_KEY, []).append(event)
    return event


def drain_events(db: Session) -> List[DomainEvent]:
    """Return and clear buffered events. Call after a successful commit."""
    return db.info.pop(_EVENTS_KEY, [])


def discard_events(db: Session) -> None:
    db.info.pop(_EVENTS_KEY, None)
