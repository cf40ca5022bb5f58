"""Models package - Import all models for SQLAlchemy registration."""
from app.models.person import Person
from app.models.group import Group, GroupMember
from app.models.activity import (
    Activity, ActivityStatus, Membership, MembershipRole, MembershipStatus
)
from app.models.obligation import Obligation, ObligationStatus, SatisfactionMethod
from app.models.reconciliation import ReconciliationRecord, MatchMethod
from app.models.notification import (
    NotificationPreference, NotificationLog, EventType, Channel
)
from app.db.immutability import register_immutability_listeners

register_immutability_listeners()

__all__ = [
    "Person",
    "Group",
    "GroupMember",
    "Activity",
    "ActivityStatus",
    "Membership",
    "MembershipRole",
    "MembershipStatus",
    "Obligation",
    "ObligationStatus",
    "SatisfactionMethod",
    "ReconciliationRecord",
    "MatchMethod",
    "NotificationPreference",
    "NotificationLog",
    "EventType",
    "Channel",
]
