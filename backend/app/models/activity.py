"""
Activity and membership models.
"""
from sqlalchemy import (
    Column, String, DateTime, Boolean, Enum as SQLEnum, ForeignKey, Integer, Numeric,
    UniqueConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.core.utils import utcnow
import enum


class ActivityStatus(str, enum.Enum):
    """Activity lifecycle status."""
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MembershipStatus(str, enum.Enum):
    """Participant membership status."""
    COMMITTED = "committed"
    TENTATIVE = "tentative"
    WITHDRAWN = "withdrawn"


class MembershipRole(str, enum.Enum):
    """Owner memberships never carry an obligation; guest memberships do once locked."""
    OWNER = "owner"
    GUEST = "guest"


class Activity(BaseModel):
    """One proposed occurrence of a group's meeting."""
    __tablename__ = "activities"

    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    location = Column(String(200), nullable=True)
    min_participants = Column(Integer, nullable=False, default=4)
    max_participants = Column(Integer, nullable=False, default=7)
    resource_units = Column(Integer, nullable=False, default=1)  # Set by the owner, authoritative for cost
    owner_rate_per_unit = Column(Numeric(10, 2), nullable=False)
    shared_pool_rate_per_unit = Column(Numeric(10, 2), nullable=False)
    status = Column(SQLEnum(ActivityStatus), default=ActivityStatus.PROPOSED, nullable=False, index=True)
    roster_locked = Column(Boolean, default=False, nullable=False)
    frozen_guest_amount = Column(Numeric(10, 2), nullable=True)  # Per-guest amount fixed at lock
    lock_deadline = Column(DateTime, nullable=True)  # Defaults to scheduled_at when unset
    payment_deadline = Column(DateTime, nullable=True)
    next_waitlist_rank = Column(Integer, nullable=False, default=1)  # Monotonic, never reused

    # Relationships
    group = relationship("Group", back_populates="activities")
    owner = relationship("Person", foreign_keys=[owner_id])
    memberships = relationship(
        "Membership", back_populates="activity", cascade="all, delete-orphan",
        order_by="Membership.joined_at"
    )


class Membership(BaseModel):
    """A person's participation record in an activity."""
    __tablename__ = "memberships"

    activity_id = Column(Integer, ForeignKey("activities.id"), nullable=False, index=True)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    role = Column(SQLEnum(MembershipRole), default=MembershipRole.GUEST, nullable=False)
    status = Column(SQLEnum(MembershipStatus), nullable=False)
    status_changed_at = Column(DateTime, default=utcnow, nullable=False)
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    waitlist_rank = Column(Integer, nullable=True, index=True)

    # Relationships
    activity = relationship("Activity", back_populates="memberships")
    person = relationship("Person", back_populates="memberships")
    obligation = relationship(
        "Obligation", back_populates="membership", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint('activity_id', 'person_id', name='uq_activity_person'),
    )

    @property
    def is_owner(self) -> bool:
        return self.role == MembershipRole.OWNER

    @property
    def is_waitlisted(self) -> bool:
        return self.status == MembershipStatus.TENTATIVE and self.waitlist_rank is not None
