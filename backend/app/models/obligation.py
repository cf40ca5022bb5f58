"""
Obligation model: the frozen amount one guest owes for one locked activity.
"""
from sqlalchemy import (
    Column, String, Numeric, DateTime, Boolean, Enum as SQLEnum, ForeignKey, Integer, Text
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
import enum


class ObligationStatus(str, enum.Enum):
    """Obligation status."""
    PENDING = "pending"
    SATISFIED = "satisfied"
    REVERSED = "reversed"
    WAIVED = "waived"


class SatisfactionMethod(str, enum.Enum):
    """How an obligation came to be satisfied."""
    MANUAL = "manual"
    RECONCILED = "reconciled"


class Obligation(BaseModel):
    """Payment obligation for a guest membership, created at roster lock."""
    __tablename__ = "obligations"

    membership_id = Column(Integer, ForeignKey("memberships.id"), nullable=False, unique=True, index=True)
    activity_id = Column(Integer, ForeignKey("activities.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)  # Frozen at creation
    status = Column(SQLEnum(ObligationStatus), default=ObligationStatus.PENDING, nullable=False, index=True)
    correlation_token = Column(String(36), unique=True, nullable=False, index=True)
    satisfied_at = Column(DateTime, nullable=True)
    satisfied_via = Column(SQLEnum(SatisfactionMethod), nullable=True)
    reversed_at = Column(DateTime, nullable=True)
    waived_at = Column(DateTime, nullable=True)
    request_sent_at = Column(DateTime, nullable=True)  # Owner sent the payment request
    reminder_sent_at = Column(DateTime, nullable=True)
    note = Column(Text, nullable=True)
    replacement_found = Column(Boolean, default=False, nullable=False)

    # Relationships
    membership = relationship("Membership", back_populates="obligation")
    activity = relationship("Activity")
