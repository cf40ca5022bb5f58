"""
Person model: the on-file identity used for addressing and payment matching.
"""
from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship
from app.db.base import BaseModel


class Person(BaseModel):
    """A player known to the system. Accounts and login live in the identity service."""
    __tablename__ = "people"

    name = Column(String(100), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    phone = Column(String(32), nullable=True)
    payment_handle = Column(String(100), nullable=True)  # e.g. "@erik-berg"; used for request links and matching
    is_active = Column(Boolean, default=True, nullable=False)

    # Relationships
    memberships = relationship("Membership", back_populates="person", cascade="all, delete-orphan")
    group_memberships = relationship("GroupMember", back_populates="person", cascade="all, delete-orphan")
    notification_preferences = relationship(
        "NotificationPreference", back_populates="person", cascade="all, delete-orphan"
    )
