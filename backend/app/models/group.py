"""
Group model. Group administration lives elsewhere; activities only need the
active member list.
"""
from sqlalchemy import Column, String, Boolean, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import relationship
from app.db.base import BaseModel


class Group(BaseModel):
    """A recurring group that proposes activities."""
    __tablename__ = "groups"

    name = Column(String(200), nullable=False)
    owner_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)

    # Relationships
    members = relationship("GroupMember", back_populates="group", cascade="all, delete-orphan")
    activities = relationship("Activity", back_populates="group", cascade="all, delete-orphan")


class GroupMember(BaseModel):
    """Junction table for Group and Person."""
    __tablename__ = "group_members"

    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Relationships
    group = relationship("Group", back_populates="members")
    person = relationship("Person", back_populates="group_memberships")

    __table_args__ = (
        UniqueConstraint('group_id', 'person_id', name='uq_group_member'),
    )
