"""
Pydantic schemas for Activity and Membership entities.
"""
from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from app.models.activity import ActivityStatus, MembershipRole, MembershipStatus


class ActivityBase(BaseModel):
    """Base activity schema."""
    scheduled_at: datetime
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    location: Optional[str] = None
    min_participants: Optional[int] = Field(default=None, ge=1)
    max_participants: Optional[int] = Field(default=None, ge=1)
    resource_units: int = Field(default=1, ge=0)  # Units the owner reserved
    owner_rate_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    shared_pool_rate_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    lock_deadline: Optional[datetime] = None
    payment_deadline: Optional[datetime] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if (
            self.min_participants is not None
            and self.max_participants is not None
            and self.min_participants > self.max_participants
        ):
            raise ValueError("min_participants cannot exceed max_participants")
        return self


class ActivityCreate(ActivityBase):
    """Schema for activity creation. Unset fields fall back to configured defaults."""
    group_id: int


class ActivityUpdate(BaseModel):
    """Schema for activity update."""
    scheduled_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    location: Optional[str] = None
    min_participants: Optional[int] = Field(default=None, ge=1)
    max_participants: Optional[int] = Field(default=None, ge=1)
    resource_units: Optional[int] = Field(default=None, ge=0)
    owner_rate_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    shared_pool_rate_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    lock_deadline: Optional[datetime] = None
    payment_deadline: Optional[datetime] = None


class ActivityResponse(BaseModel):
    """Schema for activity response."""
    id: int
    group_id: int
    owner_id: int
    scheduled_at: datetime
    duration_minutes: int
    location: Optional[str] = None
    min_participants: int
    max_participants: int
    resource_units: int
    owner_rate_per_unit: Decimal
    shared_pool_rate_per_unit: Decimal
    status: ActivityStatus
    roster_locked: bool
    frozen_guest_amount: Optional[Decimal] = None
    lock_deadline: Optional[datetime] = None
    payment_deadline: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MembershipResponse(BaseModel):
    """Schema for a participant entry."""
    id: int
    activity_id: int
    person_id: int
    name: str
    role: MembershipRole
    status: MembershipStatus
    waitlist_rank: Optional[int] = None
    joined_at: datetime
    status_changed_at: datetime

    class Config:
        from_attributes = True


class ActivityDetailResponse(ActivityResponse):
    """Schema for detailed activity response with participants."""
    participants: List[MembershipResponse] = []


class ParticipationRequest(BaseModel):
    """Self-service opt in / opt out."""
    status: MembershipStatus


class ParticipantAdd(BaseModel):
    """Owner adds a person to the activity."""
    person_id: int
    status: MembershipStatus = MembershipStatus.COMMITTED
