"""
Pydantic schemas for Obligation entity and cost projections.
"""
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from decimal import Decimal
from app.models.obligation import ObligationStatus, SatisfactionMethod


class ObligationResponse(BaseModel):
    """Schema for obligation response."""
    id: int
    activity_id: int
    membership_id: int
    person_id: int
    person_name: str
    amount: Decimal
    status: ObligationStatus
    correlation_token: str
    payment_note: str  # Text to put in the payment request; carries the correlation token
    payment_link: Optional[str] = None  # Only when the guest has a payment handle on file
    pay_link: Optional[str] = None  # Guest-side link to the owner's handle
    request_sent_at: Optional[datetime] = None
    satisfied_at: Optional[datetime] = None
    satisfied_via: Optional[SatisfactionMethod] = None
    reversed_at: Optional[datetime] = None
    waived_at: Optional[datetime] = None
    note: Optional[str] = None
    replacement_found: bool
    created_at: datetime


class SatisfyRequest(BaseModel):
    """Owner marks an obligation paid."""
    note: Optional[str] = None


class WaiveRequest(BaseModel):
    """Owner forgives an obligation."""
    note: Optional[str] = None


class ReverseRequest(BaseModel):
    """Owner records that a satisfied obligation is to be refunded."""
    reason: str


class CostSummary(BaseModel):
    """Cost projection; same shape before and after lock."""
    activity_id: int
    total_players: int  # Committed, owner included
    guest_count: int
    resource_units: int
    owner_total: Decimal
    shared_pool_total: Decimal
    per_guest_amount: Decimal  # At current headcount
    roster_locked: bool
    frozen_guest_amount: Optional[Decimal] = None  # What guests actually owe once locked


class PaymentSummary(BaseModel):
    """Totals per obligation status for an activity."""
    activity_id: int
    total_owed: Decimal
    total_satisfied: Decimal
    total_pending: Decimal
    total_waived: Decimal
    total_reversed: Decimal
    obligations_count: int
    satisfied_count: int
    pending_count: int
