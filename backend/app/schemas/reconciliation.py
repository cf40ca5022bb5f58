"""
Pydantic schemas for inbound payment notices and reconciliation records.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional, Union
from datetime import datetime
from decimal import Decimal
from app.models.reconciliation import MatchMethod


class InboundNotice(BaseModel):
    """
    Notice as handed over by the inbound channel.

    Deliberately loose: the matcher does its own parsing so that malformed
    input ends up as an unmatched record instead of a 422.
    """
    amount: Optional[Union[Decimal, float, str]] = None
    sender_label: Optional[str] = None
    raw_text: Optional[str] = None
    received_at: Optional[datetime] = None
    activity_scope: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NormalizedNotice(BaseModel):
    """Strictly typed notice the matcher works on."""
    amount: Decimal
    sender_label: str
    raw_text: str
    received_at: datetime
    activity_scope: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderEmail(BaseModel):
    """Forwarded payment-provider email."""
    sender: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    subject: str = ""
    text: Optional[str] = None
    html: Optional[str] = None
    date: Optional[datetime] = None
    message_id: Optional[str] = Field(default=None, alias="messageId")
    activity_scope: Optional[int] = None

    model_config = {"populate_by_name": True}


class ReconciliationRecordResponse(BaseModel):
    """Schema for reconciliation record response."""
    id: int
    raw_text: str
    parsed_amount: Optional[Decimal] = None
    sender_label: Optional[str] = None
    activity_scope_id: Optional[int] = None
    obligation_id: Optional[int] = None
    correlation_token: Optional[str] = None
    match_method: MatchMethod
    applied: bool
    detail: Optional[str] = None
    received_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True
