"""
Reconciliation record model: append-only audit trail of inbound payment notices.
"""
from sqlalchemy import (
    Column, String, Numeric, DateTime, Boolean, Enum as SQLEnum, Integer, Text, JSON
)
from app.db.base import BaseModel
import enum


class MatchMethod(str, enum.Enum):
    """How a notice was bound to an obligation."""
    EXACT_TOKEN = "exact-token"
    FUZZY = "fuzzy"
    UNMATCHED = "unmatched"


class ReconciliationRecord(BaseModel):
    """
    One row per inbound notice, matched or not.

    obligation_id is a weak reference with no foreign key: obligations may be
    deleted by an unlock while their audit trail stays.
    """
    __tablename__ = "reconciliation_records"

    raw_text = Column(Text, nullable=False)
    provider_metadata = Column(JSON, nullable=True)
    parsed_amount = Column(Numeric(10, 2), nullable=True)
    sender_label = Column(String(200), nullable=True)
    activity_scope_id = Column(Integer, nullable=True, index=True)
    obligation_id = Column(Integer, nullable=True, index=True)
    correlation_token = Column(String(36), nullable=True)
    match_method = Column(SQLEnum(MatchMethod, values_callable=lambda e: [m.value for m in e]),
                          nullable=False, index=True)
    applied = Column(Boolean, default=False, nullable=False)  # True when this notice satisfied the obligation
    detail = Column(String(255), nullable=True)
    fingerprint = Column(String(64), nullable=False, index=True)
    received_at = Column(DateTime, nullable=False, index=True)
