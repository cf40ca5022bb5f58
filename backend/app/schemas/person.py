"""
Pydantic schemas for Person entity.
"""
from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class PersonResponse(BaseModel):
    """Schema for person response."""
    id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    payment_handle: Optional[str] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True
