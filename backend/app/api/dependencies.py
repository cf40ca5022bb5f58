"""
Route dependencies: caller identity and inbound webhook verification.
"""
import hmac
import logging
from typing import Optional
from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.security import decode_access_token
from app.db.session import get_db
from app.models.person import Person

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_current_person(
    credentials: HTTPAuthorizationCredentials = Security(security),
    db: Session = Depends(get_db)
) -> Person:
    """Resolve the bearer token's person_id claim to an active Person."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    person_id = payload.get("person_id")
    try:
        person_id = int(person_id)
    except (TypeError, ValueError):
        raise credentials_exception

    person = db.query(Person).filter(Person.id == person_id).first()
    if person is None or not person.is_active:
        raise credentials_exception
    return person


def verify_notice_secret(x_notice_webhook_secret: Optional[str] = Header(default=None)) -> None:
    """Inbound notice endpoints are called by the mail forwarder, not by people."""
    if not settings.NOTICE_WEBHOOK_SECRET:
        logger.warning("NOTICE_WEBHOOK_SECRET is not configured. Rejecting inbound notice.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notice ingestion is not configured"
        )
    if not x_notice_webhook_secret or not hmac.compare_digest(
        x_notice_webhook_secret, settings.NOTICE_WEBHOOK_SECRET
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret"
        )
