"""
Security utilities for JWT verification.

Tokens are minted by the external identity service (magic-link login); this
service only verifies them and reads the person they act for.
"""
from typing import Optional
from jose import JWTError, jwt
from app.core.config import settings


def decode_access_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        return None
