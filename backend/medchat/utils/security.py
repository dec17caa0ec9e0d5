"""
Security utilities for authentication.

Credentials are issued by the identity service; this side only verifies
bearer tokens and reads the participant identity from their claims.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..schemas.participant import ParticipantIdentity

logger = logging.getLogger(__name__)

# HTTP Bearer for JWT
security = HTTPBearer()


def create_access_token(identity: ParticipantIdentity, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token for a participant."""
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "sub": identity.id,
        "name": identity.display_name,
        "picture": identity.avatar_url,
        "role": identity.role,
        "exp": expire,
        "type": "access"
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> ParticipantIdentity:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )

    participant_id = payload.get("sub")
    if not participant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    return ParticipantIdentity(
        id=str(participant_id),
        display_name=payload.get("name") or str(participant_id),
        avatar_url=payload.get("picture"),
        role=payload.get("role")
    )


async def get_current_participant(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> ParticipantIdentity:
    """Get the authenticated participant."""
    return decode_token(credentials.credentials)
