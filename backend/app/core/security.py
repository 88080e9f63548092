"""Security dependencies - caller identity from a bearer JWT"""
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException

from app.core.config import settings

security_logger = logging.getLogger("security")


@dataclass(frozen=True)
class Identity:
    """Verified caller identity; both fields None means anonymous"""
    user_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id and not self.email


ANONYMOUS = Identity()


def decode_identity(token: Optional[str]) -> Identity:
    """Decode a bearer token into an Identity; anything invalid is anonymous"""
    if not token or not settings.JWT_SECRET:
        return ANONYMOUS
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        security_logger.info("Expired bearer token treated as anonymous")
        return ANONYMOUS
    except jwt.InvalidTokenError as e:
        security_logger.warning(f"Invalid bearer token treated as anonymous: {e}")
        return ANONYMOUS

    user_id = payload.get("sub") or payload.get("id")
    email = payload.get("email")
    return Identity(
        user_id=str(user_id) if user_id not in (None, "") else None,
        email=email.strip().lower() if isinstance(email, str) and email.strip() else None,
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    """Dependency: optional identity (anonymous allowed)"""
    return decode_identity(_bearer_token(authorization))


def require_identity(identity: Identity = Depends(get_identity)) -> Identity:
    """Dependency: require a verified user id and email"""
    if not identity.user_id or not identity.email:
        raise HTTPException(401, "Not authenticated. Please log in.")
    return identity
