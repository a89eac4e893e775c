"""
Bearer token verification.

Tokens are issued by the auth service; this module only checks them and
extracts the identity (user id and device id) the chat core trusts.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import settings
from app.core.logging import auth_logger
from app.core.monitoring import record_auth_attempt

DEFAULT_DEVICE_ID = "default"

security = HTTPBearer()


@dataclass(frozen=True)
class AuthIdentity:
    user_id: str
    device_id: str = DEFAULT_DEVICE_ID


def create_access_token(user_id: str, device_id: Optional[str] = None, expires_minutes: Optional[int] = None) -> str:
    """Sign a token the way the auth service does (development tooling and tests)"""
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    payload = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
    }
    if device_id:
        payload["device_id"] = device_id
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, credentials_exception: Exception, device_id: Optional[str] = None) -> AuthIdentity:
    """Decode a bearer token; raises ``credentials_exception`` when it is not valid"""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        auth_logger.warning("Token rejected", error=str(e))
        record_auth_attempt(False)
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        record_auth_attempt(False)
        raise credentials_exception

    record_auth_attempt(True)
    return AuthIdentity(
        user_id=str(user_id),
        device_id=device_id or payload.get("device_id") or DEFAULT_DEVICE_ID,
    )


def credentials_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    x_device_id: Optional[str] = Header(None),
) -> AuthIdentity:
    """Get the authenticated identity for a REST request"""
    identity = verify_token(credentials.credentials, credentials_error(), device_id=x_device_id)
    auth_logger.debug("Request authenticated", user_id=identity.user_id, device_id=identity.device_id)
    return identity


def identity_from_header(authorization: Optional[str]) -> Optional[AuthIdentity]:
    """Identity from an ``Authorization: Bearer`` header, or None; used for keying, never for access"""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    user_id = payload.get("sub")
    return AuthIdentity(user_id=str(user_id)) if user_id else None
