import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings


http_bearer = HTTPBearer(auto_error=False)

ADMIN_USER_TYPES = {"admin", "HR"}


@dataclass(frozen=True)
class IdentityContext:
    user_id: uuid.UUID
    org_id: uuid.UUID
    user_type: str = "employee"

    @property
    def is_admin(self) -> bool:
        return self.user_type in ADMIN_USER_TYPES


def create_access_token(user_id, org_id, user_type: str = "employee", ttl_seconds: Optional[int] = None) -> str:
    # Tokens are normally issued by the auth service; this is for tests and tooling
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(user_id),
        "org_id": str(org_id),
        "user_type": user_type,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_identity(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> IdentityContext:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
        org_id = uuid.UUID(str(payload.get("org_id")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    return IdentityContext(user_id=user_id, org_id=org_id, user_type=payload.get("user_type") or "employee")


def require_admin(identity: IdentityContext = Depends(get_current_identity)) -> IdentityContext:
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return identity
