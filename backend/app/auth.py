"""Authentication utilities for the scalingad backend.

Callers present a bearer JWT whose ``sub`` is their user id and whose
``role`` says which side of the marketplace they act for.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings

# Bearer token scheme; missing credentials are reported by get_current_actor
security = HTTPBearer(auto_error=False)

ROLE_BUSINESS = "business"
ROLE_AGENCY = "agency"
ROLE_ADMIN = "admin"
VALID_ROLES = {ROLE_BUSINESS, ROLE_AGENCY, ROLE_ADMIN}


def create_access_token(
    user_id: str,
    role: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token for a user acting in ``role``."""
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role: {role}")
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)

    to_encode = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


class Actor:
    """Authenticated caller: a user id and the role they act in."""

    def __init__(self, user_id: str, role: str):
        self.user_id = user_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def __repr__(self) -> str:
        return f"Actor(user_id={self.user_id!r}, role={self.role!r})"


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Actor:
    """Get the authenticated actor from the bearer token."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated - provide Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials, settings)
    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in VALID_ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Actor(user_id=user_id, role=role)


def _require_role(role: str):
    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This endpoint requires the {role} role",
            )
        return actor

    return dependency


# Type aliases for dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
BusinessActor = Annotated[Actor, Depends(_require_role(ROLE_BUSINESS))]
AgencyActor = Annotated[Actor, Depends(_require_role(ROLE_AGENCY))]
AdminActor = Annotated[Actor, Depends(_require_role(ROLE_ADMIN))]
