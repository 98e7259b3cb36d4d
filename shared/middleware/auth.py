"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The bearer JWT is validated here and turned into a typed `Actor`
capability object that every handler receives.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from shared.models.models import MentoringSession, PartyRole, User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.email: str = payload.get("email", "")
        self.jti: str = payload["jti"]
        self.raw = payload


@dataclass(frozen=True)
class Actor:
    """Who is acting, and with which roles. Roles come from the user row."""

    user_id: uuid.UUID
    roles: frozenset[UserRole]
    email: str = ""
    name: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, roles=user.role_set, email=user.email, name=user.name)

    def has_role(self, role: UserRole) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return UserRole.ADMIN in self.roles

    @property
    def is_mentor(self) -> bool:
        return UserRole.MENTOR in self.roles

    @property
    def is_mentee(self) -> bool:
        return UserRole.MENTEE in self.roles

    def is_mentor_of(self, session: MentoringSession) -> bool:
        return session.mentor_id == self.user_id

    def is_mentee_of(self, session: MentoringSession) -> bool:
        return session.mentee_id == self.user_id

    def is_participant_of(self, session: MentoringSession) -> bool:
        return self.is_mentor_of(session) or self.is_mentee_of(session)

    def party_in(self, session: MentoringSession) -> Optional[PartyRole]:
        """Participant side the actor occupies in `session`, if any."""
        if self.is_mentor_of(session):
            return PartyRole.MENTOR
        if self.is_mentee_of(session):
            return PartyRole.MENTEE
        return None


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Check if token has been revoked (logged out)
    jti = payload.get("jti")
    if jti and await redis.exists(f"jwt_revoked:{jti}"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return TokenData(payload)


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    try:
        user_id = uuid.UUID(token_data.user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


async def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(current_user)


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, actor: Actor = Depends(get_current_actor)) -> Actor:
        if not any(actor.has_role(r) for r in self.roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return actor


# Convenience role dependencies
require_mentee = RoleRequired(UserRole.MENTEE)
require_admin = RoleRequired(UserRole.ADMIN)
