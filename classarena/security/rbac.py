"""
classarena/security/rbac.py
Role-based access control for the tournament API.

Capabilities are the closed set {teacher, student, admin}, resolved once per
request from the bearer JWT. Services below the routes receive an already
authorized Caller and never look at tokens.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classarena.config import Settings
from classarena.database import get_db
from classarena.errors import ErrorCode, error_body
from classarena.orm.user import User, UserRole

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

STAFF_ROLES = (UserRole.teacher, UserRole.admin)


@dataclass(frozen=True)
class Caller:
    """Pre-authorized identity handed to the services."""
    user_id: int
    role: UserRole

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Caller":
        return cls(user_id=user.id, role=user.role)


# ================= TOKEN UTILS =================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Issue an access token. Login lives elsewhere; this serves tooling and tests."""
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=Settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "type": "access"
    })
    return jwt.encode(to_encode, Settings.JWT_SECRET_KEY, algorithm=Settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT, None when invalid or expired."""
    try:
        return jwt.decode(token, Settings.JWT_SECRET_KEY, algorithms=[Settings.JWT_ALGORITHM])
    except JWTError:
        return None


# ================= AUTH DEPENDENCIES =================

async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the user behind the bearer token.
    Returns 401 if the token is invalid, expired or names an unknown user.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_body("Unauthorized", "Invalid or expired token", ErrorCode.AUTH_INVALID),
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        raise credentials_exception

    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise credentials_exception

    return user


async def get_caller(current_user: User = Depends(get_current_user)) -> Caller:
    return Caller.from_user(current_user)


async def require_teacher(current_user: User = Depends(get_current_user)) -> Caller:
    """Teacher or admin capability."""
    if current_user.role not in STAFF_ROLES:
        logger.warning(
            f"Access denied: user {current_user.id} with role {current_user.role.value} "
            f"attempted a teacher-only tournament action"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_body(
                "Forbidden",
                "This action requires the teacher or admin role",
                ErrorCode.FORBIDDEN,
                {"current_role": current_user.role.value},
            ),
        )
    return Caller.from_user(current_user)
