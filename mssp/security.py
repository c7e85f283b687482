"""
Authentication and role-based access control.

Login verifies a bcrypt password hash and issues a signed bearer token
(see shared/token_utils.py). Route dependencies resolve the token back to
an active User and enforce role requirements.
"""

import logging
from datetime import datetime
from typing import Optional

import bcrypt
from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.orm import Session

from mssp.config import SECRET_KEY, TOKEN_TTL_SECONDS
from mssp.database import get_db
from mssp.errors import AuthenticationError, AuthorizationError
from mssp.models import User, UserRole
from shared.token_utils import issue_token, verify_token

logger = logging.getLogger(__name__)

MANAGER_OR_ABOVE = (UserRole.ADMIN, UserRole.MANAGER)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # Stored hash is not a bcrypt hash
        return False


def role_value(role) -> str:
    return role.value if isinstance(role, UserRole) else str(role)


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": role_value(user.role),
        "is_active": user.is_active,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


def authenticate(db: Session, username: str, password: str) -> dict:
    """
    Check credentials and issue an access token.

    Raises:
        AuthenticationError: Unknown user, wrong password or inactive account
    """
    user = db.scalars(select(User).where(User.username == username)).first()
    if not user or not verify_password(password, user.password_hash):
        logger.warning(f"Failed login for username '{username}'")
        raise AuthenticationError("Invalid username or password")
    if not user.is_active:
        logger.warning(f"Login attempt for inactive user '{username}'")
        raise AuthenticationError("Account is disabled")

    user.last_login_at = datetime.utcnow()
    db.commit()
    db.refresh(user)

    token = issue_token(user.id, role_value(user.role), SECRET_KEY, TOKEN_TTL_SECONDS)
    logger.info(f"User '{username}' logged in")
    return {**token, "user": serialize_user(user)}


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to an active user, or 401"""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError()

    token = authorization.split(" ", 1)[1].strip()
    valid, claims, error = verify_token(token, SECRET_KEY)
    if not valid:
        raise AuthenticationError(error or "Invalid token")

    user = db.get(User, claims["user_id"])
    if not user or not user.is_active:
        raise AuthenticationError("User not found or inactive")
    return user


def require_roles(*roles: UserRole):
    """Dependency factory: allow only the given roles (403 otherwise)"""
    allowed = {role_value(r) for r in roles}

    def dependency(user: User = Depends(get_current_user)) -> User:
        current = role_value(user.role)
        if current not in allowed:
            logger.warning(f"User '{user.username}' ({current}) denied; requires {sorted(allowed)}")
            raise AuthorizationError(required_role=" | ".join(sorted(allowed)), current_role=current)
        return user

    return dependency


require_manager_or_above = require_roles(*MANAGER_OR_ABOVE)
require_admin = require_roles(UserRole.ADMIN)


def page_access_column(role: str) -> str:
    """
    Map a role to its access flag column on PagePermission.

    Raises:
        ValueError: If the role is not a known role
    """
    valid = {r.value for r in UserRole}
    if role not in valid:
        raise ValueError(f"Invalid user role: {role}")
    return f"{role}_access"
