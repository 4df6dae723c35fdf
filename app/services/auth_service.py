import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple, List
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User, UserRole, AppRole
from app.core.errors import NotFoundError, ServiceError
from app.core.security import (
    verify_password,
    get_password_hash,
    create_access_token,
    create_refresh_token,
    verify_refresh_token,
)
from app.config import settings


class AuthService:
    """Authentication service for user login and token management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def authenticate_user(
        self,
        email: str,
        password: str
    ) -> Optional[User]:
        """
        Authenticate a user by email and password.

        Returns:
            User object if authentication successful, None otherwise
        """
        user = await self.get_user_by_email(email)
        if user is None:
            return None

        if not verify_password(password, user.password_hash):
            return None

        if not user.is_active:
            return None

        return user

    async def create_tokens(
        self,
        user: User
    ) -> Tuple[str, str, int]:
        """
        Create access and refresh tokens for a user.

        Returns:
            Tuple of (access_token, refresh_token, expires_in_seconds)
        """
        additional_claims = {
            "email": user.email,
            "roles": user.roles,
        }

        access_token = create_access_token(
            subject=user.id,
            additional_claims=additional_claims
        )
        refresh_token = create_refresh_token(subject=user.id)
        expires_in = settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60

        user.last_login_at = datetime.now(timezone.utc)
        await self.db.flush()

        return access_token, refresh_token, expires_in

    async def refresh_tokens(
        self,
        refresh_token: str
    ) -> Optional[Tuple[str, str, int]]:
        """
        Issue a new token pair from a valid refresh token.

        Returns None if the token is invalid or the user is gone or inactive.
        """
        user_id = verify_refresh_token(refresh_token)
        if user_id is None:
            return None

        try:
            user_uuid = uuid.UUID(user_id)
        except ValueError:
            return None

        user = await self.db.get(User, user_uuid)
        if user is None or not user.is_active:
            return None

        return await self.create_tokens(user)

    async def register_user(
        self,
        email: str,
        password: str,
        full_name: str,
        phone: Optional[str] = None,
        roles: Optional[List[str]] = None,
    ) -> User:
        """Create a dashboard user with the given roles (staff by default)."""
        if await self.get_user_by_email(email):
            raise ServiceError("A user with this email already exists", error_code="USER_EXISTS", status_code=409)

        role_names = roles or [AppRole.STAFF.value]
        user = User(
            email=email.lower(),
            password_hash=get_password_hash(password),
            full_name=full_name,
            phone=phone or None,
            user_roles=[UserRole(role=str(getattr(r, "value", r))) for r in dict.fromkeys(role_names)],
        )
        self.db.add(user)
        await self.db.flush()
        return user

    # ==================== USER MANAGEMENT ====================

    async def get_user(self, user_id: uuid.UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return user

    async def list_users(self, include_inactive: bool = True) -> List[User]:
        stmt = select(User).order_by(User.full_name.asc())
        if not include_inactive:
            stmt = stmt.where(User.is_active == True)  # noqa: E712
        return list((await self.db.execute(stmt)).scalars().all())

    def _set_roles(self, user: User, roles: List[str]) -> None:
        """Make ``roles`` the user's active role set, reusing existing rows."""
        wanted = [str(getattr(r, "value", r)) for r in dict.fromkeys(roles)]
        existing = {ur.role: ur for ur in user.user_roles}
        for name, user_role in existing.items():
            user_role.is_active = name in wanted
        for name in wanted:
            if name not in existing:
                user.user_roles.append(UserRole(role=name))

    async def update_user(
        self,
        user_id: uuid.UUID,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        roles: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
        acting_user_id: Optional[uuid.UUID] = None,
    ) -> User:
        """Update profile fields and replace the role set. Omitted fields are left alone."""
        user = await self.get_user(user_id)

        if email is not None and email.lower() != user.email:
            duplicate = await self.get_user_by_email(email)
            if duplicate and duplicate.id != user.id:
                raise ServiceError("Email already in use", error_code="EMAIL_IN_USE", status_code=409)
            user.email = email.lower()
        if full_name is not None:
            user.full_name = full_name
        if phone is not None:
            user.phone = phone or None
        if roles is not None:
            if not roles:
                raise ServiceError("A user needs at least one role", error_code="ROLE_REQUIRED")
            self._set_roles(user, roles)
        if is_active is False:
            self._ensure_not_self(user, acting_user_id)
        if is_active is not None:
            user.is_active = is_active

        await self.db.flush()
        return user

    def _ensure_not_self(self, user: User, acting_user_id: Optional[uuid.UUID]) -> None:
        if acting_user_id is not None and user.id == acting_user_id:
            raise ServiceError("You cannot deactivate your own account", error_code="SELF_DEACTIVATION")

    async def deactivate_user(self, user_id: uuid.UUID, acting_user_id: Optional[uuid.UUID] = None) -> User:
        """
        Block a user from signing in. Records they created keep pointing at
        them; existing tokens stop working on the next request.
        """
        user = await self.get_user(user_id)
        self._ensure_not_self(user, acting_user_id)
        user.is_active = False
        await self.db.flush()
        return user

    async def reset_password(self, user_id: uuid.UUID, new_password: Optional[str] = None) -> Tuple[User, str]:
        """
        Set a new password. A random one is generated when none is given.

        Returns:
            Tuple of (user, password in clear text to hand to the user once)
        """
        user = await self.get_user(user_id)
        password = new_password or secrets.token_urlsafe(9)
        user.password_hash = get_password_hash(password)
        await self.db.flush()
        return user, password
