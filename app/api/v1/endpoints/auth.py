from typing import List
import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import DB, CurrentUser, require_roles
from app.models.user import AppRole
from app.schemas.auth import (
    LoginRequest,
    RefreshTokenRequest,
    TokenResponse,
    UserCreate,
    UserUpdate,
    UserResponse,
    PasswordResetRequest,
    PasswordResetResponse,
)
from app.services.activity_log_service import ActivityLogService
from app.services.auth_service import AuthService

router = APIRouter()


@router.post("/login", response_model=TokenResponse)
async def login(
    data: LoginRequest,
    db: DB,
):
    """
    Authenticate user and return access/refresh tokens.
    """
    auth_service = AuthService(db)

    user = await auth_service.authenticate_user(data.email, data.password)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token, refresh_token, expires_in = await auth_service.create_tokens(user)
    await ActivityLogService(db).log("user_login", "user", user.id, user.id)

    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        token_type="bearer",
        expires_in=expires_in,
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    data: RefreshTokenRequest,
    db: DB,
):
    """
    Refresh access token using a valid refresh token.
    """
    result = await AuthService(db).refresh_tokens(data.refresh_token)

    if not result:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token, refresh_token, expires_in = result

    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        token_type="bearer",
        expires_in=expires_in,
    )


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(current_user: CurrentUser):
    """Get the authenticated user with active roles."""
    return UserResponse.model_validate(current_user)


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_roles(AppRole.ADMIN))],
)
async def create_user(
    data: UserCreate,
    db: DB,
    current_user: CurrentUser,
):
    """Create a dashboard user (admin only)."""
    user = await AuthService(db).register_user(
        email=data.email,
        password=data.password,
        full_name=data.full_name,
        phone=data.phone,
        roles=[r.value for r in data.roles],
    )
    await ActivityLogService(db).log(
        "user_created", "user", user.id, current_user.id, {"email": user.email, "roles": user.roles}
    )
    return UserResponse.model_validate(user)


@router.get("/users", response_model=List[UserResponse], dependencies=[Depends(require_roles(AppRole.ADMIN))])
async def list_users(db: DB, current_user: CurrentUser, include_inactive: bool = True):
    users = await AuthService(db).list_users(include_inactive=include_inactive)
    return [UserResponse.model_validate(u) for u in users]


@router.patch("/users/{user_id}", response_model=UserResponse, dependencies=[Depends(require_roles(AppRole.ADMIN))])
async def update_user(
    user_id: uuid.UUID,
    data: UserUpdate,
    db: DB,
    current_user: CurrentUser,
):
    """Update a user's profile and roles (admin only). ``roles`` replaces the active set."""
    changes = data.model_dump(exclude_unset=True)
    if "roles" in changes and changes["roles"] is not None:
        changes["roles"] = [r.value for r in data.roles]
    user = await AuthService(db).update_user(user_id, acting_user_id=current_user.id, **changes)
    await ActivityLogService(db).log(
        "user_updated", "user", user.id, current_user.id, {"fields": sorted(changes), "roles": user.roles}
    )
    return UserResponse.model_validate(user)


@router.post(
    "/users/{user_id}/deactivate",
    response_model=UserResponse,
    dependencies=[Depends(require_roles(AppRole.ADMIN))],
)
async def deactivate_user(user_id: uuid.UUID, db: DB, current_user: CurrentUser):
    user = await AuthService(db).deactivate_user(user_id, acting_user_id=current_user.id)
    await ActivityLogService(db).log("user_deactivated", "user", user.id, current_user.id, {"email": user.email})
    return UserResponse.model_validate(user)


@router.post(
    "/users/{user_id}/reset-password",
    response_model=PasswordResetResponse,
    dependencies=[Depends(require_roles(AppRole.ADMIN))],
)
async def reset_password(user_id: uuid.UUID, data: PasswordResetRequest, db: DB, current_user: CurrentUser):
    """Set or generate a new password (admin only). The password is never logged."""
    user, password = await AuthService(db).reset_password(user_id, data.new_password)
    await ActivityLogService(db).log("password_reset", "user", user.id, current_user.id, {"email": user.email})
    return PasswordResetResponse(user_id=user.id, password=password)
