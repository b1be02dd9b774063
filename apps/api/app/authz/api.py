from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from app.authz.guard import normalize_required_roles
from app.authz.schemas import (
    ProfileRead,
    ProfileUpdate,
    RoleStats,
    SessionRead,
    SignInRequest,
    SignInResponse,
    SignUpRequest,
    UserRead,
    UserUpdate,
)
from app.authz.service import identity_service, user_admin_service
from app.context import bind_session, get_correlation_id
from app.core.auth import extract_session_token
from app.core.config import get_settings
from app.core.database import get_db


auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])


@dataclass
class ActorUser:
    user_id: str
    session_id: str
    email: str
    full_name: str
    roles: set[str] = field(default_factory=set)
    correlation_id: str | None = None

    @property
    def user_uuid(self) -> uuid.UUID:
        return uuid.UUID(self.user_id)


def get_current_user(request: Request, db: Session = Depends(get_db)) -> ActorUser:
    resolved = identity_service.resolve_session(db, extract_session_token(request))
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")

    bind_session(request, str(resolved.user_id), str(resolved.session_id))
    return ActorUser(
        user_id=str(resolved.user_id),
        session_id=str(resolved.session_id),
        email=resolved.email,
        full_name=resolved.full_name,
        roles=set(identity_service.list_roles(db, resolved.user_id)),
        correlation_id=get_correlation_id(),
    )


def ensure_any_role(user: ActorUser, *roles: str) -> None:
    required = normalize_required_roles(roles)
    if required and not (required & user.roles):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing role: {' or '.join(sorted(required))}",
        )


def require_roles(*roles: str) -> Callable[[ActorUser], ActorUser]:
    def checker(user: ActorUser = Depends(get_current_user)) -> ActorUser:
        ensure_any_role(user, *roles)
        return user

    return checker


@auth_router.post("/sign-up", response_model=ProfileRead, status_code=status.HTTP_201_CREATED)
def sign_up(dto: SignUpRequest, db: Session = Depends(get_db)) -> ProfileRead:
    return identity_service.sign_up(db, dto)


@auth_router.post("/sign-in", response_model=SignInResponse)
def sign_in(dto: SignInRequest, response: Response, db: Session = Depends(get_db)) -> SignInResponse:
    settings = get_settings()
    result = identity_service.sign_in(db, dto)
    response.set_cookie(
        settings.session_cookie_name,
        result.access_token,
        max_age=settings.session_ttl_minutes * 60,
        httponly=True,
        samesite="lax",
    )
    return result


@auth_router.post("/sign-out")
def sign_out(
    response: Response,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str]:
    identity_service.sign_out(db, uuid.UUID(user.session_id))
    response.delete_cookie(get_settings().session_cookie_name)
    return {"status": "signed_out"}


@auth_router.get("/session", response_model=SessionRead)
def get_session(request: Request, db: Session = Depends(get_db)) -> SessionRead:
    resolved = identity_service.resolve_session(db, extract_session_token(request))
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    return SessionRead(
        session_id=resolved.session_id,
        user_id=resolved.user_id,
        email=resolved.email,
        full_name=resolved.full_name,
        roles=identity_service.list_roles(db, resolved.user_id),
        expires_at=resolved.expires_at,
    )


@auth_router.patch("/profile", response_model=ProfileRead)
def update_profile(
    dto: ProfileUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileRead:
    return identity_service.update_profile(db, user.user_uuid, dto)


@users_router.get("/stats", response_model=RoleStats)
def get_role_stats(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> RoleStats:
    return user_admin_service.role_stats(db)


@users_router.get("/directory", response_model=list[ProfileRead])
def list_assignable_users(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[ProfileRead]:
    return user_admin_service.list_assignable_users(db)


@users_router.get("", response_model=list[UserRead])
def list_users(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(require_roles("admin")),
) -> list[UserRead]:
    return user_admin_service.list_users(db)


@users_router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: uuid.UUID,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_roles("admin")),
) -> UserRead:
    return user_admin_service.update_user(db, user.user_id, user_id, dto)


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_roles("admin")),
) -> Response:
    user_admin_service.delete_user(db, user.user_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
