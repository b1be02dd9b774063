from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.authz.models import APP_ROLES, AuthSession, Profile, UserRole
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
from app.core.auth import decode_session_token, issue_session_token
from app.core.config import get_settings
from app.core.security import hash_password, verify_password
from app.metrics import observe_sign_in


logger = logging.getLogger("app.authz")

SESSION_CHANGED_EVENT = "auth.session_changed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResolvedSession:
    session_id: uuid.UUID
    user_id: uuid.UUID
    email: str
    full_name: str
    expires_at: datetime


def publish_session_change(change: str, session_id: uuid.UUID, user_id: uuid.UUID) -> None:
    events.publish(
        events.build_envelope(
            SESSION_CHANGED_EVENT,
            str(user_id),
            {"change": change, "session_id": str(session_id), "user_id": str(user_id)},
        )
    )


class IdentityService:
    def sign_up(self, session: Session, dto: SignUpRequest) -> ProfileRead:
        settings = get_settings()
        profile = Profile(
            email=str(dto.email).lower(),
            full_name=dto.full_name.strip(),
            password_hash=hash_password(dto.password),
        )
        session.add(profile)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email already registered")

        session.add(UserRole(user_id=profile.id, role=settings.default_signup_role))
        session.commit()
        session.refresh(profile)
        return ProfileRead.model_validate(profile)

    def sign_in(self, session: Session, dto: SignInRequest) -> SignInResponse:
        profile = session.scalar(select(Profile).where(Profile.email == str(dto.email).lower()))
        if profile is None or not verify_password(dto.password, profile.password_hash):
            observe_sign_in("invalid_credentials")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid email or password")
        if profile.status != "active":
            observe_sign_in("inactive")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="account is inactive")

        expires_at = utcnow() + timedelta(minutes=get_settings().session_ttl_minutes)
        auth_session = AuthSession(user_id=profile.id, expires_at=expires_at)
        session.add(auth_session)
        session.commit()

        token = issue_session_token(str(profile.id), str(auth_session.id), expires_at)
        observe_sign_in("success")
        publish_session_change("SIGNED_IN", auth_session.id, profile.id)
        return SignInResponse(
            access_token=token,
            session=SessionRead(
                session_id=auth_session.id,
                user_id=profile.id,
                email=profile.email,
                full_name=profile.full_name,
                roles=self.list_roles(session, profile.id),
                expires_at=expires_at,
            ),
        )

    def sign_out(self, session: Session, session_id: uuid.UUID) -> None:
        auth_session = session.scalar(select(AuthSession).where(AuthSession.id == session_id))
        if auth_session is None or auth_session.revoked_at is not None:
            return
        auth_session.revoked_at = utcnow()
        session.commit()
        publish_session_change("SIGNED_OUT", auth_session.id, auth_session.user_id)

    def resolve_session(self, session: Session, token: str | None) -> ResolvedSession | None:
        if not token:
            return None
        claims = decode_session_token(token)
        if claims is None:
            return None
        try:
            session_id = uuid.UUID(claims.sid)
        except ValueError:
            return None

        row = session.execute(
            select(AuthSession, Profile)
            .join(Profile, AuthSession.user_id == Profile.id)
            .where(
                and_(
                    AuthSession.id == session_id,
                    AuthSession.revoked_at.is_(None),
                    AuthSession.expires_at > utcnow(),
                    Profile.status == "active",
                )
            )
        ).first()
        if row is None:
            return None
        auth_session, profile = row
        if str(profile.id) != claims.sub:
            return None
        return ResolvedSession(
            session_id=auth_session.id,
            user_id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            expires_at=claims.expires_at,
        )

    def has_any_role(self, session: Session, user_id: uuid.UUID, roles: Iterable[str]) -> bool:
        allowed = list(roles)
        if not allowed:
            return False
        match = session.scalar(
            select(UserRole.id).where(and_(UserRole.user_id == user_id, UserRole.role.in_(allowed))).limit(1)
        )
        return match is not None

    def list_roles(self, session: Session, user_id: uuid.UUID) -> list[str]:
        rows = session.scalars(select(UserRole.role).where(UserRole.user_id == user_id).order_by(UserRole.role.asc()))
        return list(rows)

    def get_profile(self, session: Session, user_id: uuid.UUID) -> ProfileRead:
        profile = session.scalar(select(Profile).where(Profile.id == user_id))
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="profile not found")
        return ProfileRead.model_validate(profile)

    def update_profile(self, session: Session, user_id: uuid.UUID, dto: ProfileUpdate) -> ProfileRead:
        profile = session.scalar(select(Profile).where(Profile.id == user_id))
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="profile not found")
        if dto.full_name is not None:
            profile.full_name = dto.full_name.strip()
        session.commit()
        session.refresh(profile)
        return ProfileRead.model_validate(profile)


class UserAdminService:
    entity_type = "profile"

    def list_users(self, session: Session) -> list[UserRead]:
        profiles = session.scalars(
            select(Profile).options(selectinload(Profile.roles)).order_by(Profile.created_at.desc())
        ).all()
        return [self._to_read(profile) for profile in profiles]

    def list_assignable_users(self, session: Session) -> list[ProfileRead]:
        profiles = session.scalars(select(Profile).order_by(Profile.full_name.asc())).all()
        return [ProfileRead.model_validate(profile) for profile in profiles]

    def update_user(self, session: Session, actor_user_id: str, user_id: uuid.UUID, dto: UserUpdate) -> UserRead:
        profile = session.scalar(select(Profile).where(Profile.id == user_id).options(selectinload(Profile.roles)))
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        before = self._to_read(profile).model_dump(mode="json")

        if dto.full_name is not None:
            profile.full_name = dto.full_name.strip()
        if dto.role is not None:
            if dto.role not in APP_ROLES:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid role")
            profile.roles.clear()
            session.flush()
            profile.roles.append(UserRole(role=dto.role))

        revoked: list[AuthSession] = []
        if dto.status is not None and dto.status != profile.status:
            profile.status = dto.status
            if dto.status == "inactive":
                revoked = list(
                    session.scalars(
                        select(AuthSession).where(
                            and_(AuthSession.user_id == profile.id, AuthSession.revoked_at.is_(None))
                        )
                    )
                )
                session.execute(
                    update(AuthSession)
                    .where(and_(AuthSession.user_id == profile.id, AuthSession.revoked_at.is_(None)))
                    .values(revoked_at=utcnow())
                )

        session.commit()
        session.refresh(profile)
        updated = self._to_read(profile)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(profile.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
        )
        for auth_session in revoked:
            publish_session_change("SIGNED_OUT", auth_session.id, profile.id)
        return updated

    def delete_user(self, session: Session, actor_user_id: str, user_id: uuid.UUID) -> None:
        profile = session.scalar(select(Profile).where(Profile.id == user_id).options(selectinload(Profile.roles)))
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        if str(profile.id) == actor_user_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="cannot delete own account")
        before = self._to_read(profile).model_dump(mode="json")
        session.delete(profile)
        session.commit()
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(user_id),
            action="delete",
            before=before,
            after=None,
        )

    def role_stats(self, session: Session) -> RoleStats:
        total_users = session.scalar(select(func.count()).select_from(Profile)) or 0
        counts = dict(session.execute(select(UserRole.role, func.count()).group_by(UserRole.role)).all())
        return RoleStats(
            total_users=total_users,
            admins=counts.get("admin", 0),
            managers=counts.get("manager", 0),
            team_members=counts.get("team_member", 0),
        )

    def _to_read(self, profile: Profile) -> UserRead:
        return UserRead(
            id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            status=profile.status,  # type: ignore[arg-type]
            roles=sorted(role.role for role in profile.roles),  # type: ignore[misc]
            created_at=profile.created_at,
        )


identity_service = IdentityService()
user_admin_service = UserAdminService()
