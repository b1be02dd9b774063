from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


AppRole = Literal["admin", "manager", "team_member"]
ProfileStatus = Literal["active", "inactive"]


class SignUpRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    full_name: str = Field(min_length=1)


class SignInRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class SessionRead(BaseModel):
    session_id: UUID
    user_id: UUID
    email: str
    full_name: str
    roles: list[AppRole]
    expires_at: datetime


class SignInResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session: SessionRead


class ProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    full_name: str
    status: ProfileStatus
    created_at: datetime
    updated_at: datetime


class ProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)


class UserRead(BaseModel):
    id: UUID
    email: str
    full_name: str
    status: ProfileStatus
    roles: list[AppRole]
    created_at: datetime


class UserUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    status: ProfileStatus | None = None
    role: AppRole | None = None


class RoleStats(BaseModel):
    total_users: int
    admins: int
    managers: int
    team_members: int
