"""Pydantic schemas for admin users and employee logins."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, field_validator

_VALID_ROLES = {"admin", "employee"}


def _normalise_email(v: str) -> str:
    v = v.strip().lower()
    if "@" not in v:
        raise ValueError("Invalid email address")
    return v


class UserCreate(BaseModel):
    email: str
    password: str
    full_name: str | None = None
    role: str = "admin"

    @field_validator("role")
    @classmethod
    def _validate_role(cls, v: str) -> str:
        if v not in _VALID_ROLES:
            raise ValueError(f"Role must be one of: {sorted(_VALID_ROLES)}")
        return v

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return _normalise_email(v)


class UserRead(BaseModel):
    id: int
    email: str
    full_name: str | None
    role: str
    is_active: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}


class EmployeeCreate(BaseModel):
    name: str
    email: str
    password: str
    department: str | None = None
    position: str | None = None

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return _normalise_email(v)

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name must not be empty")
        if len(v) > 200:
            raise ValueError("Name must not exceed 200 characters")
        return v

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class EmployeeRead(BaseModel):
    id: int
    name: str
    email: str
    department: str | None
    position: str | None
    is_active: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}


class MeResponse(BaseModel):
    """The logged-in principal plus the internal user id it acts as."""

    id: int
    email: str
    name: str | None
    kind: str
    user_id: int | None
