from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from filehaven.logging import get_correlation_id
from filehaven.service.auth import normalize_email

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()-]{5,32}$")


def _validate_optional_phone(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    value = value.strip()
    if not _PHONE_PATTERN.match(value):
        raise ValueError("invalid phone number")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_phone(value)


class LoginRequest(BaseModel):
    # Missing, empty and oversized values are not rejected here; they fail
    # downstream with the same 401 as a wrong password
    email: Optional[str] = None
    password: Optional[str] = None


class SessionUser(BaseModel):
    id: str
    name: Optional[str] = None
    email: str
    image: Optional[str] = None
    provider: Optional[str] = None
    phone: Optional[str] = None
    role: str = "user"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SessionView(BaseModel):
    user: SessionUser


class CurrentUserResponse(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    provider: Optional[str] = None
    role: str
    created_at: datetime
    updated_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


class LoginLogResponse(BaseModel):
    id: str
    email: str
    user_id: str
    provider: str
    ip: str
    device: str
    timestamp: datetime


class LoginLogListResponse(BaseModel):
    items: List[LoginLogResponse]


class LoginLogDeleteResponse(BaseModel):
    user_id: str
    deleted_count: int


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)
    role: Optional[str] = Field(default=None, pattern="^(user|admin)$")

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_phone(value)


class UserDeleteResponse(BaseModel):
    user_id: str
    deleted: bool
