from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from onboarding.logging import get_correlation_id
from onboarding.service.validation import (
    MAX_DISPLAY_NAME_LENGTH,
    MAX_PASSWORD_LENGTH,
    MAX_PROFILE_IMAGE_REF_LENGTH,
    validate_display_name,
    validate_email,
    validate_password,
)
from onboarding.storage.models import Account

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "conflict",
    "invalid_credentials",
    "unauthorized",
    "forbidden",
    "not_verified",
    "account_locked",
    "invalid_or_expired_code",
    "invalid_or_expired_token",
    "not_found",
    "dependency_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
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


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Uniform API response envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    display_name: str = Field(..., max_length=MAX_DISPLAY_NAME_LENGTH * 2)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    profile_image_ref: Optional[str] = Field(
        default=None, max_length=MAX_PROFILE_IMAGE_REF_LENGTH
    )

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("display_name")
    @classmethod
    def _validate_display_name(cls, value: str) -> str:
        return validate_display_name(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password(value)


class EmailRequest(BaseModel):
    """Body for the success-shaped lookups (resend, forgot password)."""

    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_lookup_email(cls, value: str) -> str:
        return validate_email(value)


class VerifyCodeRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return validate_email(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password(value)


class ChangePasswordRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password(value)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(
        default=None, max_length=MAX_DISPLAY_NAME_LENGTH * 2
    )
    profile_image_ref: Optional[str] = Field(
        default=None, max_length=MAX_PROFILE_IMAGE_REF_LENGTH
    )


class AccountResponse(BaseModel):
    id: str
    email: str
    display_name: str
    profile_image_ref: Optional[str] = None
    is_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        # Explicit allow-list: credential and guard fields never leave the service
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            profile_image_ref=account.profile_image_ref,
            is_verified=account.is_verified,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    account: AccountResponse


class MessageResponse(BaseModel):
    message: str
