from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path

from onboarding.api.schemas import (
    AccountResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileUpdateRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    VerifyCodeRequest,
)
from onboarding.logging import get_logger
from onboarding.service.accounts import AuthContext
from onboarding.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

# Same wording whether or not the address is registered
_RESEND_MESSAGE = "If the account exists and is unverified, a new verification code has been sent."
_FORGOT_MESSAGE = "If the email exists, a password reset link has been sent."


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data)


def _token_ttl_seconds() -> int:
    return get_runtime().settings.session_token_ttl_minutes * 60


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer token into the calling account."""
    return await get_runtime().accounts.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    """Create an unverified account and email its verification code.

    Raises:
        409: If the email is already registered
        503: If the verification email could not be sent (nothing is kept)
    """
    account = await get_runtime().accounts.register(
        email=body.email,
        display_name=body.display_name,
        password=body.password,
        profile_image_ref=body.profile_image_ref,
    )
    return _ok(AccountResponse.from_account(account))


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(body: EmailRequest):
    await get_runtime().accounts.resend_verification(body.email)
    return _ok(MessageResponse(message=_RESEND_MESSAGE))


@router.get("/verify/{code}", response_model=Envelope)
async def verify_link(code: str = Path(..., min_length=1, max_length=16)):
    """Verify by the code alone, as used by the emailed link."""
    account = await get_runtime().accounts.verify(None, code)
    return _ok(AccountResponse.from_account(account))


@router.post("/verify-code", response_model=Envelope)
async def verify_code(body: VerifyCodeRequest):
    account = await get_runtime().accounts.verify(body.email, body.code)
    return _ok(AccountResponse.from_account(account))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If the email is unknown or the password is wrong
        403: If the email address has not been verified
        423: If the account is locked after repeated failures
    """
    account, token = await get_runtime().accounts.login(body.email, body.password)
    return _ok(
        LoginResponse(
            access_token=token,
            expires_in=_token_ttl_seconds(),
            account=AccountResponse.from_account(account),
        )
    )


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: EmailRequest):
    await get_runtime().accounts.request_password_reset(body.email)
    return _ok(MessageResponse(message=_FORGOT_MESSAGE))


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().accounts.reset_password(body.token, body.new_password)
    return _ok(
        MessageResponse(
            message="Password reset successful. You can now login with your new password."
        )
    )


@router.put("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    await get_runtime().accounts.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return _ok(MessageResponse(message="Password changed successfully"))


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: RefreshTokenRequest):
    token = await get_runtime().accounts.refresh_session(body.refresh_token)
    return _ok(TokenResponse(access_token=token, expires_in=_token_ttl_seconds()))


@router.post("/logout", response_model=Envelope)
async def logout(principal: AuthContext = Depends(get_principal)):
    """Acknowledge a logout; tokens are stateless and simply expire."""
    logger.info("logout", account_id=principal.account_id)
    return _ok(MessageResponse(message="Logged out successfully"))


@router.get("/profile", response_model=Envelope)
async def get_profile(principal: AuthContext = Depends(get_principal)):
    account = await get_runtime().accounts.get_profile(principal.account_id)
    return _ok(AccountResponse.from_account(account))


@router.put("/profile", response_model=Envelope)
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_principal)
):
    account = await get_runtime().accounts.update_profile(
        principal.account_id,
        display_name=body.display_name,
        profile_image_ref=body.profile_image_ref,
    )
    return _ok(AccountResponse.from_account(account))
