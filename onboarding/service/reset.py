from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

# 32 bytes = 256 bits of entropy
RESET_TOKEN_BYTES = 32


class ResetTokenRejection(str, Enum):
    NO_TOKEN_ISSUED = "no_token_issued"
    MISMATCH = "mismatch"
    EXPIRED = "expired"


@dataclass(frozen=True)
class IssuedResetToken:
    raw_token: str
    digest: str
    expires_at: datetime


@dataclass(frozen=True)
class ResetTokenCheck:
    accepted: bool
    reason: Optional[ResetTokenRejection] = None


class PasswordResetTokenManager:
    """Password reset tokens that are persisted only as a SHA-256 digest.

    The raw token goes to the user by email and is never stored, so a copy of
    the account table cannot be used to reset passwords.
    """

    def __init__(self, ttl: timedelta = timedelta(minutes=10)) -> None:
        self.ttl = ttl

    @staticmethod
    def digest(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode()).hexdigest()

    def issue(self, now: datetime) -> IssuedResetToken:
        raw = secrets.token_hex(RESET_TOKEN_BYTES)
        return IssuedResetToken(
            raw_token=raw, digest=self.digest(raw), expires_at=now + self.ttl
        )

    def validate(
        self,
        stored_digest: Optional[str],
        stored_expires_at: Optional[datetime],
        supplied_raw_token: str,
        now: datetime,
    ) -> ResetTokenCheck:
        if not stored_digest or stored_expires_at is None:
            return ResetTokenCheck(False, ResetTokenRejection.NO_TOKEN_ISSUED)
        supplied_digest = self.digest(supplied_raw_token or "")
        if not hmac.compare_digest(stored_digest, supplied_digest):
            return ResetTokenCheck(False, ResetTokenRejection.MISMATCH)
        if stored_expires_at <= now:
            return ResetTokenCheck(False, ResetTokenRejection.EXPIRED)
        return ResetTokenCheck(True)
