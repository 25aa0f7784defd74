from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


@dataclass
class Account:
    id: str
    email: str
    display_name: str
    password_digest: str
    profile_image_ref: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    verification_code: Optional[str] = None
    verification_code_expires_at: Optional[datetime] = None
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    reset_token_digest: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED

    @classmethod
    def new(
        cls,
        email: str,
        display_name: str,
        password_digest: str,
        *,
        profile_image_ref: Optional[str] = None,
        verification_code: Optional[str] = None,
        verification_code_expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> "Account":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            display_name=display_name,
            password_digest=password_digest,
            profile_image_ref=profile_image_ref,
            verification_code=verification_code,
            verification_code_expires_at=verification_code_expires_at,
            created_at=now,
            updated_at=now,
        )


# Columns that callers may change through a conditional update; identity and
# bookkeeping columns (id, created_at, updated_at, version) are store-owned.
MUTABLE_ACCOUNT_FIELDS = frozenset(
    {
        "display_name",
        "password_digest",
        "profile_image_ref",
        "verification_status",
        "verification_code",
        "verification_code_expires_at",
        "failed_login_count",
        "locked_until",
        "reset_token_digest",
        "reset_token_expires_at",
        "last_login_at",
    }
)
