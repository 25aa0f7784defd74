from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

CODE_MIN = 100000
CODE_MAX = 999999


class CodeRejection(str, Enum):
    NO_CODE_ISSUED = "no_code_issued"
    MISMATCH = "mismatch"
    EXPIRED = "expired"


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class CodeCheck:
    accepted: bool
    reason: Optional[CodeRejection] = None


class VerificationCodeManager:
    """Six-digit email verification codes.

    A numeric code works both as a link parameter and for manual entry on a
    second device. Issuing a code replaces whatever code the account held.
    """

    def __init__(self, ttl: timedelta = timedelta(hours=1)) -> None:
        self.ttl = ttl

    def issue(self, now: datetime) -> IssuedCode:
        code = CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1)
        return IssuedCode(code=str(code), expires_at=now + self.ttl)

    def validate(
        self,
        stored_code: Optional[str],
        stored_expires_at: Optional[datetime],
        supplied_code: str,
        now: datetime,
    ) -> CodeCheck:
        if not stored_code or stored_expires_at is None:
            return CodeCheck(False, CodeRejection.NO_CODE_ISSUED)
        if not hmac.compare_digest(stored_code.encode(), (supplied_code or "").strip().encode()):
            return CodeCheck(False, CodeRejection.MISMATCH)
        if stored_expires_at <= now:
            return CodeCheck(False, CodeRejection.EXPIRED)
        return CodeCheck(True)
