from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from onboarding.logging import get_logger
from onboarding.storage.models import Account

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenRejection(str, Enum):
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    ACCOUNT_UNAVAILABLE = "account_unavailable"


@dataclass(frozen=True)
class TokenCheck:
    accepted: bool
    claims: Optional[dict[str, Any]] = None
    reason: Optional[TokenRejection] = None
    token: Optional[str] = None


def _rejected(reason: TokenRejection) -> TokenCheck:
    return TokenCheck(accepted=False, reason=reason)


class TokenIssuer:
    """HS256 bearer tokens carrying ``sub``, ``email``, ``iat`` and ``exp``.

    There is no server-side revocation, so lifetimes are kept short and a
    refresh re-checks the account before minting a replacement.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "onboarding",
        audience: str = "onboarding-clients",
        ttl: timedelta = timedelta(hours=2),
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, account_id: str, email: str, now: datetime) -> str:
        issued_at = int(now.timestamp())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account_id,
            "email": email,
            "iat": issued_at,
            "exp": int((now + self.ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        header_enc = self._encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, now: datetime) -> TokenCheck:
        if not token or not isinstance(token, str):
            return _rejected(TokenRejection.MALFORMED)
        if not token.isascii():
            return _rejected(TokenRejection.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            return _rejected(TokenRejection.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        # Pin the algorithm before trusting anything else in the token
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return _rejected(TokenRejection.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            return _rejected(TokenRejection.SIGNATURE_INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return _rejected(TokenRejection.SIGNATURE_INVALID)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return _rejected(TokenRejection.MALFORMED)
        if not isinstance(payload, dict):
            return _rejected(TokenRejection.MALFORMED)
        # A validly signed token from another issuer/audience was not minted for us
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return _rejected(TokenRejection.SIGNATURE_INVALID)
        if not payload.get("sub"):
            return _rejected(TokenRejection.MALFORMED)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return _rejected(TokenRejection.MALFORMED)
        if exp_ts <= now.timestamp():
            return _rejected(TokenRejection.EXPIRED)
        return TokenCheck(accepted=True, claims=payload)

    def refresh(
        self,
        token: str,
        now: datetime,
        load_account: Callable[[str], Optional[Account]],
    ) -> TokenCheck:
        """Mint a replacement for a still-valid token.

        The account is re-read so a deleted or no-longer-verified account
        can never extend its session.
        """
        check = self.verify(token, now)
        if not check.accepted:
            return check
        account = load_account(str(check.claims["sub"]))
        if account is None or not account.is_verified:
            return _rejected(TokenRejection.ACCOUNT_UNAVAILABLE)
        new_token = self.issue(account.id, account.email, now)
        return TokenCheck(
            accepted=True, claims=self.verify(new_token, now).claims, token=new_token
        )
