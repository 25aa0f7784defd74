"""Unit tests for HS256 session tokens."""

import base64
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from onboarding.service.tokens import TokenIssuer, TokenRejection
from onboarding.storage.models import Account, VerificationStatus

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _claims(token: str) -> dict:
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


@pytest.fixture
def issuer():
    return TokenIssuer("s" * 48, ttl=timedelta(hours=2))


@pytest.fixture
def verified_account():
    account = Account.new("a@x.com", "Ann", "digest", now=NOW)
    return replace(account, verification_status=VerificationStatus.VERIFIED)


class TestIssueAndVerify:
    def test_round_trip_carries_identity(self, issuer):
        token = issuer.issue("acct-1", "a@x.com", NOW)
        check = issuer.verify(token, NOW + timedelta(minutes=5))
        assert check.accepted
        assert check.claims["sub"] == "acct-1"
        assert check.claims["email"] == "a@x.com"
        assert check.claims["iat"] == int(NOW.timestamp())
        assert check.claims["exp"] == int((NOW + timedelta(hours=2)).timestamp())
        assert check.claims["jti"]

    def test_expired(self, issuer):
        token = issuer.issue("acct-1", "a@x.com", NOW)
        check = issuer.verify(token, NOW + timedelta(hours=2))
        assert not check.accepted
        assert check.reason == TokenRejection.EXPIRED
        assert check.claims is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed(self, issuer, token):
        assert issuer.verify(token, NOW).reason == TokenRejection.MALFORMED

    @pytest.mark.parametrize("segment", [0, 1, 2])
    def test_non_ascii_segment_is_malformed(self, issuer, segment):
        parts = issuer.issue("acct-1", "a@x.com", NOW).split(".")
        parts[segment] = parts[segment][:-1] + "é"
        check = issuer.verify(".".join(parts), NOW)
        assert not check.accepted
        assert check.reason == TokenRejection.MALFORMED

    def test_tampered_payload_fails_signature(self, issuer):
        header, _, signature = issuer.issue("acct-1", "a@x.com", NOW).split(".")
        forged = _b64({"sub": "acct-2", "email": "b@x.com", "exp": 9999999999})
        check = issuer.verify(f"{header}.{forged}.{signature}", NOW)
        assert check.reason == TokenRejection.SIGNATURE_INVALID
        assert check.claims is None

    def test_other_secret_fails_signature(self, issuer):
        other = TokenIssuer("t" * 48)
        token = other.issue("acct-1", "a@x.com", NOW)
        assert issuer.verify(token, NOW).reason == TokenRejection.SIGNATURE_INVALID

    def test_alg_none_is_refused(self, issuer):
        _, payload, _ = issuer.issue("acct-1", "a@x.com", NOW).split(".")
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        assert issuer.verify(token, NOW).reason == TokenRejection.SIGNATURE_INVALID

    def test_wrong_audience_is_treated_as_foreign(self):
        minted = TokenIssuer("s" * 48, audience="someone-else")
        ours = TokenIssuer("s" * 48)
        token = minted.issue("acct-1", "a@x.com", NOW)
        assert ours.verify(token, NOW).reason == TokenRejection.SIGNATURE_INVALID

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            TokenIssuer("")


class TestRefresh:
    def test_issues_a_fresh_expiry_for_verified_account(self, issuer, verified_account):
        token = issuer.issue(verified_account.id, verified_account.email, NOW)
        later = NOW + timedelta(hours=1)
        check = issuer.refresh(token, later, lambda _id: verified_account)
        assert check.accepted
        assert check.token != token
        assert _claims(check.token)["exp"] == int((later + timedelta(hours=2)).timestamp())

    def test_refuses_deleted_account(self, issuer, verified_account):
        token = issuer.issue(verified_account.id, verified_account.email, NOW)
        check = issuer.refresh(token, NOW, lambda _id: None)
        assert check.reason == TokenRejection.ACCOUNT_UNAVAILABLE

    def test_refuses_unverified_account(self, issuer, verified_account):
        unverified = replace(verified_account, verification_status=VerificationStatus.UNVERIFIED)
        token = issuer.issue(unverified.id, unverified.email, NOW)
        check = issuer.refresh(token, NOW, lambda _id: unverified)
        assert check.reason == TokenRejection.ACCOUNT_UNAVAILABLE

    def test_never_extends_an_expired_token(self, issuer, verified_account):
        token = issuer.issue(verified_account.id, verified_account.email, NOW)
        check = issuer.refresh(token, NOW + timedelta(hours=3), lambda _id: verified_account)
        assert check.reason == TokenRejection.EXPIRED

    def test_non_ascii_token_is_refused_as_malformed(self, issuer, verified_account):
        header = issuer.issue(verified_account.id, verified_account.email, NOW).split(".")[0]
        check = issuer.refresh(f"{header}.e30.é", NOW, lambda _id: verified_account)
        assert check.reason == TokenRejection.MALFORMED
