from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from onboarding.config import Settings
from onboarding.logging import get_logger, hash_email
from onboarding.service.credentials import (
    CredentialVerifier,
    HashingError,
    InvalidDigestError,
)
from onboarding.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    DependencyError,
    InvalidCredentialsError,
    InvalidOrExpiredCodeError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    NotVerifiedError,
    ServerError,
    ValidationError,
)
from onboarding.service.login_guard import LoginGuard
from onboarding.service.reset import PasswordResetTokenManager
from onboarding.service.tokens import TokenIssuer
from onboarding.service.validation import (
    normalize_email,
    normalize_unicode,
    validate_display_name,
    validate_email,
    validate_password,
    validate_profile_image_ref,
)
from onboarding.service.verification import VerificationCodeManager
from onboarding.storage.errors import ConstraintViolation, StoreUnavailableError
from onboarding.storage.models import Account, VerificationStatus, utcnow

logger = get_logger(__name__)

Changes = Dict[str, Any]


class AccountStore(Protocol):
    def ping(self) -> bool: ...

    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def find_accounts_by_verification_code(self, code: str) -> List[Account]: ...

    def get_account_by_reset_digest(self, digest: str) -> Optional[Account]: ...

    def compare_and_swap(
        self, account_id: str, expected_version: int, changes: Changes
    ) -> Optional[Account]: ...

    def delete_account(self, account_id: str) -> bool: ...


class EmailGateway(Protocol):
    def send_verification_email(self, email: str, name: str, code: str) -> bool: ...

    def send_password_reset_email(self, email: str, name: str, raw_token: str) -> bool: ...

    def send_welcome_email(self, email: str, name: str) -> bool: ...


@dataclass(frozen=True)
class AuthContext:
    account_id: str
    email: str


class AccountService:
    """Drives accounts through registration, verification and login.

    Every read-modify-write goes through :meth:`_update`, which re-reads the
    account and re-applies the mutation when the store reports a concurrent
    write. Mutations therefore re-check their preconditions against the
    freshest record, which is what makes codes and reset tokens single-use
    and keeps concurrent failed logins from losing increments.
    """

    def __init__(
        self,
        store: AccountStore,
        email_gateway: EmailGateway,
        *,
        tokens: TokenIssuer,
        credentials: Optional[CredentialVerifier] = None,
        codes: Optional[VerificationCodeManager] = None,
        reset_tokens: Optional[PasswordResetTokenManager] = None,
        login_guard: Optional[LoginGuard] = None,
        clock: Callable[[], datetime] = utcnow,
        max_cas_retries: int = 5,
    ) -> None:
        self.store = store
        self.email = email_gateway
        self.tokens = tokens
        self.credentials = credentials or CredentialVerifier()
        self.codes = codes or VerificationCodeManager()
        self.reset_tokens = reset_tokens or PasswordResetTokenManager()
        self.login_guard = login_guard or LoginGuard()
        self.clock = clock
        self.max_cas_retries = max_cas_retries
        self.logger = logger
        self._dummy_digest: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: AccountStore,
        email_gateway: EmailGateway,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AccountService":
        return cls(
            store,
            email_gateway,
            tokens=TokenIssuer(
                settings.jwt_secret,
                issuer=settings.jwt_issuer,
                audience=settings.jwt_audience,
                ttl=timedelta(minutes=settings.session_token_ttl_minutes),
            ),
            credentials=CredentialVerifier(
                time_cost=settings.argon2_time_cost,
                memory_cost=settings.argon2_memory_cost,
                parallelism=settings.argon2_parallelism,
            ),
            codes=VerificationCodeManager(
                ttl=timedelta(minutes=settings.verification_code_ttl_minutes)
            ),
            reset_tokens=PasswordResetTokenManager(
                ttl=timedelta(minutes=settings.password_reset_ttl_minutes)
            ),
            login_guard=LoginGuard(
                max_attempts=settings.login_max_attempts,
                lock_duration=timedelta(minutes=settings.login_lock_minutes),
            ),
            clock=clock,
            max_cas_retries=settings.store_max_cas_retries,
        )

    def _now(self) -> datetime:
        return self.clock()

    # -- helpers ---------------------------------------------------------

    def _update(
        self, account_id: str, mutation: Callable[[Account], Optional[Changes]]
    ) -> Optional[Account]:
        """Apply ``mutation`` to the current record with compare-and-swap.

        ``mutation`` returns the changes to write, or ``None`` to leave the
        record alone. Returns the stored account (updated or not), or ``None``
        if it no longer exists.
        """
        for attempt in range(1, self.max_cas_retries + 1):
            current = self.store.get_account(account_id)
            if current is None:
                return None
            changes = mutation(current)
            if not changes:
                return current
            updated = self.store.compare_and_swap(current.id, current.version, changes)
            if updated is not None:
                return updated
            self.logger.info(
                "account_update_conflict", account_id=account_id, attempt=attempt
            )
        self.logger.error(
            "account_update_retries_exhausted",
            account_id=account_id,
            attempts=self.max_cas_retries,
        )
        raise ServerError("account is being modified concurrently; please retry")

    def _hash_password(self, password: str) -> str:
        try:
            return self.credentials.hash(password)
        except HashingError as exc:
            self.logger.error("password_hash_failed", error=str(exc))
            raise ServerError("unable to process password") from exc

    def _password_matches(self, password: str, digest: str) -> bool:
        try:
            return self.credentials.verify(password, digest)
        except InvalidDigestError:
            self.logger.error("password_digest_invalid")
            return False

    def _burn_password_check(self, password: str) -> None:
        # Equalize timing with the wrong-password path for unknown emails
        if self._dummy_digest is None:
            self._dummy_digest = self._hash_password("onboarding-unknown-account")
        self._password_matches(password, self._dummy_digest)

    async def _dispatch(self, kind: str, send: Callable[..., bool], *args: Any) -> bool:
        try:
            sent = await asyncio.to_thread(send, *args)
        except Exception as exc:
            self.logger.error(
                "email_dispatch_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            self.logger.warning("email_dispatch_rejected", kind=kind)
        return bool(sent)

    # -- registration and verification ------------------------------------

    async def register(
        self,
        email: str,
        display_name: str,
        password: str,
        profile_image_ref: Optional[str] = None,
    ) -> Account:
        try:
            normalized = validate_email(email)
            name = validate_display_name(display_name)
            validate_password(password)
            image_ref = validate_profile_image_ref(profile_image_ref)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        if self.store.get_account_by_email(normalized) is not None:
            raise ConflictError("email already registered", detail={"field": "email"})

        now = self._now()
        issued = self.codes.issue(now)
        account = Account.new(
            normalized,
            name,
            self._hash_password(password),
            profile_image_ref=image_ref,
            verification_code=issued.code,
            verification_code_expires_at=issued.expires_at,
            now=now,
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc

        sent = await self._dispatch(
            "verification",
            self.email.send_verification_email,
            created.email,
            created.display_name,
            issued.code,
        )
        if not sent:
            # Nobody could ever verify this account, so remove it
            try:
                self.store.delete_account(created.id)
            except StoreUnavailableError as exc:
                self.logger.error(
                    "registration_rollback_failed",
                    account_id=created.id,
                    email_hash=hash_email(created.email),
                    error=str(exc),
                )
            else:
                self.logger.warning(
                    "registration_rolled_back",
                    account_id=created.id,
                    email_hash=hash_email(created.email),
                )
            raise DependencyError(
                "unable to send verification email; please try again later"
            )

        self.logger.info(
            "account_registered",
            account_id=created.id,
            email_hash=hash_email(created.email),
        )
        return created

    async def resend_verification(self, email: str) -> None:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized)
        if account is None or account.is_verified:
            self.logger.info(
                "verification_resend_skipped", email_hash=hash_email(normalized)
            )
            return

        issued = self.codes.issue(self._now())

        def apply(current: Account) -> Optional[Changes]:
            if current.is_verified:
                return None
            return {
                "verification_code": issued.code,
                "verification_code_expires_at": issued.expires_at,
            }

        updated = self._update(account.id, apply)
        if updated is None or updated.verification_code != issued.code:
            return
        await self._dispatch(
            "verification",
            self.email.send_verification_email,
            updated.email,
            updated.display_name,
            issued.code,
        )
        self.logger.info("verification_code_reissued", account_id=updated.id)

    def _find_code_holder(
        self, email: Optional[str], code: str, now: datetime
    ) -> Optional[Account]:
        if email is not None:
            return self.store.get_account_by_email(normalize_email(email))
        live = [
            account
            for account in self.store.find_accounts_by_verification_code(code)
            if account.verification_code_expires_at is not None
            and account.verification_code_expires_at > now
        ]
        if len(live) > 1:
            # A bare six-digit code cannot say which account it belongs to
            self.logger.warning("verification_code_ambiguous", matches=len(live))
            return None
        return live[0] if live else None

    async def verify(self, email: Optional[str], code: str) -> Account:
        supplied = (code or "").strip()
        if not supplied:
            raise InvalidOrExpiredCodeError("invalid or expired verification code")
        now = self._now()
        holder = self._find_code_holder(email, supplied, now)
        if holder is None:
            raise InvalidOrExpiredCodeError("invalid or expired verification code")

        rejections: list = []

        def apply(current: Account) -> Optional[Changes]:
            check = self.codes.validate(
                current.verification_code,
                current.verification_code_expires_at,
                supplied,
                now,
            )
            if not check.accepted:
                rejections.append(check.reason)
                return None
            return {
                "verification_status": VerificationStatus.VERIFIED,
                "verification_code": None,
                "verification_code_expires_at": None,
            }

        updated = self._update(holder.id, apply)
        if updated is None or rejections:
            self.logger.info(
                "verification_rejected",
                account_id=holder.id,
                reason=rejections[-1].value if rejections else "account_missing",
            )
            raise InvalidOrExpiredCodeError("invalid or expired verification code")

        self.logger.info("account_verified", account_id=updated.id)
        await self._dispatch(
            "welcome", self.email.send_welcome_email, updated.email, updated.display_name
        )
        return updated

    # -- login and sessions ---------------------------------------------

    async def login(self, email: str, password: str) -> Tuple[Account, str]:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized)
        if account is None:
            self._burn_password_check(password or "")
            self.logger.info("login_failed", reason="unknown_email", email_hash=hash_email(normalized))
            raise InvalidCredentialsError("invalid email or password")

        now = self._now()
        verdicts: Dict[str, bool] = {}
        outcome: Dict[str, str] = {}

        def matches(digest: str) -> bool:
            if digest not in verdicts:
                verdicts[digest] = self._password_matches(password or "", digest)
            return verdicts[digest]

        def apply(current: Account) -> Optional[Changes]:
            if self.login_guard.is_locked(current, now):
                outcome["result"] = "locked"
                return None
            if not current.is_verified:
                outcome["result"] = "unverified"
                return None
            if not matches(current.password_digest):
                state = self.login_guard.record_failure(current, now)
                outcome["result"] = "lock_engaged" if state.is_locked(now) else "bad_password"
                return state.as_changes()
            changes = self.login_guard.record_success(current).as_changes()
            changes["last_login_at"] = now
            if self.credentials.needs_rehash(current.password_digest):
                changes["password_digest"] = self._hash_password(password)
            outcome["result"] = "ok"
            return changes

        updated = self._update(account.id, apply)
        result = outcome.get("result")
        if updated is None:
            raise InvalidCredentialsError("invalid email or password")
        if result in ("locked", "lock_engaged"):
            self.logger.warning(
                "login_refused_locked",
                account_id=updated.id,
                locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
                lock_engaged=result == "lock_engaged",
            )
            raise AccountLockedError(
                "account temporarily locked after repeated failed logins",
                detail={"locked_until": updated.locked_until.isoformat()}
                if updated.locked_until
                else None,
            )
        if result == "unverified":
            raise NotVerifiedError("email address has not been verified")
        if result == "bad_password":
            self.logger.info(
                "login_failed",
                reason="bad_password",
                account_id=updated.id,
                failed_login_count=updated.failed_login_count,
            )
            raise InvalidCredentialsError("invalid email or password")

        token = self.tokens.issue(updated.id, updated.email, now)
        self.logger.info("login_succeeded", account_id=updated.id)
        return updated, token

    async def refresh_session(self, token: str) -> str:
        check = self.tokens.refresh(token, self._now(), self.store.get_account)
        if not check.accepted:
            self.logger.info("token_refresh_rejected", reason=check.reason.value)
            raise InvalidOrExpiredTokenError("invalid or expired token")
        return check.token

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("missing bearer token")
        check = self.tokens.verify(token.strip(), self._now())
        if not check.accepted:
            self.logger.info("bearer_token_rejected", reason=check.reason.value)
            raise AuthenticationError("invalid or expired token")
        claims = check.claims
        return AuthContext(account_id=str(claims["sub"]), email=str(claims.get("email", "")))

    # -- passwords ---------------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized)
        if account is None:
            self.logger.info(
                "password_reset_unknown_email", email_hash=hash_email(normalized)
            )
            return

        issued = self.reset_tokens.issue(self._now())
        updated = self._update(
            account.id,
            lambda current: {
                "reset_token_digest": issued.digest,
                "reset_token_expires_at": issued.expires_at,
            },
        )
        if updated is None:
            return
        self.logger.info("password_reset_requested", account_id=updated.id)
        await self._dispatch(
            "password_reset",
            self.email.send_password_reset_email,
            updated.email,
            updated.display_name,
            issued.raw_token,
        )

    async def reset_password(self, raw_token: str, new_password: str) -> None:
        try:
            validate_password(new_password)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        supplied = (raw_token or "").strip()
        if not supplied:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        account = self.store.get_account_by_reset_digest(self.reset_tokens.digest(supplied))
        if account is None:
            self.logger.info("password_reset_rejected", reason="unknown_token")
            raise InvalidOrExpiredTokenError("invalid or expired reset token")

        now = self._now()
        new_digest = self._hash_password(new_password)
        rejections: list = []

        def apply(current: Account) -> Optional[Changes]:
            check = self.reset_tokens.validate(
                current.reset_token_digest, current.reset_token_expires_at, supplied, now
            )
            if not check.accepted:
                rejections.append(check.reason)
                return None
            return {
                "password_digest": new_digest,
                "reset_token_digest": None,
                "reset_token_expires_at": None,
            }

        updated = self._update(account.id, apply)
        if updated is None or rejections:
            self.logger.info(
                "password_reset_rejected",
                account_id=account.id,
                reason=rejections[-1].value if rejections else "account_missing",
            )
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        self.logger.info("password_reset_completed", account_id=updated.id)

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        try:
            validate_password(new_password)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        if not self._password_matches(current_password or "", account.password_digest):
            self.logger.info("password_change_rejected", account_id=account_id)
            raise InvalidCredentialsError("current password is incorrect")

        new_digest = self._hash_password(new_password)
        checked_digest = account.password_digest

        def apply(current: Account) -> Optional[Changes]:
            # A concurrent reset replaced the password we just checked
            if current.password_digest != checked_digest:
                raise InvalidCredentialsError("current password is incorrect")
            return {"password_digest": new_digest}

        if self._update(account_id, apply) is None:
            raise NotFoundError("account not found")
        self.logger.info("password_changed", account_id=account_id)

    # -- profile -------------------------------------------------------------

    async def get_profile(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def update_profile(
        self,
        account_id: str,
        display_name: Optional[str] = None,
        profile_image_ref: Optional[str] = None,
    ) -> Account:
        changes: Changes = {}
        if display_name is not None and normalize_unicode(display_name).strip():
            try:
                changes["display_name"] = validate_display_name(display_name)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        if profile_image_ref is not None:
            try:
                changes["profile_image_ref"] = validate_profile_image_ref(profile_image_ref)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc

        updated = self._update(account_id, lambda current: dict(changes) or None)
        if updated is None:
            raise NotFoundError("account not found")
        if changes:
            self.logger.info(
                "profile_updated", account_id=account_id, fields=sorted(changes)
            )
        return updated
