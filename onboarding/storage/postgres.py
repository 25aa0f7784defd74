from __future__ import annotations

import uuid
from datetime import timezone
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from onboarding.logging import get_logger
from onboarding.storage.errors import ConstraintViolation, StoreUnavailableError
from onboarding.storage.models import (
    MUTABLE_ACCOUNT_FIELDS,
    Account,
    VerificationStatus,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    display_name TEXT NOT NULL,
    password_digest TEXT NOT NULL,
    profile_image_ref TEXT,
    verification_status TEXT NOT NULL DEFAULT 'unverified',
    verification_code TEXT,
    verification_code_expires_at TIMESTAMPTZ,
    failed_login_count INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_count >= 0),
    locked_until TIMESTAMPTZ,
    reset_token_digest TEXT,
    reset_token_expires_at TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
);
CREATE UNIQUE INDEX IF NOT EXISTS account_email_key ON account (lower(email));
CREATE INDEX IF NOT EXISTS account_verification_code_idx
    ON account (verification_code) WHERE verification_code IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS account_reset_token_digest_key
    ON account (reset_token_digest) WHERE reset_token_digest IS NOT NULL;
"""


# Raised when the pool is exhausted or the server drops mid-query
_UNAVAILABLE = (PoolTimeout, errors.OperationalError)


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed account store.

    Conditional updates are a single ``UPDATE ... WHERE version = %s`` so two
    writers racing on one account cannot both succeed.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``account`` table and its indexes if they are missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except _UNAVAILABLE as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            display_name=row["display_name"],
            password_digest=row["password_digest"],
            profile_image_ref=row.get("profile_image_ref"),
            verification_status=VerificationStatus(row["verification_status"]),
            verification_code=row.get("verification_code"),
            verification_code_expires_at=_aware(row.get("verification_code_expires_at")),
            failed_login_count=int(row.get("failed_login_count") or 0),
            locked_until=_aware(row.get("locked_until")),
            reset_token_digest=row.get("reset_token_digest"),
            reset_token_expires_at=_aware(row.get("reset_token_expires_at")),
            last_login_at=_aware(row.get("last_login_at")),
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
            version=int(row["version"]),
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("account store unavailable") from exc
        return self._row_to_account(row) if row else None

    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, email, display_name, password_digest, profile_image_ref,
                        verification_status, verification_code, verification_code_expires_at,
                        failed_login_count, created_at, updated_at, version
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account.id,
                        account.email,
                        account.display_name,
                        account.password_digest,
                        account.profile_image_ref,
                        account.verification_status.value,
                        account.verification_code,
                        account.verification_code_expires_at,
                        account.failed_login_count,
                        account.created_at,
                        account.updated_at,
                        account.version,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("account store unavailable") from exc
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        return self._fetch_one("SELECT * FROM account WHERE id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE lower(email) = lower(%s)", (email,)
        )

    def find_accounts_by_verification_code(self, code: str) -> List[Account]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM account WHERE verification_code = %s", (code,)
                ).fetchall()
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("account store unavailable") from exc
        return [self._row_to_account(row) for row in rows]

    def get_account_by_reset_digest(self, digest: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE reset_token_digest = %s", (digest,)
        )

    def compare_and_swap(
        self, account_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Account]:
        unknown = set(changes) - MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        params: List[Any] = []
        assignments = []
        for column, value in changes.items():
            if isinstance(value, VerificationStatus):
                value = value.value
            assignments.append(
                sql.SQL("{} = %s").format(sql.Identifier(column))
            )
            params.append(value)
        assignments.append(sql.SQL("version = version + 1"))
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL(
            "UPDATE account SET {} WHERE id = %s AND version = %s RETURNING *"
        ).format(sql.SQL(", ").join(assignments))
        params.extend([account_id, expected_version])
        try:
            with self._connect() as conn:
                row = conn.execute(query, tuple(params)).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("unique constraint violated", {"account_id": account_id})
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("account store unavailable") from exc
        return self._row_to_account(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
                return result.rowcount > 0
        except _UNAVAILABLE as exc:
            raise StoreUnavailableError("account store unavailable") from exc
