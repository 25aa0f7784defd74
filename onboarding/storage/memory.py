from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from onboarding.logging import get_logger
from onboarding.storage.errors import ConstraintViolation
from onboarding.storage.models import (
    MUTABLE_ACCOUNT_FIELDS,
    Account,
    VerificationStatus,
    utcnow,
)

_DATETIME_FIELDS = (
    "verification_code_expires_at",
    "locked_until",
    "reset_token_expires_at",
    "last_login_at",
    "created_at",
    "updated_at",
)


class MemoryStore:
    """In-process account store for development and tests.

    Optionally mirrors its contents to ``<fs_root>/state/memory_store.json`` so
    a dev server keeps accounts across restarts. Every read returns a copy;
    writes go through :meth:`compare_and_swap`.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so persistence can run inside a held write
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        with self._data_lock:
            rows: List[Dict[str, Any]] = []
            for account in self.accounts.values():
                row = asdict(account)
                row["verification_status"] = account.verification_status.value
                for key in _DATETIME_FIELDS:
                    row[key] = self._serialize_datetime(row[key])
                rows.append(row)
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps({"accounts": rows}))
            tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            payload = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        for row in payload.get("accounts", []):
            for key in _DATETIME_FIELDS:
                row[key] = self._deserialize_datetime(row.get(key))
            row["verification_status"] = VerificationStatus(row["verification_status"])
            account = Account(**row)
            self.accounts[account.id] = account
        return True

    def ping(self) -> bool:
        return True

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if any(existing.email == account.email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(account)
            self.accounts[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return replace(account) if account else None

    def find_accounts_by_verification_code(self, code: str) -> List[Account]:
        with self._data_lock:
            return [
                replace(a) for a in self.accounts.values() if a.verification_code == code
            ]

    def get_account_by_reset_digest(self, digest: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.reset_token_digest == digest),
                None,
            )
            return replace(account) if account else None

    def compare_and_swap(
        self, account_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Account]:
        """Apply ``changes`` only if the stored version is ``expected_version``.

        Returns the updated account, or ``None`` when the account is gone or
        was modified since it was read.
        """
        unknown = set(changes) - MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        with self._data_lock:
            current = self.accounts.get(account_id)
            if current is None or current.version != expected_version:
                return None
            updated = replace(
                current,
                **changes,
                version=current.version + 1,
                updated_at=utcnow(),
            )
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self._persist_state()
            return True

