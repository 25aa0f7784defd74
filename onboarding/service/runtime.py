from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from onboarding.config import get_settings, reset_settings_cache
from onboarding.logging import get_logger
from onboarding.service.accounts import AccountService
from onboarding.service.email import EmailService
from onboarding.storage.errors import StoreUnavailableError
from onboarding.storage.memory import MemoryStore
from onboarding.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: postgresql://app:hunter2@db:5432/app -> postgresql://app:***@db:5432/app
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                # Tests get a fresh store per runtime; dev servers keep state on disk
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.state_dir
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService.from_settings(self.settings)
        self.accounts = AccountService.from_settings(
            self.settings, self.store, self.email
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            email_configured=self.email.is_configured,
            session_token_ttl_minutes=self.settings.session_token_ttl_minutes,
            login_max_attempts=self.settings.login_max_attempts,
        )

    async def check_health(self, *, include_email: bool = True) -> Dict[str, Any]:
        """Probe the account store and, optionally, the SMTP transport."""
        try:
            store_ok = bool(await asyncio.to_thread(self.store.ping))
        except StoreUnavailableError as exc:
            logger.warning("health_store_unavailable", error=str(exc))
            store_ok = False
        checks: Dict[str, Any] = {"store": "ok" if store_ok else "unavailable"}
        healthy = store_ok
        if include_email:
            email_ok = await asyncio.to_thread(self.email.verify_connection)
            checks["email"] = (
                ("ok" if self.email.is_configured else "dev_mode")
                if email_ok
                else "unavailable"
            )
            healthy = healthy and email_ok
        return {"status": "healthy" if healthy else "degraded", "checks": checks}

    def close(self) -> None:
        closer = getattr(self.store, "close", None)
        if callable(closer):
            closer()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
