from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, StoreBackend, get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.accounts import AccountService
from authkernel.service.clock import Clock, SystemClock
from authkernel.service.email import EmailService
from authkernel.service.sessions import SessionManager
from authkernel.service.tokens import TokenCodec
from authkernel.service.trust import AccountTrustGate
from authkernel.service.verification import VerificationManager
from authkernel.storage.memory import MemoryStore
from authkernel.storage.postgres import PostgresStore
from authkernel.storage.redis_store import RedisStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore, RedisStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> Store:
    backend = settings.store_backend
    if backend == StoreBackend.POSTGRES:
        store: Store = PostgresStore(settings.database_url)
        location = _mask_url_password(settings.database_url)
    elif backend == StoreBackend.REDIS:
        store = RedisStore(
            settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            max_retries=settings.redis_max_retries,
        )
        store.verify_connection()
        location = _mask_url_password(settings.redis_url)
    else:
        store = MemoryStore(fs_root=settings.shared_fs_root)
        location = settings.shared_fs_root
    logger.info("runtime_store_initialized", store_type=backend.value, location=location)
    return store


class Runtime:
    """Wires settings, the store backend, the codec and the managers together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        clock: Optional[Clock] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        self.clock = clock or SystemClock()
        try:
            self.store = store or build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = email or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        if not self.email.is_configured:
            logger.warning("email_not_configured", message="dispatching to log output")

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            clock=self.clock,
        )
        self.trust = AccountTrustGate(
            self.store, require_verified_login=self.settings.require_verified_login
        )
        self.sessions = SessionManager(
            self.store,
            self.codec,
            self.trust,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            refresh_secret_bytes=self.settings.refresh_secret_bytes,
            reuse_revokes_all=self.settings.refresh_reuse_revokes_all,
            clock=self.clock,
        )
        self.verification = VerificationManager(
            self.store,
            self.trust,
            self.email,
            code_length=self.settings.verification_code_length,
            ttl_minutes=self.settings.verification_code_ttl_minutes,
            single_active_code=self.settings.verification_single_active_code,
            clock=self.clock,
        )
        self.accounts = AccountService(
            self.store,
            self.sessions,
            self.verification,
            self.email,
            password_min_length=self.settings.password_min_length,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            reset_token_bytes=self.settings.password_reset_token_bytes,
            reset_base_url=self.settings.app_base_url.rstrip("/")
            + self.settings.password_reset_path,
            clock=self.clock,
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        if isinstance(self.store, (PostgresStore, RedisStore)):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
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
        runtime = Runtime(settings)
        return runtime
