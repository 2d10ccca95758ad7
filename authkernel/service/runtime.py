from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.auth import AuthService
from authkernel.service.email import EmailService
from authkernel.service.hashing import SecretHasher
from authkernel.service.oauth import GoogleIdentityVerifier, GoogleOAuthClient
from authkernel.storage.common import CredentialStore
from authkernel.storage.memory import MemoryStore
from authkernel.storage.postgres import PostgresStore

logger = get_logger(__name__)

# argon2 parameters used under TEST_MODE so suites stay fast
_TEST_HASH_TIME_COST = 1
_TEST_HASH_MEMORY_KIB = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_store(settings: Settings) -> CredentialStore:
    if settings.use_memory_store:
        # TEST_MODE keeps the store purely in memory for isolation
        fs_root = None if settings.test_mode else settings.shared_fs_root
        return MemoryStore(fs_root=fs_root)
    logger.info("runtime_connecting_postgres", dsn=_mask_url_password(settings.database_url))
    return PostgresStore(settings.database_url)


class Runtime:
    """Holds the process-wide service instances."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        if self.settings.test_mode:
            self.hasher = SecretHasher(
                time_cost=_TEST_HASH_TIME_COST, memory_cost=_TEST_HASH_MEMORY_KIB, parallelism=1
            )
        else:
            self.hasher = SecretHasher.from_settings(self.settings)

        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("email_not_configured", mode="log_only")

        self.identity_verifier: Optional[GoogleIdentityVerifier] = None
        self.oauth_client: Optional[GoogleOAuthClient] = None
        if self.settings.google_client_id:
            self.identity_verifier = GoogleIdentityVerifier.from_settings(self.settings)
            if self.settings.google_client_secret and self.settings.google_redirect_uri:
                self.oauth_client = GoogleOAuthClient(
                    self.settings.google_client_id,
                    self.settings.google_client_secret,
                    self.settings.google_redirect_uri,
                    self.identity_verifier,
                    timeout=self.settings.oauth_http_timeout_seconds,
                )
        else:
            logger.info("google_sign_in_disabled")

        self.auth = AuthService(
            self.store,
            self.settings,
            mailer=self.email,
            hasher=self.hasher,
            identity_verifier=self.identity_verifier,
            oauth_client=self.oauth_client,
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
