from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from marketauth.api.gateway import AuthGateway
from marketauth.config import Settings, get_settings
from marketauth.logging import get_logger
from marketauth.service.auth import AuthService
from marketauth.service.credentials import CredentialVault
from marketauth.service.email import EmailService, Notifier
from marketauth.service.otp import OtpEngine
from marketauth.service.tokens import AccessTokenIssuer, RefreshTokenLedger
from marketauth.storage.memory import MemoryStore
from marketauth.storage.postgres import PostgresStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """The wired set of components for one store of record."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        notifier: Optional[Notifier],
    ) -> None:
        self.settings = settings
        self.store = store
        self.notifier = notifier
        self.vault = CredentialVault(store, settings)
        self.otp = OtpEngine(store, notifier, settings)
        self.ledger = RefreshTokenLedger(store, settings)
        self.access_tokens = AccessTokenIssuer(settings)
        self.auth = AuthService(
            store,
            store,
            self.vault,
            self.otp,
            self.ledger,
            self.access_tokens,
            settings,
        )
        self.gateway = AuthGateway(self.auth)


def build_store(settings: Settings) -> Store:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: Store = MemoryStore(fs_root=settings.shared_fs_root)
        else:
            store = PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def build_email_service(settings: Settings) -> EmailService:
    return EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        code_ttl_minutes=settings.otp_ttl_minutes,
    )


def create_runtime(
    settings: Optional[Settings] = None,
    *,
    store: Optional[Store] = None,
    notifier: Optional[Notifier] = None,
) -> Runtime:
    """Wire every component explicitly; callers own the returned instance."""
    settings = settings or get_settings()
    logger.info(
        "runtime_init_started",
        use_memory_store=settings.use_memory_store,
        test_mode=settings.test_mode,
    )
    email_service = notifier or build_email_service(settings)
    if not notifier and not email_service.is_configured:
        logger.warning("email_not_configured", mode="log_only")
    return Runtime(settings, store or build_store(settings), email_service)
