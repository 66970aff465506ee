from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from hrms.config import Settings, get_settings, reset_settings_cache
from hrms.logging import get_logger
from hrms.service.activity import LoggingActivityRecorder
from hrms.service.auth import AuthService
from hrms.service.notifications import EmailOtpSender, NotificationGateway, SmsOtpSender
from hrms.storage.memory import MemoryStore
from hrms.storage.memory_cache import MemoryCache
from hrms.storage.models import OtpChannel
from hrms.storage.postgres import PostgresStore
from hrms.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]
Cache = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Connection URL with any password replaced by ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


def _build_store(settings: Settings) -> Store:
    kind = "memory" if settings.use_memory_store else "postgres"
    try:
        store: Store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=kind,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=kind)
    return store


def _build_cache(settings: Settings) -> Cache:
    """Redis when reachable; MemoryCache only where a fallback is allowed."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        # The sync client keeps tests off per-test event loops
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for OTPs, pending registrations and session mirrors; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from failure
    mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
        mode=mode,
        message=f"Running without Redis under {mode}; ephemeral state is process-local.",
    )
    return MemoryCache()


def _build_senders(settings: Settings) -> tuple[EmailOtpSender, SmsOtpSender]:
    email = EmailOtpSender(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
    )
    sms = SmsOtpSender(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
    )
    return email, sms


class Runtime:
    """Process-wide store, cache, senders and auth service, built from one Settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_store(self.settings)
        self.cache = _build_cache(self.settings)
        self.email, self.sms = _build_senders(self.settings)
        self.notifications = NotificationGateway(
            {OtpChannel.EMAIL: self.email, OtpChannel.SMS: self.sms}
        )
        self.activity = LoggingActivityRecorder(self.store)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            notifications=self.notifications,
            activity=self.activity,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the shared Runtime, creating it on first use."""
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def _close_cache(cache: Optional[Cache]) -> None:
    if cache is None or isinstance(cache, MemoryCache):
        return
    try:
        if isinstance(cache, SyncRedisCache):
            asyncio.run(cache.close())
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(cache.close())
        else:
            loop.create_task(cache.close())
    except Exception as exc:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a fresh environment read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
