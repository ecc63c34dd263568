from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from merchantauth.config import get_settings, reset_settings_cache
from merchantauth.logging import get_logger
from merchantauth.service.admin import AdminService
from merchantauth.service.audit import AuditPipeline
from merchantauth.service.auth import AuthService
from merchantauth.service.notifications import EmailChannel, SmsChannel
from merchantauth.service.rate_limit import RateLimiter
from merchantauth.storage.memory import MemoryStore
from merchantauth.storage.postgres import PostgresStore
from merchantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
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
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for MFA sessions and rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; MFA sessions and rate "
                    "limit counters are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.email = EmailChannel(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            otp_ttl_minutes=max(1, self.settings.otp_ttl_seconds // 60),
        )
        self.sms = SmsChannel(
            api_url=self.settings.sms_api_url,
            api_key=self.settings.sms_api_key,
            sender=self.settings.sms_sender,
            route=self.settings.sms_route,
            sms_type=self.settings.sms_type,
            template_id=self.settings.sms_template_id,
            brand_name=self.settings.brand_name,
            timeout=self.settings.sms_timeout_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            email_channel=self.email,
            sms_channel=self.sms,
        )
        self.admin = AdminService(self.store, self.auth)
        self.rate_limiter = RateLimiter(self.cache, self.settings.rate_limits)
        self.audit = AuditPipeline(self.store, batch_size=self.settings.audit_batch_size)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            rate_limited_paths=len(self.settings.rate_limits),
        )

    async def shutdown(self) -> None:
        """Drain the audit queue, then release network clients and the pool."""
        await self.audit.drain()
        await self.sms.close()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)
        logger.info("runtime_shutdown_complete", audit_pending=self.audit.pending)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
