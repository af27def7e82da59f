from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from storefront.config import get_settings, reset_settings_cache
from storefront.logging import get_logger
from storefront.service.audit import AuditSink
from storefront.service.auth import AuthService
from storefront.service.challenges import ChallengeStore
from storefront.service.email import EmailService
from storefront.service.gateway import KhaltiGateway
from storefront.service.orders import OrderService
from storefront.service.payments import PaymentReconciler
from storefront.storage.memory import MemoryStore
from storefront.storage.postgres import PostgresStore
from storefront.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# in-process buckets kept when no Redis cache is configured
LOCAL_RATE_LIMIT_MAX_KEYS = 10000


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    secret_key=self.settings.secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    secret_key=self.settings.secret_key,
                )
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
                    "Redis is required for rate limits, CAPTCHA and 2FA login challenges; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "login challenges are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
        )
        self.audit = AuditSink(self.store)
        self.challenges = ChallengeStore(self.cache)
        self.auth = AuthService(
            self.store,
            self.settings,
            email=self.email,
            audit=self.audit,
            challenges=self.challenges,
        )
        self.gateway = KhaltiGateway(
            self.settings.khalti_secret_key,
            base_url=self.settings.khalti_gateway_url,
            timeout_seconds=self.settings.gateway_timeout_seconds,
        )
        self.orders = OrderService(self.store, self.audit)
        self.payments = PaymentReconciler(
            self.store,
            self.settings,
            gateway=self.gateway,
            orders=self.orders,
            audit=self.audit,
        )
        self._local_rate_limits: "OrderedDict[str, Tuple[float, float, float]]" = OrderedDict()
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            gateway_configured=bool(self.settings.khalti_secret_key),
        )

    async def close(self) -> None:
        """Release the cache client and database pool."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store:
            await asyncio.to_thread(close_store)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before building it.
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
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _evict_rate_limit_buckets(
    buckets: "OrderedDict[str, Tuple[float, float, float]]", now: float
) -> None:
    """Drop refilled buckets, then the least recently used until there is room."""
    idle = [key for key, (_, _, full_at) in buckets.items() if full_at <= now]
    for key in idle:
        buckets.pop(key, None)
    while len(buckets) >= LOCAL_RATE_LIMIT_MAX_KEYS:
        buckets.popitem(last=False)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit through Redis, or in-process without it.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        tokens, last_ts, _ = buckets.get(key, (float(limit), now, now))
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        if key not in buckets and len(buckets) >= LOCAL_RATE_LIMIT_MAX_KEYS:
            _evict_rate_limit_buckets(buckets, now)
        # a bucket left alone for a whole window is full again, same as absent
        buckets[key] = (tokens, now, now + window_seconds)
        buckets.move_to_end(key)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
