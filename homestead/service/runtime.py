from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Tuple

from homestead.config import get_settings, reset_settings_cache
from homestead.logging import get_logger
from homestead.service.auth import AuthService
from homestead.service.crypto import SecretCipher
from homestead.service.passwords import PasswordHasher
from homestead.service.secrets import SecretStore
from homestead.service.tokens import TokenIssuer
from homestead.service.totp import TOTPEngine
from homestead.storage.memory import MemoryStore
from homestead.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Construction resolves the secrets bundle first; when that fails with
    ``FatalConfigurationError`` no runtime exists and nothing is served.
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.secret_store = SecretStore(self.settings)
        bundle = self.secret_store.get_or_create_secrets()
        self.cipher = SecretCipher(bundle.encryption_key)

        try:
            self.store = (
                MemoryStore(cipher=self.cipher)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, cipher=self.cipher)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.totp = TOTPEngine(issuer=self.settings.totp_issuer)
        self.tokens = TokenIssuer(
            bundle.access_signing_key,
            bundle.refresh_signing_key,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=self.settings.refresh_token_ttl_days),
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            totp=self.totp,
            tokens=self.tokens,
            secrets=self.secret_store,
        )
        # key -> (tokens left, last refill, window seconds)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = threading.Lock()
        self._local_rate_limit_swept_at = datetime.now(timezone.utc)
        logger.info("runtime_init_completed", secrets_source=self.secret_store.source)

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path when the runtime
    exists, then a locked re-check before creating it.
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


def _evict_idle_buckets(runtime: Runtime, now: datetime) -> int:
    """Drop buckets idle for a full window; they have refilled and match a fresh key.

    Caller holds ``_local_rate_limit_lock``.
    """
    idle = [
        key
        for key, (_, last_ts, window) in runtime._local_rate_limits.items()
        if (now - last_ts).total_seconds() >= window
    ]
    for key in idle:
        del runtime._local_rate_limits[key]
    runtime._local_rate_limit_swept_at = now
    return len(idle)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = 60,
    *,
    cost: int = 1,
) -> bool:
    """In-process token bucket; ``limit`` tokens refill evenly over the window.

    A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        if (now - runtime._local_rate_limit_swept_at).total_seconds() >= window_seconds:
            _evict_idle_buckets(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, window_seconds))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
    return allowed
