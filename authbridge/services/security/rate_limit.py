from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from authbridge.core.clock import as_utc, utc_now
from authbridge.core.config import get_settings
from authbridge.core.errors import RateLimitError, RateLimitUnavailableError
from authbridge.services.security.events import (
    ACTION_LOGIN,
    ACTION_MFA,
    ACTION_REFRESH,
    ACTION_REGISTER,
    ACTION_SMS,
    count_events,
    oldest_event_at,
)


logger = logging.getLogger(__name__)

ANONYMOUS_IDENTITY = "anonymous"


@dataclass(frozen=True)
class ActionLimit:
    # Allow max_attempts per identity/action/IP inside a rolling window.
    max_attempts: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hints for one attempt.
    allowed: bool
    action: str
    retry_after_ms: int
    remaining: float | None = None
    degraded: bool = False


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local allowed = tokens >= cost
local retry = 0
if not allowed then
  if rate <= 0 then
    retry = 1000
  else
    retry = math.ceil(((cost - tokens) / rate) * 1000)
  end
end
if allowed then
  tokens = tokens - cost
end

redis.call("HMSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def limit_for_action(action: str) -> ActionLimit:
    # Map each attempt type onto its configured budget.
    settings = get_settings()
    per_action = {
        ACTION_LOGIN: settings.rl_login_max_attempts,
        ACTION_REGISTER: settings.rl_register_max_attempts,
        ACTION_REFRESH: settings.rl_refresh_max_attempts,
        ACTION_MFA: settings.rl_mfa_max_attempts,
        ACTION_SMS: settings.rl_sms_max_sends,
    }
    return ActionLimit(
        max_attempts=per_action.get(action, settings.rl_default_max_attempts),
        window_seconds=settings.rl_window_seconds,
    )


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


def bucket_key(*, identity: str, action: str, ip_address: str | None) -> str:
    settings = get_settings()
    return f"{settings.rl_redis_prefix}:{action}:{identity}:{ip_address or 'unknown'}"


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class DatabaseRateLimiter:
    """Sliding window counted over recorded security events.

    Flows record exactly one security event per attempt, so the count of
    events for (identity, action, ip) inside the window is the attempt count.
    """

    async def check(
        self,
        *,
        session: AsyncSession,
        identity: str,
        action: str,
        ip_address: str | None,
        limit: ActionLimit,
    ) -> RateLimitDecision:
        attempts = await count_events(
            session,
            identifier=identity,
            action=action,
            since_seconds=limit.window_seconds,
            ip_address=ip_address,
        )
        remaining = float(max(0, limit.max_attempts - attempts))
        if attempts < limit.max_attempts:
            return RateLimitDecision(allowed=True, action=action, retry_after_ms=0, remaining=remaining)
        oldest = as_utc(
            await oldest_event_at(
                session,
                identifier=identity,
                action=action,
                since_seconds=limit.window_seconds,
                ip_address=ip_address,
            )
        )
        retry_after_ms = limit.window_seconds * 1000
        if oldest is not None:
            # The window frees a slot once the oldest counted attempt ages out.
            elapsed_ms = int((utc_now() - oldest).total_seconds() * 1000)
            retry_after_ms = max(1000, limit.window_seconds * 1000 - elapsed_ms)
        return RateLimitDecision(
            allowed=False, action=action, retry_after_ms=retry_after_ms, remaining=0.0
        )


class RedisRateLimiter:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def check(
        self,
        *,
        session: AsyncSession,
        identity: str,
        action: str,
        ip_address: str | None,
        limit: ActionLimit,
    ) -> RateLimitDecision:
        # Evaluate one token bucket per identity/action/IP atomically in Redis.
        rate = limit.max_attempts / float(max(1, limit.window_seconds))
        burst = limit.max_attempts
        now_ms = int(self._time_provider() * 1000)
        redis = await _get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            bucket_key(identity=identity, action=action, ip_address=ip_address),
            now_ms,
            rate,
            burst,
            1,
            _ttl_seconds(rate, burst),
        )
        allowed = int(result[0]) == 1
        return RateLimitDecision(
            allowed=allowed,
            action=action,
            retry_after_ms=0 if allowed else int(float(result[2])),
            remaining=float(result[1]),
        )


_rate_limiter: DatabaseRateLimiter | RedisRateLimiter | None = None


def _get_rate_limiter() -> DatabaseRateLimiter | RedisRateLimiter:
    # Cache the limiter so requests share Redis connections.
    global _rate_limiter
    if _rate_limiter is None:
        backend = get_settings().rl_backend.lower()
        _rate_limiter = RedisRateLimiter() if backend == "redis" else DatabaseRateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    # Reset cached limiter and Redis connections for deterministic test setup.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


async def enforce_attempt_rate_limit(
    *,
    session: AsyncSession,
    identity: str | None,
    action: str,
    ip_address: str | None,
) -> RateLimitDecision:
    """Reject the attempt with 429 when (identity, action, ip) is over budget.

    Lockout state is never touched here. Storage failures follow
    ``rl_fail_mode``: "open" lets the attempt through flagged as degraded,
    "closed" rejects it.
    """
    settings = get_settings()
    resolved_identity = identity or ANONYMOUS_IDENTITY
    if not settings.rate_limit_enabled:
        return RateLimitDecision(allowed=True, action=action, retry_after_ms=0)

    limiter = _get_rate_limiter()
    try:
        decision = await limiter.check(
            session=session,
            identity=resolved_identity,
            action=action,
            ip_address=ip_address,
            limit=limit_for_action(action),
        )
    except (RedisError, OSError) as exc:
        if settings.rl_fail_mode.lower() == "closed":
            logger.error("rate_limit_unavailable action=%s", action, exc_info=exc)
            raise RateLimitUnavailableError("Rate limiting unavailable") from exc
        logger.warning("rate_limit_degraded action=%s", action, exc_info=exc)
        return RateLimitDecision(allowed=True, action=action, retry_after_ms=0, degraded=True)

    if not decision.allowed:
        retry_after_s = max(1, int(math.ceil(decision.retry_after_ms / 1000.0)))
        logger.info(
            "rate_limited action=%s identity=%s retry_after_s=%s",
            action,
            resolved_identity,
            retry_after_s,
        )
        raise RateLimitError(action=action, retry_after_s=retry_after_s)
    return decision
