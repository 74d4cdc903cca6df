from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Any, Callable, Protocol

from redis.asyncio import Redis

from tenantrag.core.config import Settings
from tenantrag.core.errors import RateLimited
from tenantrag.domain.types import BucketConfig, RateLimitOperation, TenantContext


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hints for an admission check.
    allowed: bool
    operation: RateLimitOperation
    remaining: float
    retry_after_s: int = 0


def bucket_config_for(tenant: TenantContext, operation: RateLimitOperation) -> BucketConfig:
    # Prefer explicit per-tenant overrides, otherwise derive from tier limits.
    operation = RateLimitOperation(operation)
    overrides = tenant.config.get("rate_limits") or {}
    override = overrides.get(operation.value)
    if override is not None:
        return BucketConfig(rps=float(override["rps"]), burst=int(override["burst"]))

    limits = tenant.limits
    qpm = limits.queries_per_minute
    if operation == RateLimitOperation.INGEST:
        docs = limits.documents_per_day
        return BucketConfig(rps=docs / 86400.0, burst=max(1, docs // 24))
    if operation in (RateLimitOperation.BATCH_INGEST, RateLimitOperation.REINDEX):
        return BucketConfig(rps=qpm / 120.0, burst=max(1, qpm // 2))
    return BucketConfig(rps=qpm / 60.0, burst=max(1, qpm))


def _calculate_tokens(
    *,
    tokens: float | None,
    last_s: float | None,
    now_s: float,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_s is None:
        last_s = now_s
    if now_s < last_s:
        last_s = now_s
    tokens = min(float(burst), tokens + ((now_s - last_s) * rate))
    return tokens


def _retry_after_s(tokens: float, *, rate: float) -> int:
    # Whole seconds until one token is available; never advertise zero.
    if tokens >= 1:
        return 0
    if rate <= 0:
        return 1
    return max(1, int(math.ceil((1.0 - tokens) / rate)))


class RateLimiterLike(Protocol):
    async def check_admission(
        self, tenant: TenantContext, operation: RateLimitOperation
    ) -> RateLimitDecision:
        ...

    async def record_usage(self, tenant: TenantContext, operation: RateLimitOperation) -> float:
        ...

    async def remaining_quota(self, tenant: TenantContext, operation: RateLimitOperation) -> int:
        ...

    async def reset_tenant(self, tenant_id: str) -> None:
        ...


class _Bucket:
    __slots__ = ("config", "capacity", "rate", "tokens", "last_refill", "lock")

    def __init__(self, config: BucketConfig, now_s: float, tokens: float | None = None) -> None:
        self.config = config
        self.capacity = int(config.burst)
        self.rate = float(config.rps)
        self.tokens = float(config.burst) if tokens is None else min(float(config.burst), tokens)
        self.last_refill = now_s
        self.lock = threading.Lock()

    def refill(self, now_s: float) -> float:
        # Caller must hold the bucket lock.
        self.tokens = _calculate_tokens(
            tokens=self.tokens,
            last_s=self.last_refill,
            now_s=now_s,
            rate=self.rate,
            burst=self.capacity,
        )
        self.last_refill = max(self.last_refill, now_s)
        return self.tokens


class TokenBucketLimiter:
    """In-process token buckets keyed by (tenant_id, operation).

    Admission and usage are separate steps: callers check before doing work
    and record usage only after the work succeeded, so failed calls never
    drain a tenant's quota.
    """

    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        prune_interval_s: float = 60.0,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.monotonic
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._prune_interval_s = prune_interval_s
        self._next_prune_at = self._time_provider() + prune_interval_s

    def _bucket(self, tenant: TenantContext, operation: RateLimitOperation) -> _Bucket:
        key = (tenant.tenant_id, RateLimitOperation(operation).value)
        config = bucket_config_for(tenant, operation)
        bucket = self._buckets.get(key)
        if bucket is None:
            self._prune_if_due()
            # setdefault keeps the first bucket when two callers race on creation.
            candidate = _Bucket(config, self._time_provider())
            bucket = self._buckets.setdefault(key, candidate)
        elif bucket.config != config:
            # The tenant was re-tiered; rebuild at the new size, keeping tokens already spent.
            with bucket.lock:
                tokens = bucket.refill(self._time_provider())
            bucket = _Bucket(config, self._time_provider(), tokens=tokens)
            self._buckets[key] = bucket
            logger.info(
                "rate_limit_bucket_resized tenant_id=%s operation=%s burst=%s",
                tenant.tenant_id,
                key[1],
                config.burst,
            )
        return bucket

    def _prune_if_due(self) -> None:
        now = self._time_provider()
        if now >= self._next_prune_at:
            self.prune_idle()
            self._next_prune_at = now + self._prune_interval_s

    def prune_idle(self) -> int:
        # A full bucket is indistinguishable from a fresh one, so dropping it loses nothing.
        now = self._time_provider()
        idle = []
        for key, bucket in list(self._buckets.items()):
            with bucket.lock:
                if bucket.refill(now) >= bucket.capacity:
                    idle.append(key)
        for key in idle:
            self._buckets.pop(key, None)
        return len(idle)

    def bucket_count(self) -> int:
        return len(self._buckets)

    async def check_admission(
        self, tenant: TenantContext, operation: RateLimitOperation
    ) -> RateLimitDecision:
        operation = RateLimitOperation(operation)
        bucket = self._bucket(tenant, operation)
        with bucket.lock:
            tokens = bucket.refill(self._time_provider())
            retry_after = _retry_after_s(tokens, rate=bucket.rate)
        if retry_after:
            logger.info(
                "rate_limited tenant_id=%s operation=%s retry_after_s=%s",
                tenant.tenant_id,
                operation.value,
                retry_after,
            )
            raise RateLimited(retry_after, operation=operation.value)
        return RateLimitDecision(allowed=True, operation=operation, remaining=tokens)

    async def record_usage(self, tenant: TenantContext, operation: RateLimitOperation) -> float:
        bucket = self._bucket(tenant, operation)
        with bucket.lock:
            tokens = bucket.refill(self._time_provider())
            bucket.tokens = max(0.0, tokens - 1.0)
            return bucket.tokens

    async def remaining_quota(self, tenant: TenantContext, operation: RateLimitOperation) -> int:
        key = (tenant.tenant_id, RateLimitOperation(operation).value)
        bucket = self._buckets.get(key)
        if bucket is None:
            return bucket_config_for(tenant, operation).burst
        with bucket.lock:
            return int(math.floor(bucket.refill(self._time_provider())))

    async def reset_tenant(self, tenant_id: str) -> None:
        # Drop buckets so the next call rebuilds them from the tenant's current tier.
        for key in [key for key in list(self._buckets) if key[0] == tenant_id]:
            self._buckets.pop(key, None)


_CHECK_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])

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

local retry_ms = 0
if tokens < 1 then
  if rate <= 0 then
    retry_ms = 1000
  else
    retry_ms = math.ceil(((1 - tokens) / rate) * 1000)
  end
end
return {tostring(tokens), retry_ms}
"""

_CONSUME_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

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
tokens = math.max(0, tokens - 1)

redis.call("HSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)
return tostring(tokens)
"""


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


class RedisTokenBucketLimiter:
    """Same bucket contract as TokenBucketLimiter, shared across API instances."""

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = "trl",
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._time_provider = time_provider or time.time

    def _key(self, tenant_id: str, operation: RateLimitOperation) -> str:
        return f"{self._prefix}:{tenant_id}:{RateLimitOperation(operation).value}"

    async def check_admission(
        self, tenant: TenantContext, operation: RateLimitOperation
    ) -> RateLimitDecision:
        operation = RateLimitOperation(operation)
        config = bucket_config_for(tenant, operation)
        now_ms = int(self._time_provider() * 1000)
        result = await self._redis.eval(
            _CHECK_LUA,
            1,
            self._key(tenant.tenant_id, operation),
            now_ms,
            config.rps,
            config.burst,
        )
        tokens = float(result[0])
        retry_ms = int(float(result[1]))
        if retry_ms > 0:
            retry_after = max(1, int(math.ceil(retry_ms / 1000.0)))
            logger.info(
                "rate_limited tenant_id=%s operation=%s retry_after_s=%s backend=redis",
                tenant.tenant_id,
                operation.value,
                retry_after,
            )
            raise RateLimited(retry_after, operation=operation.value)
        return RateLimitDecision(allowed=True, operation=operation, remaining=tokens)

    async def record_usage(self, tenant: TenantContext, operation: RateLimitOperation) -> float:
        config = bucket_config_for(tenant, operation)
        now_ms = int(self._time_provider() * 1000)
        result = await self._redis.eval(
            _CONSUME_LUA,
            1,
            self._key(tenant.tenant_id, operation),
            now_ms,
            config.rps,
            config.burst,
            _ttl_seconds(config.rps, config.burst),
        )
        return float(result)

    async def remaining_quota(self, tenant: TenantContext, operation: RateLimitOperation) -> int:
        config = bucket_config_for(tenant, operation)
        data = await self._redis.hmget(self._key(tenant.tenant_id, operation), "tokens", "ts")
        stored_tokens = float(data[0]) if data and data[0] is not None else None
        stored_ts = float(data[1]) / 1000.0 if data and data[1] is not None else None
        tokens = _calculate_tokens(
            tokens=stored_tokens,
            last_s=stored_ts,
            now_s=self._time_provider(),
            rate=config.rps,
            burst=config.burst,
        )
        return int(math.floor(tokens))

    async def reset_tenant(self, tenant_id: str) -> None:
        keys: list[Any] = [key async for key in self._redis.scan_iter(match=f"{self._prefix}:{tenant_id}:*")]
        if keys:
            await self._redis.delete(*keys)

    async def close(self) -> None:
        await self._redis.aclose()


def build_rate_limiter(settings: Settings) -> RateLimiterLike | None:
    # Return None when limiting is disabled so admission skips bucket checks entirely.
    if not settings.rate_limit_enabled:
        return None
    backend = settings.rate_limit_backend.lower()
    if backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisTokenBucketLimiter(redis, prefix=settings.rl_redis_prefix)
    if backend == "memory":
        return TokenBucketLimiter()
    raise ValueError(f"Unsupported rate limit backend: {settings.rate_limit_backend}")
