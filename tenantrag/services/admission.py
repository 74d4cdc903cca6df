from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from tenantrag.domain.types import RateLimitOperation, TenantContext
from tenantrag.services.auth.tenants import TenantDirectory
from tenantrag.services.rate_limit import RateLimiterLike


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Reported when limiting is disabled; callers omit the remaining-quota header.
UNLIMITED = -1

_ReplayKey = tuple[str, str, str]


@dataclass(frozen=True)
class Admission:
    """Proof that a request was authenticated and admitted for one operation."""

    tenant: TenantContext
    operation: RateLimitOperation | None
    request_key: str | None = None
    replay: bool = False


@dataclass(frozen=True)
class _StoredResult:
    stored_at: float
    result: Any


class AdmissionController:
    """Resolve the tenant, check its bucket, and charge usage after success.

    Authentication and rate limiting end here; pipeline code only ever sees
    an Admission, never an absent tenant. A request carrying an idempotency
    key is executed and charged once per window; replays get the stored
    result of the first execution.
    """

    def __init__(
        self,
        directory: TenantDirectory,
        limiter: RateLimiterLike | None,
        *,
        idempotency_window_s: int = 600,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._directory = directory
        self._limiter = limiter
        self._idempotency_window_s = idempotency_window_s
        self._time_provider = time_provider or time.monotonic
        self._results: dict[_ReplayKey, _StoredResult] = {}
        self._inflight: dict[_ReplayKey, asyncio.Future] = {}

    async def authenticate(self, credential: str | None) -> Admission:
        tenant = await self._directory.resolve(credential)
        return Admission(tenant=tenant, operation=None)

    async def admit(
        self,
        credential: str | None,
        operation: RateLimitOperation,
        *,
        request_key: str | None = None,
    ) -> Admission:
        tenant = await self._directory.resolve(credential)
        operation = RateLimitOperation(operation)
        key = _replay_key(tenant, operation, request_key)
        if key is not None and (self._stored(key) is not None or key in self._inflight):
            logger.info("idempotent_replay tenant_id=%s operation=%s", tenant.tenant_id, operation.value)
            return Admission(tenant=tenant, operation=operation, request_key=request_key, replay=True)
        if self._limiter is not None:
            await self._limiter.check_admission(tenant, operation)
        return Admission(tenant=tenant, operation=operation, request_key=request_key)

    async def execute(self, admission: Admission, call: Callable[[], Awaitable[T]]) -> tuple[T, int]:
        # Usage is recorded only when the call returns; failures and cancellations cost nothing.
        key = _replay_key(admission.tenant, admission.operation, admission.request_key)
        if key is None:
            result = await call()
            return result, await self.record(admission)

        stored = self._stored(key)
        if stored is not None:
            return stored.result, await self.remaining_for(admission)
        pending = self._inflight.get(key)
        if pending is not None:
            # A duplicate arriving mid-flight shares the first execution's outcome.
            result = await asyncio.shield(pending)
            return result, await self.remaining_for(admission)
        if admission.replay:
            # The earlier attempt failed after this one was admitted; run it as a fresh request.
            await self._limiter_check(admission)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await call()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unobserved failure does not warn on collection.
            future.exception()
            raise
        finally:
            self._inflight.pop(key, None)
        self._prune_results()
        self._results[key] = _StoredResult(stored_at=self._time_provider(), result=result)
        try:
            remaining = await self.record(admission)
        finally:
            future.set_result(result)
        return result, remaining

    async def retier(self, tenant_id: str) -> int:
        # Cached contexts carry the old tier; buckets resize on the next check against the new one.
        evicted = self._directory.invalidate_tenant(tenant_id)
        logger.info("tenant_retiered tenant_id=%s cache_entries=%s", tenant_id, evicted)
        return evicted

    async def record(self, admission: Admission) -> int:
        if self._limiter is None or admission.operation is None:
            return UNLIMITED
        await self._limiter.record_usage(admission.tenant, admission.operation)
        return await self._limiter.remaining_quota(admission.tenant, admission.operation)

    async def remaining_for(self, admission: Admission) -> int:
        if admission.operation is None:
            return UNLIMITED
        return await self.remaining(admission.tenant, admission.operation)

    async def remaining(self, tenant: TenantContext, operation: RateLimitOperation) -> int:
        if self._limiter is None:
            return UNLIMITED
        return await self._limiter.remaining_quota(tenant, operation)

    async def _limiter_check(self, admission: Admission) -> None:
        if self._limiter is not None and admission.operation is not None:
            await self._limiter.check_admission(admission.tenant, admission.operation)

    def _stored(self, key: _ReplayKey) -> _StoredResult | None:
        stored = self._results.get(key)
        if stored is None:
            return None
        if self._time_provider() - stored.stored_at > self._idempotency_window_s:
            self._results.pop(key, None)
            return None
        return stored

    def _prune_results(self) -> None:
        cutoff = self._time_provider() - self._idempotency_window_s
        for key in [key for key, stored in list(self._results.items()) if stored.stored_at < cutoff]:
            self._results.pop(key, None)


def _replay_key(
    tenant: TenantContext, operation: RateLimitOperation | None, request_key: str | None
) -> _ReplayKey | None:
    if not request_key or operation is None:
        return None
    return (tenant.tenant_id, operation.value, request_key)
