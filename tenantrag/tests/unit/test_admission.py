from __future__ import annotations

import asyncio

import pytest

from tenantrag.core.errors import Forbidden, RateLimited
from tenantrag.domain.types import RateLimitOperation
from tenantrag.persistence.tenants import InMemoryTenantStore, TenantRecord
from tenantrag.services.admission import UNLIMITED, AdmissionController
from tenantrag.services.auth.tenants import TenantDirectory
from tenantrag.services.rate_limit import TokenBucketLimiter


class _Clock:
    def __init__(self) -> None:
        self.now = 50.0

    def __call__(self) -> float:
        return self.now


def _controller(clock: _Clock, *, limiter_enabled: bool = True) -> AdmissionController:
    store = InMemoryTenantStore()
    store.add_tenant(
        TenantRecord(id="acme", config={"rate_limits": {"query": {"rps": 1, "burst": 2}}})
    )
    store.add_api_key("acme", "trk_acme")
    limiter = TokenBucketLimiter(time_provider=clock) if limiter_enabled else None
    return AdmissionController(
        TenantDirectory(store), limiter, idempotency_window_s=60, time_provider=clock
    )


async def _ok() -> str:
    return "ok"


async def _boom() -> str:
    raise RuntimeError("downstream failed")


@pytest.mark.asyncio
async def test_success_is_charged_and_reports_remaining() -> None:
    controller = _controller(_Clock())

    admission = await controller.admit("trk_acme", RateLimitOperation.QUERY)
    result, remaining = await controller.execute(admission, _ok)

    assert result == "ok"
    assert remaining == 1


@pytest.mark.asyncio
async def test_failed_call_is_not_charged() -> None:
    controller = _controller(_Clock())

    for _ in range(5):
        admission = await controller.admit("trk_acme", RateLimitOperation.QUERY)
        with pytest.raises(RuntimeError):
            await controller.execute(admission, _boom)

    tenant = admission.tenant
    assert await controller.remaining(tenant, RateLimitOperation.QUERY) == 2


@pytest.mark.asyncio
async def test_exhausted_bucket_rejects_before_work() -> None:
    controller = _controller(_Clock())
    for _ in range(2):
        admission = await controller.admit("trk_acme", RateLimitOperation.QUERY)
        await controller.execute(admission, _ok)

    with pytest.raises(RateLimited) as excinfo:
        await controller.admit("trk_acme", RateLimitOperation.QUERY)
    assert excinfo.value.retry_after >= 1


@pytest.mark.asyncio
async def test_idempotent_retry_is_charged_once() -> None:
    clock = _Clock()
    controller = _controller(clock)

    for _ in range(4):
        admission = await controller.admit("trk_acme", RateLimitOperation.QUERY, request_key="req-1")
        _, remaining = await controller.execute(admission, _ok)

    assert remaining == 1

    clock.now += 61.0
    admission = await controller.admit("trk_acme", RateLimitOperation.QUERY, request_key="req-1")
    _, remaining = await controller.execute(admission, _ok)
    assert remaining == 1


@pytest.mark.asyncio
async def test_disabled_limiter_reports_unlimited() -> None:
    controller = _controller(_Clock(), limiter_enabled=False)

    admission = await controller.admit("trk_acme", RateLimitOperation.QUERY)
    _, remaining = await controller.execute(admission, _ok)

    assert remaining == UNLIMITED


@pytest.mark.asyncio
async def test_authentication_errors_propagate() -> None:
    controller = _controller(_Clock())
    with pytest.raises(Forbidden):
        await controller.admit("trk_nobody", RateLimitOperation.QUERY)

    admission = await controller.authenticate("trk_acme")
    assert admission.operation is None
    assert await controller.record(admission) == UNLIMITED


@pytest.mark.asyncio
async def test_replayed_key_returns_stored_result_without_rerunning() -> None:
    controller = _controller(_Clock())
    calls = {"count": 0}

    async def _work() -> str:
        calls["count"] += 1
        return f"answer-{calls['count']}"

    results = []
    for _ in range(50):
        admission = await controller.admit("trk_acme", RateLimitOperation.QUERY, request_key="same")
        result, remaining = await controller.execute(admission, _work)
        results.append(result)

    assert calls["count"] == 1
    assert set(results) == {"answer-1"}
    assert remaining == 1


@pytest.mark.asyncio
async def test_concurrent_duplicates_share_one_execution() -> None:
    controller = _controller(_Clock())
    gate = asyncio.Event()
    calls = {"count": 0}

    async def _slow() -> str:
        calls["count"] += 1
        await gate.wait()
        return "done"

    first = await controller.admit("trk_acme", RateLimitOperation.QUERY, request_key="dup")
    first_task = asyncio.create_task(controller.execute(first, _slow))
    await asyncio.sleep(0)
    second = await controller.admit("trk_acme", RateLimitOperation.QUERY, request_key="dup")
    second_task = asyncio.create_task(controller.execute(second, _slow))
    await asyncio.sleep(0)
    gate.set()

    (first_result, _), (second_result, remaining) = await asyncio.gather(first_task, second_task)

    assert second.replay is True
    assert calls["count"] == 1
    assert first_result == second_result == "done"
    assert remaining == 1


@pytest.mark.asyncio
async def test_failed_first_attempt_is_not_replayed() -> None:
    controller = _controller(_Clock())

    admission = await controller.admit("trk_acme", RateLimitOperation.QUERY, request_key="retry")
    with pytest.raises(RuntimeError):
        await controller.execute(admission, _boom)

    admission = await controller.admit("trk_acme", RateLimitOperation.QUERY, request_key="retry")
    result, remaining = await controller.execute(admission, _ok)

    assert admission.replay is False
    assert result == "ok"
    assert remaining == 1


@pytest.mark.asyncio
async def test_retier_applies_new_limits_and_keeps_spent_tokens() -> None:
    clock = _Clock()
    store = InMemoryTenantStore()
    store.add_tenant(TenantRecord(id="acme", config={"rate_limits": {"query": {"rps": 1, "burst": 2}}}))
    store.add_api_key("acme", "trk_acme")
    controller = AdmissionController(
        TenantDirectory(store, time_provider=clock), TokenBucketLimiter(time_provider=clock), time_provider=clock
    )
    admission = await controller.admit("trk_acme", RateLimitOperation.QUERY)
    await controller.execute(admission, _ok)

    store.add_tenant(TenantRecord(id="acme", config={"rate_limits": {"query": {"rps": 1, "burst": 10}}}))
    cached = await controller.admit("trk_acme", RateLimitOperation.QUERY)
    assert cached.tenant.config["rate_limits"]["query"]["burst"] == 2

    assert await controller.retier("acme") == 1
    fresh = await controller.admit("trk_acme", RateLimitOperation.QUERY)
    clock.now += 5

    assert fresh.tenant.config["rate_limits"]["query"]["burst"] == 10
    assert await controller.remaining(fresh.tenant, RateLimitOperation.QUERY) == 6
