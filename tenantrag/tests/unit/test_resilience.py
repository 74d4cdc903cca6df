from __future__ import annotations

import asyncio

import httpx
import pytest

from tenantrag.core.errors import StorageFailure, VectorStoreConnectionFailed
from tenantrag.services.resilience import (
    RetryPolicy,
    default_retryable,
    retry_async,
    storage_retryable,
)
from tenantrag.services.telemetry import counters, record_request, snapshot


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(flaky, policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1))

    assert result == "ok"
    assert calls["count"] == 2
    assert counters()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> str:
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=100, max_attempts=5, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_times_out_slow_calls() -> None:
    async def slow() -> str:
        await asyncio.sleep(1)
        return "late"

    with pytest.raises(asyncio.TimeoutError):
        await retry_async(slow, policy=RetryPolicy(timeout_ms=10, max_attempts=1, backoff_ms=1))


def test_retryable_classification() -> None:
    request = httpx.Request("POST", "https://provider.test")

    def status_error(code: int) -> httpx.HTTPStatusError:
        return httpx.HTTPStatusError("err", request=request, response=httpx.Response(code, request=request))

    assert default_retryable(httpx.ConnectError("refused", request=request)) is True
    assert default_retryable(status_error(503)) is True
    assert default_retryable(status_error(429)) is True
    assert default_retryable(status_error(400)) is False
    assert storage_retryable(VectorStoreConnectionFailed("down")) is True
    assert storage_retryable(StorageFailure("rejected")) is False


def test_snapshot_summarizes_requests() -> None:
    record_request(path="/query", status_code=200, latency_ms=10.0)
    record_request(path="/query", status_code=500, latency_ms=30.0)

    summary = snapshot()

    assert summary["requests"] == 2
    assert summary["error_rate"] == 0.5
    assert summary["p95_latency_ms"] == 30.0
