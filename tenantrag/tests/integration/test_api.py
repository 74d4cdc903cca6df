from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantrag.apps.api.main import create_app
from tenantrag.core.errors import GenerationFailed
from tenantrag.domain.types import TenantTier
from tenantrag.persistence.tenants import TenantRecord
from tenantrag.providers.embeddings.hashing import HashingEmbeddingProvider
from tenantrag.services.container import assemble_services
from tenantrag.services.prompts import NO_RESULTS_MESSAGE
from tenantrag.services.rate_limit import TokenBucketLimiter


ALPHA = {"Authorization": "Bearer trk_alpha_secret"}
BETA = {"X-API-Key": "trk_beta_secret"}


def _client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_public(services) -> None:
    async with _client(create_app(services)) as client:
        plain = await client.get("/health")
        versioned = await client.get("/v1/health")
        ready = await client.get("/health/ready")

    assert plain.status_code == 200
    assert plain.json() == {"status": "ok"}
    assert versioned.json()["data"] == {"status": "ok"}
    assert versioned.json()["meta"]["api_version"] == "v1"
    assert ready.status_code == 200
    assert ready.json()["vector_store"] == "ok"


@pytest.mark.asyncio
async def test_missing_credential_is_unauthorized(services) -> None:
    async with _client(create_app(services)) as client:
        response = await client.post("/query", json={"query": "hello"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "UNAUTHORIZED"
    assert response.headers.get("WWW-Authenticate") == "Bearer"


@pytest.mark.asyncio
async def test_unknown_key_is_forbidden(services) -> None:
    async with _client(create_app(services)) as client:
        response = await client.post(
            "/query", json={"query": "hello"}, headers={"Authorization": "Bearer trk_nope"}
        )

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_ingest_then_query_round_trip(services, fake_llm) -> None:
    async with _client(create_app(services)) as client:
        ingest = await client.post(
            "/documents",
            json={"id": "france", "text": "The capital of France is Paris.", "source": "atlas.txt"},
            headers=ALPHA,
        )
        query = await client.post(
            "/query", json={"query": "What is the capital of France?", "retrieval_limit": 3}, headers=ALPHA
        )

    assert ingest.status_code == 201
    assert ingest.json() == {"document_id": "france", "chunks_created": 1, "embedding_batches": 1}
    assert ingest.headers["X-RateLimit-Remaining"] == "40"

    assert query.status_code == 200
    body = query.json()
    assert body["answer"] == "Paris is the capital of France."
    assert body["sources"][0]["document_id"] == "france"
    assert body["sources"][0]["metadata"] == {"source": "atlas.txt"}
    assert body["metadata"]["chunks_retrieved"] == 1
    assert query.headers["X-RateLimit-Remaining"] == "59"
    assert len(fake_llm.calls) == 1


@pytest.mark.asyncio
async def test_versioned_routes_use_envelope(services) -> None:
    async with _client(create_app(services)) as client:
        ok = await client.post("/v1/query", json={"query": "anything"}, headers=ALPHA)
        denied = await client.post("/v1/query", json={"query": "anything"})

    assert ok.status_code == 200
    assert ok.json()["data"]["answer"] == NO_RESULTS_MESSAGE
    assert ok.json()["meta"]["request_id"]
    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_body_cannot_choose_tenant(services) -> None:
    async with _client(create_app(services)) as client:
        response = await client.post(
            "/query", json={"query": "hello", "tenant_id": "beta"}, headers=ALPHA
        )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_retrieve_requires_q_and_defaults_limit(services) -> None:
    async with _client(create_app(services)) as client:
        for index in range(7):
            await client.post(
                "/documents", json={"id": f"d{index}", "text": f"shared words number {index}"}, headers=ALPHA
            )
        missing = await client.get("/query/retrieve", headers=ALPHA)
        default = await client.get("/query/retrieve", params={"q": "shared words"}, headers=ALPHA)
        garbage = await client.get("/query/retrieve", params={"q": "shared words", "limit": "abc"}, headers=ALPHA)
        explicit = await client.get("/query/retrieve", params={"q": "shared words", "limit": "2"}, headers=ALPHA)
        zero = await client.get("/query/retrieve", params={"q": "shared words", "limit": "0"}, headers=ALPHA)

    assert missing.status_code == 400
    assert missing.json()["detail"]["code"] == "VALIDATION_ERROR"
    assert len(default.json()["sources"]) == 5
    assert len(garbage.json()["sources"]) == 5
    assert len(explicit.json()["sources"]) == 2
    assert zero.status_code == 400


@pytest.mark.asyncio
async def test_rate_limit_returns_retry_after(services, tenant_store) -> None:
    tenant_store.add_tenant(
        TenantRecord(id="gamma", config={"rate_limits": {"query": {"rps": 1, "burst": 2}}})
    )
    tenant_store.add_api_key("gamma", "trk_gamma_secret")
    headers = {"Authorization": "Bearer trk_gamma_secret"}

    async with _client(create_app(services)) as client:
        first = await client.post("/query", json={"query": "hi"}, headers=headers)
        second = await client.post("/query", json={"query": "hi"}, headers=headers)
        third = await client.post("/query", json={"query": "hi"}, headers=headers)
        other_tenant = await client.post("/query", json={"query": "hi"}, headers=ALPHA)

    assert [first.status_code, second.status_code] == [200, 200]
    assert second.headers["X-RateLimit-Remaining"] == "0"
    assert third.status_code == 429
    assert third.headers["Retry-After"] == "1"
    detail = third.json()["detail"]
    assert detail["code"] == "RATE_LIMITED"
    assert detail["retry_after"] == 1
    assert detail["operation"] == "query"
    assert other_tenant.status_code == 200


@pytest.mark.asyncio
async def test_rejected_input_is_not_charged(services) -> None:
    async with _client(create_app(services)) as client:
        rejected = await client.post("/documents", json={"id": "blank", "text": "   "}, headers=ALPHA)
        accepted = await client.post("/documents", json={"id": "real", "text": "some text"}, headers=ALPHA)

    assert rejected.status_code == 400
    assert accepted.headers["X-RateLimit-Remaining"] == "40"


@pytest.mark.asyncio
async def test_idempotency_key_is_charged_once(services) -> None:
    headers = {**ALPHA, "Idempotency-Key": "ingest-1"}
    async with _client(create_app(services)) as client:
        first = await client.post("/documents", json={"id": "doc", "text": "retry me"}, headers=headers)
        replay = await client.post("/documents", json={"id": "doc", "text": "retry me"}, headers=headers)

    assert first.headers["X-RateLimit-Remaining"] == "40"
    assert replay.headers["X-RateLimit-Remaining"] == "40"


@pytest.mark.asyncio
async def test_tenants_are_isolated(services) -> None:
    async with _client(create_app(services)) as client:
        await client.post("/documents", json={"id": "secret", "text": "alpha launch codes"}, headers=ALPHA)
        beta_view = await client.get("/query/retrieve", params={"q": "alpha launch codes"}, headers=BETA)
        beta_index = await client.get("/index", headers=BETA)
        alpha_index = await client.get("/index", headers=ALPHA)

    assert beta_view.status_code == 200
    assert beta_view.json()["sources"] == []
    assert beta_index.json()["chunk_count"] == 0
    assert alpha_index.json()["chunk_count"] == 1
    assert alpha_index.json()["document_count"] == 1


@pytest.mark.asyncio
async def test_delete_document(services) -> None:
    async with _client(create_app(services)) as client:
        await client.post("/documents", json={"id": "doc", "text": "to be removed"}, headers=ALPHA)
        deleted = await client.delete("/documents/doc", headers=ALPHA)
        again = await client.delete("/documents/doc", headers=ALPHA)

    assert deleted.json() == {"document_id": "doc", "chunks_deleted": 1}
    assert again.json()["chunks_deleted"] == 0


@pytest.mark.asyncio
async def test_batch_ingest_job_lifecycle(services) -> None:
    app = create_app(services)
    payload = {
        "documents": [
            {"id": "a", "text": "first batch document"},
            {"id": "b", "text": "second batch document"},
        ]
    }
    async with _client(app) as client:
        accepted = await client.post("/v1/documents/batch", json=payload, headers=ALPHA)
        job_id = accepted.json()["data"]["job_id"]
        pending = await client.get(f"/jobs/{job_id}", headers=ALPHA)

        await services.executor.run_job(services.jobs.claim_next())

        done = await client.get(f"/jobs/{job_id}", headers=ALPHA)
        hidden = await client.get(f"/jobs/{job_id}", headers=BETA)
        listed = await client.get("/jobs", params={"status": "completed"}, headers=ALPHA)
        bad_status = await client.get("/jobs", params={"status": "sleeping"}, headers=ALPHA)

    assert accepted.status_code == 202
    assert accepted.json()["data"]["status_url"] == f"/v1/jobs/{job_id}"
    assert accepted.json()["data"]["document_count"] == 2
    assert pending.json()["status"] == "pending"
    assert done.json()["status"] == "completed"
    assert done.json()["result"]["document_ids"] == ["a", "b"]
    assert hidden.status_code == 404
    assert hidden.json()["detail"]["code"] == "JOB_NOT_FOUND"
    assert [job["id"] for job in listed.json()["jobs"]] == [job_id]
    assert bad_status.status_code == 400


@pytest.mark.asyncio
async def test_cancel_pending_job(services) -> None:
    async with _client(create_app(services)) as client:
        accepted = await client.post(
            "/documents/batch", json={"documents": [{"text": "never processed"}]}, headers=ALPHA
        )
        job_id = accepted.json()["job_id"]
        cancelled = await client.delete(f"/jobs/{job_id}", headers=ALPHA)

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert services.jobs.claim_next() is None


@pytest.mark.asyncio
async def test_empty_batch_rejected(services) -> None:
    async with _client(create_app(services)) as client:
        response = await client.post("/documents/batch", json={"documents": []}, headers=ALPHA)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_generation_failure_returns_sources(settings, tenant_store, vector_store, clock) -> None:
    class BrokenLLM:
        model = "broken"

        async def generate(self, prompt, context) -> str:
            raise RuntimeError("model offline")

    services = assemble_services(
        settings,
        tenant_store=tenant_store,
        store=vector_store,
        embedder=HashingEmbeddingProvider(settings.embedding_dimensions),
        llm=BrokenLLM(),
        limiter=TokenBucketLimiter(time_provider=clock),
    )
    async with _client(create_app(services)) as client:
        await client.post("/documents", json={"id": "france", "text": "Paris is in France."}, headers=ALPHA)
        response = await client.post("/query", json={"query": "Where is Paris?"}, headers=ALPHA)
        # Failed generations are not charged.
        retry = await client.post("/query", json={"query": "Where is Paris?", "generate": False}, headers=ALPHA)

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["code"] == GenerationFailed.code
    assert detail["sources"][0]["document_id"] == "france"
    assert retry.headers["X-RateLimit-Remaining"] == "59"


@pytest.mark.asyncio
async def test_disabled_rate_limit_omits_header(settings, tenant_store, vector_store, fake_llm) -> None:
    services = assemble_services(
        settings,
        tenant_store=tenant_store,
        store=vector_store,
        embedder=HashingEmbeddingProvider(settings.embedding_dimensions),
        llm=fake_llm,
        limiter=None,
    )
    async with _client(create_app(services)) as client:
        response = await client.post("/query", json={"query": "anything"}, headers=ALPHA)

    assert response.status_code == 200
    assert "X-RateLimit-Remaining" not in response.headers


@pytest.mark.asyncio
async def test_free_tier_document_size_limit(services, tenant_store) -> None:
    tenant_store.add_tenant(TenantRecord(id="tiny", tier=TenantTier.FREE))
    tenant_store.add_api_key("tiny", "trk_tiny_secret")
    headers = {"Authorization": "ApiKey trk_tiny_secret"}

    async with _client(create_app(services)) as client:
        response = await client.post(
            "/documents", json={"id": "huge", "text": "x" * (1024 * 1024 + 1)}, headers=headers
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_async_ingest_runs_on_executor(services) -> None:
    async with _client(create_app(services)) as client:
        accepted = await client.post(
            "/documents/async", json={"id": "later", "text": "processed in the background"}, headers=ALPHA
        )
        job_id = accepted.json()["job_id"]
        before = await client.get("/index", headers=ALPHA)

        await services.executor.run_job(services.jobs.claim_next())

        done = await client.get(f"/jobs/{job_id}", headers=ALPHA)
        after = await client.get("/index", headers=ALPHA)

    assert accepted.status_code == 202
    assert accepted.json()["document_count"] == 1
    assert accepted.headers["X-RateLimit-Remaining"] == "40"
    assert before.json()["chunk_count"] == 0
    assert done.json()["type"] == "ingest"
    assert done.json()["status"] == "completed"
    assert done.json()["result"]["document_ids"] == ["later"]
    assert after.json()["document_count"] == 1


@pytest.mark.asyncio
async def test_index_admin_routes_are_tenant_scoped(services) -> None:
    async with _client(create_app(services)) as client:
        await client.post("/documents", json={"id": "a", "text": "alpha owns this"}, headers=ALPHA)
        await client.post("/documents", json={"id": "b", "text": "beta owns this"}, headers=BETA)
        listed = await client.get("/indices", headers=ALPHA)
        fetched = await client.get("/indices/chunks", headers=ALPHA)
        missing = await client.get("/indices/other", headers=ALPHA)
        created = await client.post("/indices", json={"name": "chunks"}, headers=ALPHA)
        mismatch = await client.post("/indices", json={"name": "chunks", "dimensions": 3}, headers=ALPHA)
        purged = await client.delete("/indices/chunks", headers=ALPHA)
        alpha_after = await client.get("/indices/chunks", headers=ALPHA)
        beta_after = await client.get("/indices/chunks", headers=BETA)

    assert [index["name"] for index in listed.json()["indices"]] == ["chunks"]
    assert listed.json()["indices"][0]["chunk_count"] == 1
    assert fetched.json()["tenant_id"] == "alpha"
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "INDEX_NOT_FOUND"
    assert created.status_code == 201
    assert mismatch.status_code == 400
    assert purged.json() == {"name": "chunks", "chunks_deleted": 1}
    assert alpha_after.json()["chunk_count"] == 0
    assert beta_after.json()["chunk_count"] == 1


@pytest.mark.asyncio
async def test_reindex_job_rechunks_documents(services) -> None:
    text = "Reindexing splits this sentence again. " * 12
    async with _client(create_app(services)) as client:
        await client.post("/documents", json={"id": "long", "text": text}, headers=ALPHA)
        before = await client.get("/index", headers=ALPHA)
        accepted = await client.post(
            "/v1/indices/chunks/reindex", json={"chunk_size": 80, "chunk_overlap": 10}, headers=ALPHA
        )
        unknown = await client.post("/indices/nope/reindex", json={}, headers=ALPHA)
        job_id = accepted.json()["data"]["job_id"]

        await services.executor.run_job(services.jobs.claim_next())

        done = await client.get(f"/jobs/{job_id}", headers=ALPHA)
        after = await client.get("/index", headers=ALPHA)

    assert accepted.status_code == 202
    assert accepted.json()["data"]["status_url"] == f"/v1/jobs/{job_id}"
    assert unknown.status_code == 404
    assert done.json()["status"] == "completed"
    assert done.json()["result"]["index_rebuilt"] is True
    assert after.json()["document_count"] == 1
    assert after.json()["chunk_count"] > before.json()["chunk_count"]


@pytest.mark.asyncio
async def test_versioned_meta_reports_tenant_and_remaining_quota(services) -> None:
    async with _client(create_app(services)) as client:
        charged = await client.post("/v1/documents", json={"id": "m", "text": "meta check"}, headers=ALPHA)
        uncharged = await client.get("/v1/index", headers=ALPHA)
        public = await client.get("/v1/health")

    assert charged.json()["meta"]["tenant_id"] == "alpha"
    assert charged.json()["meta"]["rate_limit_remaining"] == 40
    assert uncharged.json()["meta"]["tenant_id"] == "alpha"
    assert "rate_limit_remaining" not in uncharged.json()["meta"]
    assert "tenant_id" not in public.json()["meta"]


@pytest.mark.asyncio
async def test_idempotent_replay_returns_first_result(services) -> None:
    headers = {**ALPHA, "Idempotency-Key": "job-1"}
    payload = {"documents": [{"id": "a", "text": "only once"}]}
    async with _client(create_app(services)) as client:
        first = await client.post("/documents/batch", json=payload, headers=headers)
        replay = await client.post("/documents/batch", json=payload, headers=headers)
        other_route = await client.post("/documents/async", json={"id": "b", "text": "own key scope"}, headers=headers)

    assert first.json()["job_id"] == replay.json()["job_id"]
    assert other_route.json()["job_id"] != first.json()["job_id"]
    assert len(services.jobs.list_jobs("alpha")) == 2
