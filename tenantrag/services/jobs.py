from __future__ import annotations

import asyncio
from collections import deque
from datetime import timedelta
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, Field

from tenantrag.core.errors import (
    JobCancelled,
    JobNotFound,
    TenantRAGError,
)
from tenantrag.domain.types import Document, JobRecord, JobStatus, JobType, TenantContext, utc_now
from tenantrag.services.pipeline import RAGPipeline
from tenantrag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
}


class DocumentPayload(BaseModel):
    # Match the published job schema for API-to-executor handoff.
    id: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None

    def to_document(self) -> Document:
        return Document(id=self.id, text=self.text, metadata=dict(self.metadata), source=self.source)


class IngestJobPayload(BaseModel):
    documents: list[DocumentPayload]
    chunk_size: int | None = None
    chunk_overlap: int | None = None


class ReindexJobPayload(BaseModel):
    # Unset sizes re-chunk with the current defaults.
    chunk_size: int | None = None
    chunk_overlap: int | None = None
    rebuild_index: bool = True


class JobQueue:
    """In-process job registry with a FIFO of pending work.

    Every mutation is synchronous, so on a single event loop each transition
    is atomic with respect to other tasks.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._pending: deque[str] = deque()
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._wakeup = asyncio.Event()

    def enqueue(self, tenant_id: str, job_type: JobType, payload: dict[str, Any]) -> str:
        job_id = uuid4().hex
        self._jobs[job_id] = JobRecord(
            id=job_id, tenant_id=tenant_id, type=JobType(job_type), payload=payload
        )
        self._cancel_events[job_id] = asyncio.Event()
        self._pending.append(job_id)
        self._wakeup.set()
        increment_counter("jobs_enqueued_total")
        logger.info("job_enqueued job_id=%s tenant_id=%s type=%s", job_id, tenant_id, JobType(job_type).value)
        return job_id

    def get(self, job_id: str, tenant_id: str | None = None) -> JobRecord:
        job = self._jobs.get(job_id)
        # Another tenant's job is indistinguishable from a missing one.
        if job is None or (tenant_id is not None and job.tenant_id != tenant_id):
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def list_jobs(
        self, tenant_id: str, *, status: JobStatus | None = None, limit: int = 50
    ) -> list[JobRecord]:
        jobs = [
            job
            for job in self._jobs.values()
            if job.tenant_id == tenant_id and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda job: (job.created_at, job.id), reverse=True)
        return jobs[: max(0, limit)]

    def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status == JobStatus.PENDING)

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> JobRecord:
        job = self.get(job_id)
        allowed = _ALLOWED_TRANSITIONS.get(job.status, frozenset())
        if status not in allowed:
            raise ValueError(f"illegal job transition {job.status.value} -> {status.value}")
        job.status = status
        now = utc_now()
        if status == JobStatus.RUNNING:
            job.started_at = now
            job.attempts += 1
        if status.is_terminal:
            job.completed_at = now
            if status == JobStatus.COMPLETED:
                job.progress = 1.0
        if result is not None:
            job.result = result
        if error is not None:
            job.error = error
        logger.info("job_transition job_id=%s status=%s", job_id, status.value)
        return job

    def cancel(self, job_id: str, tenant_id: str | None = None) -> JobRecord:
        job = self.get(job_id, tenant_id)
        if job.status == JobStatus.PENDING:
            return self.transition(job_id, JobStatus.CANCELLED, error="cancelled before start")
        if job.status == JobStatus.RUNNING:
            # Cooperative: the executor marks the job cancelled once the ingest observes the signal.
            self._cancel_events[job_id].set()
            logger.info("job_cancel_requested job_id=%s", job_id)
        return job

    def is_cancel_requested(self, job_id: str) -> bool:
        event = self._cancel_events.get(job_id)
        return event is not None and event.is_set()

    def cancel_event(self, job_id: str) -> asyncio.Event:
        return self._cancel_events[job_id]

    def set_progress(self, job_id: str, progress: float) -> None:
        job = self.get(job_id)
        job.progress = max(0.0, min(1.0, float(progress)))

    def claim_next(self) -> JobRecord | None:
        # Skip ids whose jobs were cancelled while waiting.
        while self._pending:
            job_id = self._pending.popleft()
            job = self._jobs.get(job_id)
            if job is not None and job.status == JobStatus.PENDING:
                return self.transition(job_id, JobStatus.RUNNING)
        self._wakeup.clear()
        return None

    async def wait_for_work(self, timeout_s: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return

    def prune_finished(self, older_than_s: float) -> int:
        cutoff = utc_now() - timedelta(seconds=older_than_s)
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in stale:
            self._jobs.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
        if stale:
            logger.info("jobs_pruned count=%s", len(stale))
        return len(stale)


TenantLookup = Callable[[str], Awaitable[TenantContext]]


def _failure_reason(exc: Exception) -> str:
    # Keep failure reasons short and free of internals.
    if isinstance(exc, TenantRAGError):
        return f"{exc.code}: {exc.message}"
    return type(exc).__name__


class JobExecutor:
    """Worker pool that drains a JobQueue through the RAG pipeline.

    Store retries happen once, inside the pipeline; a job that still fails
    is recorded as failed rather than retried again here.
    """

    def __init__(
        self,
        queue: JobQueue,
        pipeline: RAGPipeline,
        tenant_lookup: TenantLookup,
        *,
        worker_count: int = 4,
        poll_interval_s: float = 1.0,
        retention_s: float = 86400,
    ) -> None:
        self._queue = queue
        self._pipeline = pipeline
        self._tenant_lookup = tenant_lookup
        self._worker_count = max(1, worker_count)
        self._poll_interval_s = poll_interval_s
        self._retention_s = retention_s
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"job-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("job_executor_started workers=%s", self._worker_count)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("job_executor_stopped")

    async def _worker(self, index: int) -> None:
        while True:
            job = self._queue.claim_next()
            if job is None:
                if index == 0:
                    self._queue.prune_finished(self._retention_s)
                await self._queue.wait_for_work(self._poll_interval_s)
                continue
            await self.run_job(job)

    async def run_job(self, job: JobRecord) -> JobRecord:
        # Job must already be running; drive it to a terminal state.
        cancel_event = self._queue.cancel_event(job.id)
        try:
            tenant = await self._tenant_lookup(job.tenant_id)
            if job.type == JobType.REINDEX:
                reindex = ReindexJobPayload.model_validate(job.payload)
                result = await self._reindex(job, tenant, reindex, cancel_event)
            else:
                payload = IngestJobPayload.model_validate(job.payload)
                documents = [item.to_document() for item in payload.documents]
                result = await self._ingest_all(job, tenant, documents, payload, cancel_event)
        except JobCancelled:
            increment_counter("jobs_cancelled_total")
            return self._queue.transition(job.id, JobStatus.CANCELLED, error="cancelled")
        except asyncio.CancelledError:
            # Executor shutdown; never leave the record stuck in running.
            self._queue.transition(job.id, JobStatus.FAILED, error="executor stopped")
            raise
        except _BatchFailed as exc:
            increment_counter("jobs_failed_total")
            logger.warning("job_failed job_id=%s reason=%s", job.id, exc.reason)
            return self._queue.transition(job.id, JobStatus.FAILED, result=exc.partial, error=exc.reason)
        except Exception as exc:  # noqa: BLE001 - job failures are recorded, not raised
            increment_counter("jobs_failed_total")
            logger.exception("job_failed job_id=%s", job.id)
            return self._queue.transition(job.id, JobStatus.FAILED, error=_failure_reason(exc))
        increment_counter("jobs_completed_total")
        return self._queue.transition(job.id, JobStatus.COMPLETED, result=result)

    async def _ingest_all(
        self,
        job: JobRecord,
        tenant: TenantContext,
        documents: list[Document],
        options: IngestJobPayload | ReindexJobPayload,
        cancel_event: asyncio.Event,
        *,
        progress_span: float = 1.0,
    ) -> dict[str, Any]:
        # Each document is all-or-nothing; the first failure stops the batch and earlier documents stay.
        completed: list[dict[str, Any]] = []
        total = len(documents)
        for position, document in enumerate(documents, start=1):
            if cancel_event.is_set():
                raise JobCancelled(f"job {job.id} cancelled")
            try:
                summary = await self._pipeline.ingest(
                    tenant,
                    document,
                    chunk_size=options.chunk_size,
                    chunk_overlap=options.chunk_overlap,
                    cancel_event=cancel_event,
                )
            except (JobCancelled, asyncio.CancelledError):
                raise
            except Exception as exc:  # noqa: BLE001 - converted into a failed batch below
                raise _BatchFailed(
                    reason=f"document {document.id}: {_failure_reason(exc)}",
                    partial=_batch_result(completed),
                ) from exc
            completed.append({"document_id": summary.document_id, "chunks_created": summary.chunks_created})
            self._queue.set_progress(job.id, progress_span * (position / total if total else 1.0))
        return _batch_result(completed)

    async def _reindex(
        self,
        job: JobRecord,
        tenant: TenantContext,
        payload: ReindexJobPayload,
        cancel_event: asyncio.Event,
    ) -> dict[str, Any]:
        # Re-chunk and re-embed every stored document, then rebuild the ANN index.
        documents = await self._pipeline.stored_documents(tenant)
        logger.info(
            "reindex_started job_id=%s tenant_id=%s documents=%s", job.id, tenant.tenant_id, len(documents)
        )
        result = await self._ingest_all(job, tenant, documents, payload, cancel_event, progress_span=0.9)
        if cancel_event.is_set():
            raise JobCancelled(f"job {job.id} cancelled")
        if payload.rebuild_index:
            await self._pipeline.rebuild_index()
        result["index_rebuilt"] = payload.rebuild_index
        return result


class _BatchFailed(Exception):
    def __init__(self, *, reason: str, partial: dict[str, Any]) -> None:
        super().__init__(reason)
        self.reason = reason
        self.partial = partial


def _batch_result(completed: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "document_ids": [item["document_id"] for item in completed],
        "chunks_created": sum(item["chunks_created"] for item in completed),
        "documents": completed,
    }
