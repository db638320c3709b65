from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from .audit import AuditEntry, AuditLogger, NullAuditLogger, record_audit
from .connectors import ConnectorRegistry, RecordStream
from .errors import IngestionError, InvalidSourceConfig, QuarantineThresholdExceeded, RecordTimeout
from .jobs import JobStore, new_record_id
from .ledger import HashChainLedger
from .metrics import job_duration_seconds, jobs_completed_total, record_latency_seconds, records_total
from .models import DataSource, IngestionJob
from .pipeline import Outcome, RecordFinalizer, RecordPipeline
from .quarantine import MemoryQuarantine, QuarantinedRecord, QuarantineSink
from .queues import QueueManager
from .scheduling import compute_next_run
from .sinks import MemoryRecordSink, RecordSink
from .sources import SourceRegistry

Clock = Callable[[], datetime]
JobCallback = Callable[[IngestionJob], Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _take(it: Iterator[Dict[str, Any]], n: int) -> List[Dict[str, Any]]:
    return list(itertools.islice(it, n))


@dataclass
class RunContext:
    """State of one job run that survives pause/resume.

    The connector stream is not restartable, so a paused job keeps its open
    iterator and the unconsumed part of the current batch.
    """

    stream: Any
    is_async: bool
    batch_size: int
    expected_total: Optional[int] = None
    buffer: Deque[Dict[str, Any]] = field(default_factory=deque)
    exhausted: bool = False
    pulled: int = 0
    active_seconds: float = 0.0
    latency_ms_total: float = 0.0
    quality_total: float = 0.0
    quality_count: int = 0

    async def fill(self) -> int:
        """Pull the next bounded batch into the buffer; 0 means the stream ended."""
        if self.exhausted:
            return 0
        if self.is_async:
            batch = []
            for _ in range(self.batch_size):
                try:
                    batch.append(await self.stream.__anext__())
                except StopAsyncIteration:
                    break
        else:
            batch = await asyncio.to_thread(_take, self.stream, self.batch_size)
        if len(batch) < self.batch_size:
            self.exhausted = True
        self.buffer.extend(batch)
        self.pulled += len(batch)
        return len(batch)

    async def close(self) -> None:
        closer = getattr(self.stream, "aclose", None) if self.is_async else getattr(self.stream, "close", None)
        if closer is None:
            return
        try:
            res = closer()
            if asyncio.iscoroutine(res):
                await res
        except (RuntimeError, ValueError) as e:
            # the stream is still executing in a worker thread after a cancel
            logging.getLogger(__name__).debug("Stream close deferred: %s", e)


class JobScheduler:
    """Tick-driven admission and the per-job record streams.

    One cooperative control loop moves at most one PENDING job per lane to
    RUNNING per tick; every started job runs as its own asyncio task.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        queues: QueueManager,
        sources: SourceRegistry,
        connectors: ConnectorRegistry,
        pipeline: RecordPipeline,
        ledger: HashChainLedger,
        finalizer: RecordFinalizer | None = None,
        sink: RecordSink | None = None,
        quarantine: QuarantineSink | None = None,
        audit: AuditLogger | None = None,
        clock: Clock = utcnow,
        tick_interval: float = 1.0,
        job_retention: timedelta = timedelta(hours=24),
    ) -> None:
        self.jobs = jobs
        self.queues = queues
        self.sources = sources
        self.connectors = connectors
        self.pipeline = pipeline
        self.ledger = ledger
        self.finalizer = finalizer or RecordFinalizer()
        self.sink = sink or MemoryRecordSink()
        self.quarantine = quarantine or MemoryQuarantine()
        self.audit = audit or NullAuditLogger()
        self.clock = clock
        self.tick_interval = float(tick_interval)
        self.job_retention = job_retention
        self._processing: Dict[str, asyncio.Task] = {}
        self._contexts: Dict[str, RunContext] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._tenant_locks: Dict[str, asyncio.Lock] = {}
        self._tick_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._log = logging.getLogger(__name__)

    # -- completion channel ----------------------------------------------

    def track(self, job_id: str) -> asyncio.Future:
        """Open a fresh completion future for the job's next run."""
        fut = asyncio.get_running_loop().create_future()
        self._futures[job_id] = fut
        return fut

    def completion(self, job_id: str) -> asyncio.Future:
        fut = self._futures.get(job_id)
        if fut is None:
            fut = self.track(job_id)
        return fut

    def subscribe(self, job_id: str, callback: JobCallback) -> None:
        def _done(f: asyncio.Future) -> None:
            if f.cancelled():
                return
            try:
                callback(f.result())
            except Exception:
                self._log.exception("Completion callback failed for job %s", job_id)

        self.completion(job_id).add_done_callback(_done)

    def _emit(self, job: IngestionJob) -> None:
        fut = self._futures.get(job.id)
        if fut is not None and not fut.done():
            fut.set_result(job)
        jobs_completed_total.labels(status=job.status.lower()).inc()

    # -- state -----------------------------------------------------------

    def is_processing(self, job_id: str) -> bool:
        return job_id in self._processing

    def processing_ids(self) -> List[str]:
        return list(self._processing)

    def has_context(self, job_id: str) -> bool:
        return job_id in self._contexts

    def drop_context(self, job_id: str) -> None:
        self._contexts.pop(job_id, None)

    def _startable(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        return job is not None and job.status == "PENDING" and job_id not in self._processing

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = self._tenant_locks[tenant_id] = asyncio.Lock()
        return lock

    # -- tick loop -------------------------------------------------------

    async def tick(self) -> List[str]:
        async with self._tick_lock:
            started: List[str] = []
            for lane_id in self.queues.lane_order():
                job_id = self.queues.next_eligible(lane_id, self._startable)
                if job_id is None:
                    continue
                job = self.jobs.get(job_id)
                if job is not None:
                    self._start(job)
                    started.append(job_id)
            now = self.clock()
            for job_id in self.jobs.purge_finished(now, self.job_retention):
                self.queues.forget(job_id)
                self._futures.pop(job_id, None)
                self._contexts.pop(job_id, None)
            self.queues.recompute_occupancy(self.jobs.is_pending)
            return started

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                self._log.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._stopping.clear()
            self._loop_task = asyncio.create_task(self._loop())
            self._log.info("Scheduler loop started (interval=%.2fs)", self.tick_interval)

    async def stop(self, *, wait: bool = True) -> None:
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if wait and self._processing:
            await asyncio.gather(*self._processing.values(), return_exceptions=True)
        self._log.info("Scheduler loop stopped")

    # -- runs ------------------------------------------------------------

    def _start(self, job: IngestionJob) -> None:
        now = self.clock()
        job.status = "RUNNING"
        if job.started_at is None:
            job.started_at = now
        job.last_run = now
        self._processing[job.id] = asyncio.create_task(self._run(job), name=f"ingest-{job.id}")
        self._log.info("Started job %s (%s) lane=%s", job.id, job.priority, job.lane)

    async def cancel(self, job: IngestionJob) -> None:
        """Stop the job's stream; the caller already set the CANCELLED status."""
        task = self._processing.pop(job.id, None)
        if task is not None and not task.done():
            task.cancel()
        ctx = self._contexts.pop(job.id, None)
        if ctx is not None and task is None:
            await ctx.close()
        self._emit(job)

    async def _open(self, job: IngestionJob, source: DataSource) -> RunContext:
        connector = self.connectors.for_source(source)
        stream: RecordStream = await asyncio.to_thread(connector.open, source, job)
        is_async = hasattr(stream, "__aiter__")
        if is_async:
            stream = stream.__aiter__()
        else:
            stream = iter(stream)
        expected = await asyncio.to_thread(connector.expected_total, source, job)
        ctx = RunContext(stream=stream, is_async=is_async, batch_size=max(1, int(job.config.batch_size)), expected_total=expected)
        if expected is not None:
            job.progress.total_records = expected
            job.progress.total_batches = math.ceil(expected / ctx.batch_size) if expected else 0
        return ctx

    async def _run(self, job: IngestionJob) -> None:
        resumed = job.id in self._contexts
        await record_audit(
            self.audit,
            AuditEntry(
                action="JOB_STARTED",
                resource_type="ingestion_job",
                resource_id=job.id,
                tenant_id=job.tenant_id,
                details={"source_id": job.source_id, "priority": job.priority, "resumed": resumed},
            ),
        )
        t0 = time.perf_counter()
        ctx: Optional[RunContext] = None
        try:
            source = self.sources.get(job.source_id)
            if not source.is_active:
                raise InvalidSourceConfig(f"Source {source.id} is inactive", source_id=source.id, job_id=job.id)
            ctx = self._contexts.get(job.id)
            if ctx is None:
                ctx = self._contexts[job.id] = await self._open(job, source)
            while job.status == "RUNNING":
                if not ctx.buffer:
                    pulled = await ctx.fill()
                    if pulled:
                        job.progress.current_batch += 1
                        if ctx.expected_total is None:
                            job.progress.total_records = ctx.pulled
                            job.progress.total_batches = job.progress.current_batch + (0 if ctx.exhausted else 1)
                    if not ctx.buffer:
                        break
                    # status may have changed while the batch was pulled
                    continue
                raw = ctx.buffer.popleft()
                await self._process_one(job, source, raw, ctx)
                self._refresh(job, ctx, time.perf_counter() - t0)
            if job.status == "RUNNING":
                ctx.active_seconds += time.perf_counter() - t0
                await self._complete(job, ctx)
            elif not job.is_terminal:
                ctx.active_seconds += time.perf_counter() - t0
                self._log.info("Job %s stopped consuming after %d records", job.id, job.progress.processed_records)
        except asyncio.CancelledError:
            if job.status != "CANCELLED":
                raise
            self._log.info("Job %s cancelled", job.id)
        except Exception as e:
            if job.status == "CANCELLED":
                return
            await self._fail(job, e)
        finally:
            if self._processing.get(job.id) is asyncio.current_task():
                self._processing.pop(job.id, None)
            if job.is_terminal and ctx is not None:
                self._contexts.pop(job.id, None)
                await ctx.close()

    async def _process_one(self, job: IngestionJob, source: DataSource, raw: Dict[str, Any], ctx: RunContext) -> None:
        started = time.perf_counter()
        now = self.clock()
        timeout = float(job.config.timeout or 0)
        work = self.pipeline.process(raw, job=job, source=source, now=now)
        try:
            outcome: Outcome = await (asyncio.wait_for(work, timeout) if timeout > 0 else work)
        except asyncio.TimeoutError:
            raise RecordTimeout(f"Record processing exceeded {timeout}s", job_id=job.id) from None
        if outcome.disposition == "ACCEPTED":
            # a cancelled run must not leave half a commit behind
            outcome = await asyncio.shield(self._commit(job, source, outcome, now))
        if job.status == "CANCELLED":
            return
        p = job.progress
        p.processed_records += 1
        disposition = outcome.disposition
        if disposition == "ACCEPTED":
            p.successful_records += 1
            if outcome.quality is not None:
                ctx.quality_total += outcome.quality.overall
                ctx.quality_count += 1
        elif disposition == "QUARANTINED":
            p.quarantined_records += 1
            await self.quarantine.put(
                QuarantinedRecord(
                    tenant_id=outcome.tenant_id,
                    source_id=source.id,
                    job_id=job.id,
                    reason=outcome.reason or "quarantine",
                    data=dict(outcome.data or raw),
                    errors=list(outcome.errors),
                    quarantined_at=now,
                )
            )
            threshold = job.config.validation.quarantine_threshold
            if p.quarantined_records / p.processed_records > threshold:
                raise QuarantineThresholdExceeded(
                    f"Quarantined {p.quarantined_records} of {p.processed_records} records (threshold {threshold})",
                    job_id=job.id,
                )
        elif disposition == "INVALID":
            p.failed_records += 1
            self._log.debug("Dropped invalid record in job %s: %s", job.id, "; ".join(outcome.errors))
        else:
            p.skipped_records += 1
        elapsed = time.perf_counter() - started
        ctx.latency_ms_total += elapsed * 1000.0
        records_total.labels(disposition=disposition.lower()).inc()
        record_latency_seconds.observe(elapsed)

    async def _commit(self, job: IngestionJob, source: DataSource, outcome: Outcome, now: datetime) -> Outcome:
        """Dedup mark, finalize, ledger append and sink write under the tenant lock."""
        async with self._tenant_lock(outcome.tenant_id):
            if job.status == "CANCELLED":
                return outcome
            if outcome.dedup_key is not None and outcome.dedup_scope is not None:
                fresh = await self.pipeline.dedup_store.mark(
                    outcome.dedup_scope, outcome.dedup_key, job.config.deduplication.window_size
                )
                if not fresh and not outcome.replaces_duplicate:
                    return Outcome("DUPLICATE", outcome.tenant_id, dedup_scope=outcome.dedup_scope, dedup_key=outcome.dedup_key, reason="duplicate")
            record = self.finalizer.finalize(
                outcome.data or {},
                record_id=new_record_id(now),
                tenant_id=outcome.tenant_id,
                source=source,
                job_id=job.id,
                quality=outcome.quality,  # type: ignore[arg-type]
                now=now,
            )
            link = self.ledger.append(record.tenant_id, record.hash, record.timestamp)
            record = replace(record, previous_hash=link.previous, link_hash=link.link)
            await self.sink.write(record)
        return outcome

    def _refresh(self, job: IngestionJob, ctx: RunContext, running_for: float) -> None:
        p = job.progress
        if p.total_records:
            p.percentage = round(min(100.0, p.processed_records * 100.0 / p.total_records), 2)
        m = job.metrics
        seconds = ctx.active_seconds + running_for
        if seconds > 0:
            m.records_per_second = round(p.processed_records / seconds, 3)
        if p.processed_records:
            m.average_latency_ms = round(ctx.latency_ms_total / p.processed_records, 3)
            m.error_rate = round((p.failed_records + p.quarantined_records) / p.processed_records, 4)
        if ctx.quality_count:
            m.quality_score = round(ctx.quality_total / ctx.quality_count, 4)

    async def _complete(self, job: IngestionJob, ctx: RunContext) -> None:
        now = self.clock()
        job.status = "COMPLETED"
        job.completed_at = now
        job.progress.total_records = max(job.progress.total_records, job.progress.processed_records)
        job.progress.total_batches = job.progress.current_batch
        job.progress.percentage = 100.0
        self._refresh(job, ctx, 0.0)
        job.next_run = compute_next_run(job.schedule, now) or job.next_run
        self.sources.mark_ingested(job.source_id, now)
        job_duration_seconds.observe(ctx.active_seconds)
        self._log.info(
            "Job %s completed: processed=%d ok=%d failed=%d quarantined=%d skipped=%d",
            job.id,
            job.progress.processed_records,
            job.progress.successful_records,
            job.progress.failed_records,
            job.progress.quarantined_records,
            job.progress.skipped_records,
        )
        await record_audit(
            self.audit,
            AuditEntry(
                action="JOB_COMPLETED",
                resource_type="ingestion_job",
                resource_id=job.id,
                tenant_id=job.tenant_id,
                details={"processed": job.progress.processed_records, "successful": job.progress.successful_records},
            ),
        )
        self._emit(job)

    async def _fail(self, job: IngestionJob, err: BaseException) -> None:
        now = self.clock()
        job.status = "FAILED"
        job.completed_at = now
        job.error_count += 1
        job.last_error = str(err)
        if isinstance(err, IngestionError):
            self._log.error("Job %s failed [%s]: %s", job.id, err.code, err)
        else:
            self._log.exception("Job %s failed: %s", job.id, err)
        await record_audit(
            self.audit,
            AuditEntry(
                action="JOB_FAILED",
                resource_type="ingestion_job",
                resource_id=job.id,
                tenant_id=job.tenant_id,
                success=False,
                severity="ERROR",
                error_message=str(err),
                details={"error_count": job.error_count, "code": getattr(err, "code", type(err).__name__)},
            ),
        )
        self._emit(job)
