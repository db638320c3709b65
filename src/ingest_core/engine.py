from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Mapping, Optional, Sequence

from .audit import AuditEntry, AuditLogger, NullAuditLogger, record_audit
from .connectors import ConnectorRegistry
from .errors import IngestionError, InvalidSourceConfig, InvalidStateTransition, JobNotFound, QueueFull
from .jobs import JobStore, new_job_id
from .ledger import ChainVerification, HashChainLedger, verify_records
from .models import (
    ChainLink,
    DataRecord,
    DataSource,
    IngestionJob,
    IngestionQueue,
    JobConfig,
    JobMetrics,
    JobProgress,
    JobType,
    Priority,
    ScheduleConfig,
)
from .pipeline import DedupStore, Enricher, EnrichmentSource, FieldEncryptor, QualityAssessor, RecordFinalizer, RecordPipeline
from .pipeline.dedup import DuplicateHandler
from .pipeline.record import DEFAULT_PII_PATTERNS, DEFAULT_RETENTION_DAYS
from .quarantine import QuarantineSink
from .queues import DEFAULT_CAPACITIES, Admission, QueueManager
from .scheduler import Clock, JobCallback, JobScheduler, utcnow
from .scheduling import TriggerScheduler, compute_next_run
from .sinks import RecordSink
from .sources import SourceRegistry


@dataclass(frozen=True)
class EngineSettings:
    tick_interval: float = 1.0
    job_retention: timedelta = timedelta(hours=24)
    capacities: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_CAPACITIES))
    pii_patterns: Sequence[str] = DEFAULT_PII_PATTERNS
    default_retention_days: int = DEFAULT_RETENTION_DAYS


class IngestionEngine:
    """Control API over sources, jobs, lanes and the tenant hash chains.

    Every collaborator is injected; the defaults are in-memory stores so an
    engine can be built with no arguments in tests.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        audit: AuditLogger | None = None,
        connectors: ConnectorRegistry | None = None,
        ledger: HashChainLedger | None = None,
        dedup_store: DedupStore | None = None,
        quarantine: QuarantineSink | None = None,
        sink: RecordSink | None = None,
        trigger: TriggerScheduler | None = None,
        assessor: QualityAssessor | None = None,
        encryptor: FieldEncryptor | None = None,
        enrichment_sources: Mapping[str, EnrichmentSource] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.audit = audit or NullAuditLogger()
        self.connectors = connectors or ConnectorRegistry.default()
        self.ledger = ledger or HashChainLedger()
        self.trigger = trigger
        self.clock = clock
        self.sources = SourceRegistry(self.connectors)
        self.jobs = JobStore()
        self.queues = QueueManager(self.settings.capacities)
        self.enricher = Enricher(dict(enrichment_sources or {}))
        self.pipeline = RecordPipeline(enricher=self.enricher, dedup_store=dedup_store, assessor=assessor)
        self.scheduler = JobScheduler(
            jobs=self.jobs,
            queues=self.queues,
            sources=self.sources,
            connectors=self.connectors,
            pipeline=self.pipeline,
            ledger=self.ledger,
            finalizer=RecordFinalizer(
                pii_patterns=self.settings.pii_patterns,
                default_retention_days=self.settings.default_retention_days,
                encryptor=encryptor,
            ),
            sink=sink,
            quarantine=quarantine,
            audit=self.audit,
            clock=clock,
            tick_interval=self.settings.tick_interval,
            job_retention=self.settings.job_retention,
        )
        self._log = logging.getLogger(__name__)

    # -- helpers ---------------------------------------------------------

    def _job(self, job_id: str) -> IngestionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def _audit(self, action: str, job: IngestionJob, **kw) -> None:
        await record_audit(
            self.audit,
            AuditEntry(action=action, resource_type="ingestion_job", resource_id=job.id, tenant_id=job.tenant_id, **kw),
        )

    def _admit(self, job: IngestionJob) -> Admission:
        adm = self.queues.admit(job.id, job.priority)
        if not adm.accepted:
            raise QueueFull(adm.lane_id, job_id=job.id)
        job.lane = adm.lane_id
        return adm

    def _arm_trigger(self, job: IngestionJob) -> None:
        if job.schedule is None or not job.schedule.enabled:
            return
        now = self.clock()
        if self.trigger is not None:
            job_id = job.id

            async def fire() -> None:
                try:
                    await self.queue_job(job_id)
                except IngestionError as e:
                    self._log.warning("Scheduled run of job %s not queued: %s", job_id, e)

            job.next_run = self.trigger.schedule(job.id, job.schedule, fire) or compute_next_run(job.schedule, now)
        else:
            job.next_run = compute_next_run(job.schedule, now)

    @staticmethod
    def _reset_run(job: IngestionJob) -> None:
        job.status = "PENDING"
        job.progress = JobProgress()
        job.metrics = JobMetrics()
        job.started_at = None
        job.completed_at = None

    # -- sources ---------------------------------------------------------

    async def register_data_source(self, source: DataSource, *, test_connection: bool = True) -> DataSource:
        try:
            registered = self.sources.register(source, test_connection=test_connection)
        except IngestionError as e:
            await record_audit(
                self.audit,
                AuditEntry(
                    action="SOURCE_REGISTRATION_FAILED",
                    resource_type="data_source",
                    resource_id=source.id,
                    tenant_id=source.tenant_id,
                    success=False,
                    severity="ERROR",
                    error_message=str(e),
                ),
            )
            raise
        await record_audit(
            self.audit,
            AuditEntry(
                action="SOURCE_REGISTERED",
                resource_type="data_source",
                resource_id=source.id,
                tenant_id=source.tenant_id,
                details={"type": source.type, "name": source.name},
            ),
        )
        return registered

    def get_source(self, source_id: str) -> DataSource:
        return self.sources.get(source_id)

    def get_sources(self, tenant_id: Optional[str] = None) -> List[DataSource]:
        return self.sources.list(tenant_id)

    def register_enrichment_source(self, source_id: str, source: EnrichmentSource) -> None:
        self.enricher.register(source_id, source)

    def register_duplicate_handler(self, action: str, handler: DuplicateHandler) -> None:
        if action not in ("UPDATE", "MERGE"):
            raise ValueError(f"Duplicate handlers are only used for UPDATE and MERGE, not {action}")
        self.pipeline.duplicate_handlers[action] = handler

    # -- jobs ------------------------------------------------------------

    async def create_ingestion_job(
        self,
        source_id: str,
        *,
        name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        type: JobType = "BATCH",
        priority: Optional[Priority] = None,
        config: Optional[JobConfig] = None,
        schedule: Optional[ScheduleConfig] = None,
    ) -> IngestionJob:
        source = self.sources.get(source_id)
        if not source.is_active:
            raise InvalidSourceConfig(f"Source {source_id} is inactive", source_id=source_id)
        now = self.clock()
        job = IngestionJob(
            id=new_job_id(now),
            name=name or f"{source.name} ingestion",
            source_id=source.id,
            tenant_id=tenant_id or source.tenant_id,
            type=type,
            priority=priority or source.priority,
            config=config or JobConfig(),
            created_at=now,
            schedule=schedule,
        )
        self.jobs.add(job)
        # scheduled jobs wait outside any lane until their trigger queues them
        if schedule is None or not schedule.enabled:
            try:
                self._admit(job)
            except QueueFull:
                self.jobs.remove(job.id)
                await self._audit("JOB_REJECTED", job, success=False, severity="WARNING", error_message="QUEUE_FULL")
                raise
        self.scheduler.track(job.id)
        self._arm_trigger(job)
        self._log.info("Created job %s for source %s (priority=%s lane=%s)", job.id, source.id, job.priority, job.lane)
        await self._audit("JOB_CREATED", job, details={"source_id": source.id, "priority": job.priority, "type": job.type})
        return copy.deepcopy(job)

    async def queue_job(self, job_id: str) -> Admission:
        """Admit a job for its next run.

        A PENDING job that left its lane is re-admitted; a finished scheduled
        job starts a fresh run with a new completion future.
        """
        job = self._job(job_id)
        if job.status == "PENDING":
            if job.id in self.queues.pending_ids(job.lane or ""):
                return Admission(accepted=True, lane_id=job.lane or "", reason="already queued")
            adm = self._admit(job)
            if job.schedule is not None:
                await self._audit("JOB_QUEUED", job, details={"scheduled": True})
            return adm
        if job.status in ("COMPLETED", "FAILED") and job.schedule is not None:
            if self.scheduler.is_processing(job.id):
                raise InvalidStateTransition(job.id, job.status, "queue")
            self._reset_run(job)
            self.scheduler.drop_context(job.id)
            try:
                adm = self._admit(job)
            except QueueFull:
                job.status = "FAILED"
                job.completed_at = self.clock()
                job.last_error = "QUEUE_FULL"
                raise
            self.scheduler.track(job.id)
            await self._audit("JOB_QUEUED", job, details={"scheduled": True})
            return adm
        raise InvalidStateTransition(job.id, job.status, "queue")

    async def pause_job(self, job_id: str) -> IngestionJob:
        job = self._job(job_id)
        if job.status != "RUNNING":
            raise InvalidStateTransition(job.id, job.status, "pause")
        job.status = "PAUSED"
        self._log.info("Paused job %s", job.id)
        await self._audit("JOB_PAUSED", job, details={"processed": job.progress.processed_records})
        return copy.deepcopy(job)

    async def resume_job(self, job_id: str) -> IngestionJob:
        job = self._job(job_id)
        if job.status != "PAUSED":
            raise InvalidStateTransition(job.id, job.status, "resume")
        job.status = "PENDING"
        try:
            self._admit(job)
        except QueueFull:
            job.status = "PAUSED"
            raise
        self._log.info("Resumed job %s into %s", job.id, job.lane)
        await self._audit("JOB_RESUMED", job)
        return copy.deepcopy(job)

    async def cancel_job(self, job_id: str) -> IngestionJob:
        job = self._job(job_id)
        recurring = job.schedule is not None and job.schedule.enabled
        # a finished recurring job can still be cancelled to stop its trigger
        if job.status == "CANCELLED" or (job.is_terminal and not recurring):
            raise InvalidStateTransition(job.id, job.status, "cancel")
        job.status = "CANCELLED"
        job.completed_at = self.clock()
        self.queues.remove(job.id)
        if self.trigger is not None and job.schedule is not None:
            self.trigger.unschedule(job.id)
        await self.scheduler.cancel(job)
        self._log.info("Cancelled job %s", job.id)
        await self._audit("JOB_CANCELLED", job, details={"processed": job.progress.processed_records})
        return copy.deepcopy(job)

    async def retry_job(self, job_id: str) -> IngestionJob:
        """Re-admit a FAILED job for a fresh run while retries remain.

        Once ``error_count`` exceeds ``max_retries`` the job is parked in its
        lane's dead-letter lane and the retry is refused.
        """
        job = self._job(job_id)
        if job.status != "FAILED" or self.scheduler.is_processing(job.id):
            raise InvalidStateTransition(job.id, job.status, "retry")
        if job.error_count > job.config.max_retries:
            dlq = self.queues.dead_letter(job.id, job.priority)
            job.lane = dlq
            await self._audit(
                "JOB_DEAD_LETTERED", job, success=False, severity="WARNING", details={"error_count": job.error_count}
            )
            raise InvalidStateTransition(job.id, job.status, "retry (retries exhausted)")
        self._reset_run(job)
        self.scheduler.drop_context(job.id)
        try:
            self._admit(job)
        except QueueFull:
            job.status = "FAILED"
            job.completed_at = self.clock()
            raise
        self.scheduler.track(job.id)
        self._log.info("Retrying job %s (attempt %d)", job.id, job.error_count + 1)
        await self._audit("JOB_RETRIED", job, details={"error_count": job.error_count})
        return copy.deepcopy(job)

    def get_job(self, job_id: str) -> IngestionJob:
        return copy.deepcopy(self._job(job_id))

    def get_jobs(self, tenant_id: Optional[str] = None, status: Optional[str] = None) -> List[IngestionJob]:
        return [copy.deepcopy(j) for j in self.jobs.list(tenant_id, status)]

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> IngestionJob:
        """Wait for the job's current run to reach a terminal status."""
        job = self._job(job_id)
        fut = self.scheduler.completion(job.id)
        if not fut.done() and job.is_terminal:
            return copy.deepcopy(job)
        done = await asyncio.wait_for(asyncio.shield(fut), timeout)
        return copy.deepcopy(done)

    def subscribe(self, job_id: str, callback: JobCallback) -> None:
        self._job(job_id)
        self.scheduler.subscribe(job_id, callback)

    # -- lanes and chains -----------------------------------------------

    def get_queue(self, queue_id: str) -> Optional[IngestionQueue]:
        return self.queues.get_queue(queue_id)

    def get_queues(self) -> List[IngestionQueue]:
        return self.queues.get_queues()

    def get_hash_chain(self, tenant_id: str) -> List[str]:
        return self.ledger.get_chain(tenant_id)

    def get_chain_links(self, tenant_id: str) -> List[ChainLink]:
        return self.ledger.get_links(tenant_id)

    def verify_hash_chain(self, tenant_id: str) -> ChainVerification:
        return self.ledger.verify(tenant_id)

    def verify_records(self, tenant_id: str, records: Sequence[DataRecord]) -> ChainVerification:
        """Check records read back from a sink against the tenant chain."""
        return verify_records(records, self.ledger.get_links(tenant_id))

    # -- loop ------------------------------------------------------------

    async def tick(self) -> List[str]:
        return await self.scheduler.tick()

    def start(self) -> None:
        self.scheduler.start()

    async def stop(self, *, wait: bool = True) -> None:
        await self.scheduler.stop(wait=wait)

    def active_job_ids(self) -> List[str]:
        # scheduled jobs waiting for their trigger hold no lane slot
        queued = {jid for lane_id in self.queues.lane_order() for jid in self.queues.pending_ids(lane_id)}
        return [j.id for j in self.jobs.list() if j.status == "RUNNING" or j.id in queued]

    async def run_until_idle(self, timeout: Optional[float] = None, poll: float = 0.01) -> None:
        """Tick until no job is PENDING or RUNNING (paused jobs count as idle)."""

        async def _drive() -> None:
            while True:
                await self.tick()
                if not self.active_job_ids() and not self.scheduler.processing_ids():
                    return
                await asyncio.sleep(poll)

        await asyncio.wait_for(_drive(), timeout)
