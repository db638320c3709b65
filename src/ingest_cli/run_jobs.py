from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List

from ingest_core import IngestionEngine, IngestionError
from ingest_core.logging import setup_logging
from ingest_service.config import settings
from ingest_service.factory import build_engine

from ingest_cli.config_loader import IngestConfig, load_config


async def run(engine: IngestionEngine, cfg: IngestConfig, *, timeout: float | None = None) -> int:
    log = logging.getLogger(__name__)
    for sid, side in cfg.enrichment_sources.items():
        engine.register_enrichment_source(sid, side)
    for src in cfg.sources:
        await engine.register_data_source(src)
    job_ids: List[str] = []
    for spec in cfg.jobs:
        try:
            job = await engine.create_ingestion_job(
                spec.source_id,
                name=spec.name,
                tenant_id=spec.tenant_id,
                type=spec.type,  # type: ignore[arg-type]
                priority=spec.priority,  # type: ignore[arg-type]
                config=spec.config,
                schedule=spec.schedule,
            )
        except IngestionError as e:
            log.error("Job for source %s not created [%s]: %s", spec.source_id, e.code, e)
            continue
        if job.lane is None:
            # a one-shot run executes scheduled jobs once, now
            try:
                await engine.queue_job(job.id)
            except IngestionError as e:
                log.error("Scheduled job %s not queued [%s]: %s", job.id, e.code, e)
                continue
        job_ids.append(job.id)

    await engine.run_until_idle(timeout)

    failures = 0
    tenants = set()
    for job_id in job_ids:
        job = engine.get_job(job_id)
        p = job.progress
        print(
            f"{job.id} {job.name!r}: {job.status} processed={p.processed_records} ok={p.successful_records} "
            f"failed={p.failed_records} quarantined={p.quarantined_records} skipped={p.skipped_records} "
            f"quality={job.metrics.quality_score:.2f}"
        )
        if job.status != "COMPLETED":
            failures += 1
            if job.last_error:
                print(f"  error: {job.last_error}")
        tenants.add(job.tenant_id or "SYSTEM")
    for tenant in sorted(tenants):
        res = engine.verify_hash_chain(tenant)
        state = "ok" if res.ok else f"BROKEN at {res.broken_at} ({res.reason})"
        print(f"chain {tenant}: length={res.length} {state}")
        if not res.ok:
            failures += 1
    return 1 if failures else 0


def main() -> None:
    setup_logging(settings.log_level)
    parser = argparse.ArgumentParser(description="Run ingestion jobs described in a YAML file")
    parser.add_argument("config", type=Path, help="YAML file with sources, jobs and enrichment sources")
    parser.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")
    args = parser.parse_args()

    cfg = load_config(args.config)
    engine = build_engine(settings)
    sys.exit(asyncio.run(run(engine, cfg, timeout=args.timeout)))


if __name__ == "__main__":
    main()
