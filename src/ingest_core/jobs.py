from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .models import IngestionJob


def new_job_id(now: datetime) -> str:
    return f"JOB{now.strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:6].upper()}"


def new_record_id(now: datetime) -> str:
    return f"REC{now.strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:8].upper()}"


class JobStore:
    """Live job table.

    Mutated by the scheduler and the control API only. Finished jobs stay
    visible until ``purge_finished`` drops them after the retention window.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, IngestionJob] = {}
        self._lock = threading.Lock()
        self._log = logging.getLogger(__name__)

    def add(self, job: IngestionJob) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def remove(self, job_id: str) -> Optional[IngestionJob]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def get(self, job_id: str) -> Optional[IngestionJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def list(self, tenant_id: Optional[str] = None, status: Optional[str] = None) -> List[IngestionJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if tenant_id is not None:
            jobs = [j for j in jobs if j.tenant_id == tenant_id]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    def is_pending(self, job_id: str) -> bool:
        job = self.get(job_id)
        return job is not None and job.status == "PENDING"

    def purge_finished(self, now: datetime, retention: timedelta) -> List[str]:
        threshold = now - retention
        removed: List[str] = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                # a recurring job lives until it is cancelled
                if job.status != "CANCELLED" and job.schedule is not None and job.schedule.enabled:
                    continue
                if job.completed_at is not None and job.is_terminal and job.completed_at < threshold:
                    del self._jobs[job_id]
                    removed.append(job_id)
        if removed:
            self._log.info("Purged %d finished jobs older than %s", len(removed), retention)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
