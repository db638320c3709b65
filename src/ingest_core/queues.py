from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, Dict, List, Mapping, Optional

from .metrics import jobs_enqueued_total, jobs_rejected_total, queue_occupancy
from .models import PRIORITIES, IngestionQueue, Priority


LANE_IDS: Dict[str, str] = {
    "CRITICAL": "critical_queue",
    "HIGH": "high_priority_queue",
    "MEDIUM": "standard_queue",
    "LOW": "batch_queue",
}

DEAD_LETTER_IDS: Dict[str, str] = {
    "CRITICAL": "critical_dlq",
    "HIGH": "high_priority_dlq",
    "MEDIUM": "standard_dlq",
    "LOW": "batch_dlq",
}

LANE_NAMES: Dict[str, str] = {
    "CRITICAL": "Critical Data Queue",
    "HIGH": "High Priority Queue",
    "MEDIUM": "Standard Queue",
    "LOW": "Batch Queue",
}

DEFAULT_CAPACITIES: Dict[str, int] = {
    "CRITICAL": 10_000,
    "HIGH": 50_000,
    "MEDIUM": 100_000,
    "LOW": 50_000,
}


def lane_for(priority: str) -> str:
    try:
        return LANE_IDS[priority]
    except KeyError:
        raise ValueError(f"Unknown priority: {priority}") from None


@dataclass(frozen=True)
class Admission:
    accepted: bool
    lane_id: str
    reason: Optional[str] = None


class QueueManager:
    """Four fixed priority lanes plus their dead-letter lanes.

    A lane's deque of job ids is the single source of truth for occupancy.
    Every mutation happens under one lock, so occupancy is exact between
    operations; ``recompute_occupancy`` only drops ids whose job left PENDING
    through a path that bypassed the lane (purge, external mutation).
    """

    def __init__(self, capacities: Mapping[str, int] | None = None) -> None:
        caps = dict(DEFAULT_CAPACITIES)
        if capacities:
            caps.update(capacities)
        self._lock = threading.Lock()
        self._queues: Dict[str, IngestionQueue] = {}
        self._pending: Dict[str, Deque[str]] = {}
        self._dead: Dict[str, Deque[str]] = {}
        for p in PRIORITIES:
            lane_id = LANE_IDS[p]
            dlq_id = DEAD_LETTER_IDS[p]
            self._queues[lane_id] = IngestionQueue(
                id=lane_id,
                name=LANE_NAMES[p],
                priority=p,
                max_size=int(caps[p]),
                dead_letter=dlq_id,
            )
            self._queues[dlq_id] = IngestionQueue(
                id=dlq_id,
                name=f"{LANE_NAMES[p]} (dead letter)",
                priority=p,
                max_size=int(caps[p]),
                is_dead_letter=True,
            )
            self._pending[lane_id] = deque()
            self._dead[dlq_id] = deque()
        self._log = logging.getLogger(__name__)

    # -- admission -------------------------------------------------------

    def admit(self, job_id: str, priority: Priority) -> Admission:
        lane_id = lane_for(priority)
        with self._lock:
            lane = self._pending[lane_id]
            if job_id in lane:
                return Admission(accepted=True, lane_id=lane_id, reason="already queued")
            if len(lane) >= self._queues[lane_id].max_size:
                jobs_rejected_total.labels(lane=lane_id).inc()
                self._log.warning("Admission rejected: lane=%s job=%s (full)", lane_id, job_id)
                return Admission(accepted=False, lane_id=lane_id, reason="QUEUE_FULL")
            lane.append(job_id)
            self._sync(lane_id)
        jobs_enqueued_total.labels(priority=priority).inc()
        return Admission(accepted=True, lane_id=lane_id)

    def next_eligible(self, lane_id: str, is_eligible: Callable[[str], bool] | None = None) -> Optional[str]:
        """Pop the oldest eligible job id of a lane; ineligible ids stay queued."""
        with self._lock:
            lane = self._pending[lane_id]
            for job_id in list(lane):
                if is_eligible is None or is_eligible(job_id):
                    lane.remove(job_id)
                    self._sync(lane_id)
                    return job_id
            return None

    def remove(self, job_id: str) -> bool:
        with self._lock:
            for lane_id, lane in self._pending.items():
                if job_id in lane:
                    lane.remove(job_id)
                    self._sync(lane_id)
                    return True
        return False

    def dead_letter(self, job_id: str, priority: Priority) -> str:
        dlq_id = DEAD_LETTER_IDS[priority]
        with self._lock:
            dlq = self._dead[dlq_id]
            if job_id not in dlq:
                dlq.append(job_id)
            self._queues[dlq_id].current_size = len(dlq)
        self._log.warning("Job %s moved to dead-letter lane %s", job_id, dlq_id)
        return dlq_id

    def dead_letters(self, dlq_id: str) -> List[str]:
        with self._lock:
            return list(self._dead.get(dlq_id, ()))

    def forget(self, job_id: str) -> None:
        """Drop a purged job from every lane, dead-letter lanes included."""
        self.remove(job_id)
        with self._lock:
            for dlq_id, dlq in self._dead.items():
                if job_id in dlq:
                    dlq.remove(job_id)
                    self._queues[dlq_id].current_size = len(dlq)

    # -- bookkeeping -----------------------------------------------------

    def recompute_occupancy(self, is_pending: Callable[[str], bool]) -> Dict[str, int]:
        out: Dict[str, int] = {}
        with self._lock:
            for lane_id, lane in self._pending.items():
                stale = [jid for jid in lane if not is_pending(jid)]
                for jid in stale:
                    lane.remove(jid)
                if stale:
                    self._log.debug("Dropped %d stale ids from lane %s", len(stale), lane_id)
                self._sync(lane_id)
                out[lane_id] = len(lane)
        return out

    def _sync(self, lane_id: str) -> None:
        size = len(self._pending[lane_id])
        self._queues[lane_id].current_size = size
        queue_occupancy.labels(lane=lane_id).set(size)

    def occupancy(self, lane_id: str) -> int:
        with self._lock:
            if lane_id in self._pending:
                return len(self._pending[lane_id])
            return len(self._dead.get(lane_id, ()))

    def pending_ids(self, lane_id: str) -> List[str]:
        with self._lock:
            return list(self._pending.get(lane_id, ()))

    def lane_order(self) -> List[str]:
        return [LANE_IDS[p] for p in PRIORITIES]

    def get_queue(self, queue_id: str) -> Optional[IngestionQueue]:
        with self._lock:
            q = self._queues.get(queue_id)
            return replace(q) if q is not None else None

    def get_queues(self) -> List[IngestionQueue]:
        with self._lock:
            return [replace(q) for q in self._queues.values()]
