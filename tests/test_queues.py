from __future__ import annotations

import pytest

from ingest_core.queues import DEAD_LETTER_IDS, DEFAULT_CAPACITIES, LANE_IDS, QueueManager, lane_for


def test_lane_is_a_function_of_priority():
    assert lane_for("CRITICAL") == "critical_queue"
    assert lane_for("HIGH") == "high_priority_queue"
    assert lane_for("MEDIUM") == "standard_queue"
    assert lane_for("LOW") == "batch_queue"
    with pytest.raises(ValueError):
        lane_for("URGENT")


def test_default_lanes_and_dead_letter_lanes():
    qm = QueueManager()
    queues = {q.id: q for q in qm.get_queues()}
    for p, lane in LANE_IDS.items():
        assert queues[lane].max_size == DEFAULT_CAPACITIES[p]
        assert queues[lane].dead_letter == DEAD_LETTER_IDS[p]
        assert queues[DEAD_LETTER_IDS[p]].is_dead_letter
    assert qm.lane_order() == ["critical_queue", "high_priority_queue", "standard_queue", "batch_queue"]


def test_admission_below_capacity_increments_occupancy_by_one():
    qm = QueueManager({"HIGH": 5})
    for i in range(3):
        before = qm.occupancy("high_priority_queue")
        adm = qm.admit(f"J{i}", "HIGH")
        assert adm.accepted
        assert qm.occupancy("high_priority_queue") == before + 1


def test_third_admission_into_lane_of_two_is_rejected():
    qm = QueueManager({"MEDIUM": 2})
    assert qm.admit("J1", "MEDIUM").accepted
    assert qm.admit("J2", "MEDIUM").accepted
    adm = qm.admit("J3", "MEDIUM")
    assert not adm.accepted
    assert adm.reason == "QUEUE_FULL"
    assert qm.occupancy("standard_queue") == 2
    assert qm.pending_ids("standard_queue") == ["J1", "J2"]
    assert qm.get_queue("standard_queue").current_size == 2


def test_readmitting_a_queued_job_does_not_double_count():
    qm = QueueManager()
    qm.admit("J1", "LOW")
    adm = qm.admit("J1", "LOW")
    assert adm.accepted and adm.reason == "already queued"
    assert qm.occupancy("batch_queue") == 1


def test_next_eligible_is_fifo_and_skips_ineligible():
    qm = QueueManager()
    for j in ("J1", "J2", "J3"):
        qm.admit(j, "CRITICAL")
    assert qm.next_eligible("critical_queue", lambda j: j != "J1") == "J2"
    assert qm.next_eligible("critical_queue") == "J1"
    assert qm.pending_ids("critical_queue") == ["J3"]
    assert qm.next_eligible("batch_queue") is None


def test_recompute_drops_ids_that_are_no_longer_pending():
    qm = QueueManager()
    qm.admit("J1", "MEDIUM")
    qm.admit("J2", "MEDIUM")
    out = qm.recompute_occupancy(lambda j: j == "J2")
    assert out["standard_queue"] == 1
    assert qm.pending_ids("standard_queue") == ["J2"]


def test_dead_letter_and_forget():
    qm = QueueManager()
    qm.admit("J1", "HIGH")
    qm.remove("J1")
    dlq = qm.dead_letter("J1", "HIGH")
    assert dlq == "high_priority_dlq"
    assert qm.dead_letters(dlq) == ["J1"]
    assert qm.get_queue(dlq).current_size == 1
    qm.forget("J1")
    assert qm.dead_letters(dlq) == []


def test_get_queue_returns_a_copy():
    qm = QueueManager()
    q = qm.get_queue("batch_queue")
    q.current_size = 99
    assert qm.get_queue("batch_queue").current_size == 0
    assert qm.get_queue("nope") is None
