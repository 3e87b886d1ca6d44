from __future__ import annotations

from datetime import datetime, timezone

from rq.job import Job, JobStatus

from src.queue.job_queue import RetryPolicy
from tests.conftest import build_inactivity_queue, build_processing_queue


def _seconds_from_now(moment: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - datetime.now(timezone.utc)).total_seconds()


def test_immediate_job_is_queued_with_payload() -> None:
    queue = build_processing_queue()

    job_id = queue.enqueue({"conversationId": "c-1"}, job_id="process-message-m-1")

    assert job_id == "process-message-m-1"
    assert queue.rq_queue.count == 1
    assert queue.get_pending(job_id) == {"conversationId": "c-1"}
    assert queue.pending_count() == 1


def test_delayed_job_waits_in_scheduled_registry() -> None:
    queue = build_inactivity_queue()

    job_id = queue.enqueue({"conversationId": "c-1"}, job_id="inactive-followup-c-1", delay_seconds=30)

    assert queue.rq_queue.count == 0
    assert queue.rq_queue.scheduled_job_registry.count == 1
    assert queue.pending_count() == 1
    assert 25 <= _seconds_from_now(queue.scheduled_at(job_id)) <= 31


def test_fixed_id_replaces_pending_job() -> None:
    queue = build_inactivity_queue()

    queue.enqueue({"aiMessageTimestamp": "first"}, job_id="inactive-followup-c-1", delay_seconds=60)
    queue.enqueue({"aiMessageTimestamp": "second"}, job_id="inactive-followup-c-1", delay_seconds=120)

    assert queue.pending_count() == 1
    assert queue.get_pending("inactive-followup-c-1") == {"aiMessageTimestamp": "second"}
    assert 110 <= _seconds_from_now(queue.scheduled_at("inactive-followup-c-1")) <= 121


def test_running_fixed_id_job_is_not_overwritten() -> None:
    queue = build_inactivity_queue()
    queue.enqueue({"v": 1}, job_id="inactive-followup-c-1", delay_seconds=60)
    running = Job.fetch("inactive-followup-c-1", connection=queue.rq_queue.connection)
    running.set_status(JobStatus.STARTED)

    replacement_id = queue.enqueue({"v": 2}, job_id="inactive-followup-c-1", delay_seconds=60)

    assert replacement_id.startswith("inactive-followup-c-1-")
    assert Job.fetch("inactive-followup-c-1", connection=queue.rq_queue.connection).args[0] == {"v": 1}
    assert queue.get_pending(replacement_id) == {"v": 2}


def test_enqueue_without_replace_keeps_existing_job() -> None:
    queue = build_processing_queue()
    queue.enqueue({"v": 1}, job_id="process-message-m-1")

    job_id = queue.enqueue({"v": 2}, job_id="process-message-m-1", replace=False)

    assert job_id == "process-message-m-1"
    assert queue.rq_queue.count == 1
    assert queue.get_pending(job_id) == {"v": 1}


def test_jobs_carry_exponential_retry_policy() -> None:
    queue = build_processing_queue(max_attempts=3, backoff_seconds=2.0)

    job_id = queue.enqueue({"v": 1})
    job = Job.fetch(job_id, connection=queue.rq_queue.connection)

    assert job.retries_left == 2
    assert job.retry_intervals == [2, 4]


def test_retry_policy_intervals() -> None:
    assert RetryPolicy(max_attempts=4, backoff_seconds=1.5).intervals() == [2, 3, 6]
    assert RetryPolicy(max_attempts=1, backoff_seconds=1.0).to_rq() is None
    assert RetryPolicy(max_attempts=2, backoff_seconds=0.0).intervals() == [0]


def test_unknown_job_is_not_pending() -> None:
    queue = build_processing_queue()

    assert queue.get_pending("missing") is None
    assert queue.scheduled_at("missing") is None
    assert queue.failed_count() == 0
