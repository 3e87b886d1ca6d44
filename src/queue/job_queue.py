"""rq-backed job queues for message processing and inactivity follow-ups.

Each ``JobQueue`` wraps one ``rq.Queue`` and the dotted path of the job
function its workers run. Delays go through rq's scheduled-job registry,
retries through ``rq.Retry`` with exponential intervals, and jobs that run
out of attempts land in the failed-job registry.

A fixed ``job_id`` replaces the pending job with that id. A job with that
id which is already running keeps running; the replacement is enqueued
under a suffixed id so the running job's completion cannot overwrite it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
import math
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
import uuid

from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus

from src.core.config import get_settings
from src.core.logger import get_logger
from src.storage.redis_client import get_queue_connection


PROCESSING_TASK = "src.queue.tasks.process_client_message"
INACTIVITY_TASK = "src.queue.tasks.send_inactivity_followup"

PENDING_STATUSES = (JobStatus.QUEUED, JobStatus.SCHEDULED, JobStatus.DEFERRED)

logger = get_logger("relaydesk.queue")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0

    def intervals(self) -> List[int]:
        """Seconds to wait before each retry: ``backoff * 2**n`` for retry ``n``."""

        base = max(0.0, self.backoff_seconds)
        return [math.ceil(base * 2**index) for index in range(max(0, self.max_attempts - 1))]

    def to_rq(self) -> Optional[Retry]:
        if self.max_attempts <= 1:
            return None
        return Retry(max=self.max_attempts - 1, interval=self.intervals())


class JobQueue:
    """At-least-once queue; job functions must tolerate redelivery."""

    def __init__(
        self,
        queue: Queue,
        *,
        task: Union[str, Callable[..., Any]],
        retry_policy: RetryPolicy | None = None,
        job_timeout: int | None = None,
        failure_ttl: int | None = None,
    ) -> None:
        self._queue = queue
        self._task = task
        self._retry_policy = retry_policy or RetryPolicy()
        self._job_timeout = job_timeout
        self._failure_ttl = failure_ttl

    @property
    def name(self) -> str:
        return self._queue.name

    @property
    def rq_queue(self) -> Queue:
        return self._queue

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def enqueue(
        self,
        payload: Mapping[str, Any],
        *,
        job_id: str | None = None,
        delay_seconds: float = 0.0,
        replace: bool = True,
    ) -> str:
        """Add a job and return its id.

        With ``replace=False`` an existing job with the same id, in any
        state, is left alone and its id is returned.
        """

        if job_id is not None:
            existing = self._fetch(job_id)
            if existing is not None:
                if not replace:
                    logger.info("queue_job_already_enqueued", queue=self.name, job_id=job_id)
                    return job_id
                job_id = self._release_fixed_id(existing)

        options: Dict[str, Any] = {
            "job_id": job_id,
            "retry": self._retry_policy.to_rq(),
            "job_timeout": self._job_timeout,
            "failure_ttl": self._failure_ttl,
        }
        delay = max(0.0, float(delay_seconds))
        if delay > 0:
            job = self._queue.enqueue_in(timedelta(seconds=delay), self._task, dict(payload), **options)
        else:
            job = self._queue.enqueue(self._task, dict(payload), **options)
        logger.info(
            "queue_job_enqueued",
            queue=self.name,
            job_id=job.id,
            delay_seconds=round(delay, 3),
        )
        return job.id

    def get_pending(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Payload of a queued or scheduled job, or None."""

        job = self._fetch(job_id)
        if job is None or job.get_status(refresh=False) not in PENDING_STATUSES:
            return None
        return dict(job.args[0]) if job.args else {}

    def scheduled_at(self, job_id: str) -> Optional[datetime]:
        try:
            return self._queue.scheduled_job_registry.get_scheduled_time(job_id)
        except NoSuchJobError:
            return None

    def pending_count(self) -> int:
        return int(self._queue.count) + int(self._queue.scheduled_job_registry.count)

    def failed_count(self) -> int:
        return int(self._queue.failed_job_registry.count)

    def _fetch(self, job_id: str) -> Optional[Job]:
        try:
            return Job.fetch(job_id, connection=self._queue.connection, serializer=self._queue.serializer)
        except NoSuchJobError:
            return None

    def _release_fixed_id(self, existing: Job) -> str:
        if existing.get_status(refresh=False) == JobStatus.STARTED:
            forked_id = f"{existing.id}-{uuid.uuid4().hex[:8]}"
            logger.info(
                "queue_fixed_job_in_flight",
                queue=self.name,
                job_id=existing.id,
                replacement_job_id=forked_id,
            )
            return forked_id
        existing.delete()
        logger.info("queue_job_replaced", queue=self.name, job_id=existing.id)
        return existing.id


def build_job_queue(
    name: str,
    *,
    task: Union[str, Callable[..., Any]],
    max_attempts: int,
    backoff_seconds: float,
    connection=None,
) -> JobQueue:
    settings = get_settings()
    return JobQueue(
        Queue(name, connection=connection if connection is not None else get_queue_connection()),
        task=task,
        retry_policy=RetryPolicy(max_attempts=max_attempts, backoff_seconds=backoff_seconds),
        job_timeout=settings.queue_job_timeout_seconds,
        failure_ttl=settings.queue_failure_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_processing_queue() -> JobQueue:
    settings = get_settings()
    return build_job_queue(
        settings.processing_queue_name,
        task=PROCESSING_TASK,
        max_attempts=settings.processing_max_attempts,
        backoff_seconds=settings.processing_backoff_seconds,
    )


@lru_cache(maxsize=1)
def get_inactivity_queue() -> JobQueue:
    settings = get_settings()
    return build_job_queue(
        settings.inactivity_queue_name,
        task=INACTIVITY_TASK,
        max_attempts=settings.inactivity_max_attempts,
        backoff_seconds=settings.inactivity_backoff_seconds,
    )
