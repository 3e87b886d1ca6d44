"""Job execution inside rq workers, and the worker pool that runs them."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping

from rq import get_current_job
from rq.worker_pool import WorkerPool

from src.core.logger import get_logger, job_log_context
from src.core.metrics import record_job, record_job_skipped
from src.core.observability import capture_exception, sentry_scope
from src.jobs.payloads import JobOutcome, JobPayloadError
from src.queue.job_queue import JobQueue


OUTCOME_RETRIED = "retried"
OUTCOME_FAILED = "failed"

PayloadHandler = Callable[[Mapping[str, Any]], JobOutcome]

logger = get_logger("relaydesk.queue.worker")


def run_job(queue_name: str, payload: Mapping[str, Any], handler: PayloadHandler) -> Dict[str, Any]:
    """Run ``handler`` for one payload with log and Sentry context bound.

    Completed and skipped outcomes both finish the rq job. Exceptions
    propagate so rq applies the job's retry policy, except
    ``JobPayloadError``, which exhausts the retries first.
    """

    current = get_current_job()
    job_id = current.id if current is not None else "inline"
    workspace_id = payload.get("workspaceId") if isinstance(payload, Mapping) else None
    with job_log_context(queue=queue_name, job_id=job_id, workspace_id=workspace_id), sentry_scope(
        workspace_id=workspace_id,
        job_id=job_id,
    ):
        try:
            outcome = handler(payload)
        except JobPayloadError as exc:
            if current is not None:
                current.retries_left = 0
            record_job(queue=queue_name, outcome=OUTCOME_FAILED)
            logger.error("queue_job_rejected_invalid_payload", error=str(exc))
            raise
        except Exception as exc:
            capture_exception(exc)
            retries_left = (current.retries_left or 0) if current is not None else 0
            settled = OUTCOME_RETRIED if retries_left > 0 else OUTCOME_FAILED
            record_job(queue=queue_name, outcome=settled)
            logger.warning(
                "queue_job_failed",
                outcome=settled,
                retries_left=retries_left,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        record_job(queue=queue_name, outcome=outcome.status)
        if outcome.skipped:
            record_job_skipped(queue=queue_name, reason=outcome.reason or "unspecified")
        logger.info(
            "queue_job_finished",
            status=outcome.status,
            reason=outcome.reason,
            details=outcome.details,
        )
        return outcome.to_dict()


def build_worker_pool(queue: JobQueue, *, concurrency: int) -> WorkerPool:
    if concurrency <= 0:
        raise ValueError("concurrency must be positive")
    rq_queue = queue.rq_queue
    return WorkerPool([rq_queue], connection=rq_queue.connection, num_workers=concurrency)


def serve(queue: JobQueue, *, concurrency: int, log_level: str = "INFO") -> None:
    """Block running ``concurrency`` rq workers (with the scheduler) on ``queue``."""

    pool = build_worker_pool(queue, concurrency=concurrency)
    logger.info("queue_worker_pool_started", queue=queue.name, concurrency=concurrency)
    pool.start(burst=False, logging_level=log_level)
    logger.info("queue_worker_pool_stopped", queue=queue.name)
