"""Queue worker entrypoint: message processing and inactivity follow-ups."""

from __future__ import annotations

import argparse
import json
from multiprocessing import Process
import signal
from typing import Dict, List

from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.observability import init_sentry
from src.queue.job_queue import JobQueue, get_inactivity_queue, get_processing_queue
from src.queue.worker import serve


QUEUE_CHOICES = ("processing", "inactivity", "all")

logger = get_logger("relaydesk.workers")


def selected_queues(queue: str = "all") -> List[JobQueue]:
    queues: List[JobQueue] = []
    if queue in ("processing", "all"):
        queues.append(get_processing_queue())
    if queue in ("inactivity", "all"):
        queues.append(get_inactivity_queue())
    return queues


def queue_stats(queues: List[JobQueue]) -> Dict[str, Dict[str, int]]:
    return {
        queue.name: {
            "pending": queue.pending_count(),
            "failed": queue.failed_count(),
        }
        for queue in queues
    }


def serve_queue(queue: str) -> None:
    settings = get_settings()
    init_sentry()
    if queue == "processing":
        serve(get_processing_queue(), concurrency=settings.processing_concurrency, log_level=settings.log_level)
    else:
        serve(get_inactivity_queue(), concurrency=settings.inactivity_concurrency, log_level=settings.log_level)


def run_all() -> None:
    """One worker pool process per queue, so each keeps its own concurrency limit."""

    processes = [
        Process(target=serve_queue, args=(name,), name=f"relaydesk-{name}")
        for name in ("processing", "inactivity")
    ]

    def _shutdown(signum, frame) -> None:
        del frame
        logger.info("workers_shutdown_requested", signal=signum)
        for process in processes:
            if process.is_alive():
                process.terminate()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    for process in processes:
        process.start()
    for process in processes:
        process.join()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run relaydesk queue workers.")
    parser.add_argument("--queue", choices=QUEUE_CHOICES, default="all", help="Which queue(s) to consume.")
    parser.add_argument("--stats", action="store_true", help="Print queue depths and exit.")
    args = parser.parse_args()

    if args.stats:
        stats = queue_stats(selected_queues(args.queue))
        print(json.dumps(stats, ensure_ascii=True, separators=(",", ":"), sort_keys=True))
        return

    logger.info("workers_starting", queues=[queue.name for queue in selected_queues(args.queue)])
    if args.queue == "all":
        run_all()
    else:
        serve_queue(args.queue)


if __name__ == "__main__":
    main()
