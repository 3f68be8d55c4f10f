# jobs/worker.py — Queue consumers
"""
Background worker runner.

Runs inside the API process when JOB_WORKERS_ENABLED is set, or standalone:

    collabute-worker                  # all queues
    collabute-worker email github-sync
"""
import os
import sys
import signal
import asyncio
import logging
import argparse
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from email_service import EmailService
from jobs.connection import create_redis
from jobs.dispatcher import JobDispatcher
from jobs.processors import EmailProcessor, GitHubSyncProcessor, NotificationProcessor
from jobs.queue import Job, RedisQueue
from jobs.relay import NotificationRelay
from jobs.types import JobKind
from telemetry import setup_telemetry

logger = logging.getLogger("collabute.jobs.worker")

JOB_POLL_INTERVAL = float(os.getenv("JOB_POLL_INTERVAL", "1.0"))

Processor = Callable[[Job], Awaitable[Dict[str, Any]]]


class QueueWorker:
    """Pulls jobs from one queue and hands them to its processor"""

    def __init__(self, queue: RedisQueue, processor: Processor, poll_interval: float = JOB_POLL_INTERVAL):
        self.queue = queue
        self.processor = processor
        self.poll_interval = poll_interval
        self._stopping = asyncio.Event()
        self.task: Optional[asyncio.Task] = None

    async def process_next(self) -> Optional[Job]:
        """Run a single job if one is ready. Returns the job processed, if any."""
        job = await self.queue.fetch_next()
        if job is None:
            return None
        try:
            result = await self.processor(job)
        except Exception as e:
            retry = await self.queue.fail(job, e)
            logger.error(
                f"❌ {self.queue.name} job {job.id} failed "
                f"(attempt {job.attempts_made}/{job.opts.attempts}, retry={retry}): {e}"
            )
        else:
            await self.queue.complete(job, result)
            logger.info(f"✅ {self.queue.name} job {job.id} completed")
        return job

    async def run(self) -> None:
        logger.info(f"Worker started for queue {self.queue.name}")
        while not self._stopping.is_set():
            try:
                job = await self.process_next()
            except Exception as e:
                logger.error(f"Worker for {self.queue.name} could not reach the queue: {e}")
                job = None
            if job is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Worker stopped for queue {self.queue.name}")

    def stop(self) -> None:
        self._stopping.set()


def build_processors(
    relay: NotificationRelay,
    email_service: Optional[EmailService] = None,
) -> Dict[JobKind, Processor]:
    return {
        JobKind.EMAIL: EmailProcessor(email_service or EmailService()),
        JobKind.GITHUB_SYNC: GitHubSyncProcessor(),
        JobKind.NOTIFICATION: NotificationProcessor(relay),
    }


def start_workers(
    dispatcher: JobDispatcher,
    relay: NotificationRelay,
    kinds: Optional[Iterable[JobKind]] = None,
) -> List[QueueWorker]:
    """Create one worker per queue and schedule it on the running loop"""
    processors = build_processors(relay)
    workers = []
    for kind in kinds or list(JobKind):
        worker = QueueWorker(dispatcher.queues[kind], processors[kind])
        worker.task = asyncio.create_task(worker.run())
        workers.append(worker)
    return workers


async def stop_workers(workers: List[QueueWorker]) -> None:
    for worker in workers:
        worker.stop()
    await asyncio.gather(*(worker.task for worker in workers), return_exceptions=True)


async def run_worker(queue_names: List[str]) -> None:
    setup_telemetry(service_name="collabute-worker")
    kinds = [JobKind(name) for name in queue_names] or list(JobKind)
    redis = create_redis()
    dispatcher = JobDispatcher(redis)
    workers = start_workers(dispatcher, NotificationRelay(redis), kinds)

    def shutdown():
        logger.info("Shutdown signal received, finishing in-flight jobs")
        for worker in workers:
            worker.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown)
    logger.info(f"🚀 Worker running for queues: {', '.join(k.value for k in kinds)}")
    try:
        await asyncio.gather(*(worker.task for worker in workers))
    finally:
        await stop_workers(workers)
        await redis.aclose()


def main() -> None:
    """CLI entrypoint"""
    parser = argparse.ArgumentParser(description="Collabute background job worker")
    parser.add_argument(
        "queues", nargs="*",
        help=f"queues to consume: {', '.join(k.value for k in JobKind)} (default: all)",
    )
    args = parser.parse_args()
    valid = {k.value for k in JobKind}
    unknown = [name for name in args.queues if name not in valid]
    if unknown:
        parser.error(f"unknown queue(s): {', '.join(unknown)}")

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        asyncio.run(run_worker(args.queues))
    except KeyboardInterrupt:
        logger.info("Worker interrupted, shutting down")
        sys.exit(0)


if __name__ == "__main__":
    main()
