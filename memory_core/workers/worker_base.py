"""
Base worker class for queue consumers

Redis queue consumption (BRPOP with timeout), graceful shutdown on
SIGTERM/SIGINT and per-job error isolation: a failing job is logged and
counted, the loop keeps going.
"""
import asyncio
import signal
import logging
from typing import Any, Dict

from memory_core.workers.job_queue import JobQueue

logger = logging.getLogger(__name__)


class BaseWorker:
    """
    Base class for all queue workers

    Subclasses implement process(job). validate(job) can reject malformed
    jobs before any work happens.
    """

    def __init__(self, job_queue: JobQueue, worker_name: str, queue_name: str, poll_timeout: int = 5):
        self.job_queue = job_queue
        self.worker_name = worker_name
        self.queue_name = queue_name
        self.poll_timeout = poll_timeout
        self.running = False
        self.jobs_processed = 0
        self.jobs_failed = 0

    async def start(self):
        """
        Main worker loop

        Continuously:
        1. BRPOP from queue (returns None after poll_timeout)
        2. Validate the job
        3. Process it, counting success or failure
        """
        self._setup_signal_handlers()

        self.running = True
        logger.info(f"[{self.worker_name}] Started, listening on {self.queue_name}")

        while self.running:
            try:
                job = await self.job_queue.dequeue(self.queue_name, timeout=self.poll_timeout)
                if job:
                    await self.handle(job)

            except asyncio.CancelledError:
                logger.info(f"[{self.worker_name}] Received cancellation signal")
                break
            except Exception as e:
                logger.error(f"[{self.worker_name}] Worker loop error: {e}", exc_info=True)
                await asyncio.sleep(1)

        logger.info(
            f"[{self.worker_name}] Shutting down. "
            f"Processed: {self.jobs_processed}, Failed: {self.jobs_failed}"
        )

    async def handle(self, job: Dict[str, Any]) -> bool:
        """Run one job; returns True when it was processed successfully"""
        logger.debug(f"[{self.worker_name}] Received job: {job}")
        try:
            self.validate(job)
            await self.process(job)
            self.jobs_processed += 1
            return True
        except Exception as e:
            self.jobs_failed += 1
            await self.handle_error(job, e)
            return False

    def stop(self):
        self.running = False

    def _setup_signal_handlers(self):
        """Setup graceful shutdown on SIGTERM/SIGINT"""
        def shutdown_handler(signum, frame):
            logger.info(f"[{self.worker_name}] Received signal {signum}, shutting down...")
            self.running = False

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)

    def validate(self, job: Dict[str, Any]):
        """Override to reject malformed jobs (raise ValueError)"""

    async def process(self, job: Dict[str, Any]):
        """
        Override in subclass - do the actual work

        Args:
            job: Job data from queue
        """
        raise NotImplementedError(f"{self.__class__.__name__} must implement process()")

    async def handle_error(self, job: Dict[str, Any], error: Exception):
        """
        Handle job processing error

        Default: Log error
        Override in subclass for custom error handling (e.g., retry logic)
        """
        logger.error(
            f"[{self.worker_name}] Error processing job {job}: {error}",
            exc_info=True
        )
