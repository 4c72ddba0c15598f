"""
Maintenance Worker - consumes queue:maintenance

Job format:
    {"task": "consolidate", "owner_id": "user_1", "params": {"mode": "force"}}

Every processed job is written to the maintenance run ledger with an
on-demand window key, so operators can see what ran and what failed.
"""
import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from memory_core.config.database import create_job_queue, create_postgres_pool
from memory_core.config.settings import get_settings
from memory_core.core import MemoryCore
from memory_core.models.operations import MaintenanceRun
from memory_core.services.maintenance import MAINTENANCE_TASKS
from memory_core.workers.job_queue import JobQueue
from memory_core.workers.worker_base import BaseWorker

logger = logging.getLogger(__name__)


class MaintenanceWorker(BaseWorker):

    def __init__(self, core: MemoryCore, job_queue: JobQueue, queue_name: str = JobQueue.MAINTENANCE_QUEUE,
                 worker_name: str = 'maintenance-worker'):
        super().__init__(job_queue, worker_name=worker_name, queue_name=queue_name)
        self.core = core

    def validate(self, job: Dict[str, Any]):
        if job.get('task') not in MAINTENANCE_TASKS:
            raise ValueError(f"Unknown maintenance task: {job.get('task')!r}")
        if not job.get('owner_id'):
            raise ValueError("Job is missing owner_id")
        if not isinstance(job.get('params') or {}, dict):
            raise ValueError("Job params must be an object")

    async def process(self, job: Dict[str, Any]):
        task = job['task']
        owner_id = job['owner_id']
        started = self.core.clock()

        report = await self.core.run_task(task, owner_id, **(job.get('params') or {}))

        await self.core.store.journal.record_run(MaintenanceRun(
            id='',
            task_name=task,
            owner_id=owner_id,
            window_key=f"{task}:ondemand:{started.isoformat()}",
            status='completed' if report.ok else 'partial',
            counts=dict(report.counts),
            errors=[f"{k}: {v}" for k, v in report.failures.items()],
            started_at=started,
            finished_at=self.core.clock(),
        ))
        logger.info(f"[{self.worker_name}] ✅ {task} for {owner_id}: {report.counts}")


async def run_maintenance_worker():
    """Build the Postgres-backed core and consume the maintenance queue until stopped"""
    settings = get_settings()
    pool = await create_postgres_pool(min_size=1, max_size=5)
    job_queue = await create_job_queue()
    worker = MaintenanceWorker(MemoryCore.from_pool(pool, settings), job_queue, queue_name=settings.maintenance_queue)

    try:
        await worker.start()
    finally:
        await job_queue.close()
        await pool.close()


def main():
    load_dotenv(Path(os.getcwd()) / '.env')
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("🧹 Starting Maintenance Worker...")
    print(f"   Tasks: {', '.join(MAINTENANCE_TASKS)}")
    print("   Press Ctrl+C to stop\n")

    asyncio.run(run_maintenance_worker())


if __name__ == "__main__":
    main()
