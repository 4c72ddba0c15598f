"""
Maintenance Scheduler - recurring tasks with idempotent windows

A RecurringTask maps wall-clock time onto window keys
("decay:2931" = the 2931st week since the epoch). A task runs for an owner
at most once per window: a completed run is written to the maintenance run
ledger and later ticks in the same window skip it. Partial runs (some
items failed) are retried on the next tick.

Default cadence:
- cleanup       daily    expired entities, stale trivia, expired inferences
- embed         hourly   vectors for new entities
- classify      daily    pending / medium importance
- decay         weekly
- consolidate   daily    preview only; merges are an explicit decision
"""
import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from dotenv import load_dotenv

from memory_core.config.database import create_postgres_pool
from memory_core.config.settings import get_settings
from memory_core.core import MemoryCore
from memory_core.models.operations import BatchReport, MaintenanceRun

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecurringTask:
    name: str
    cadence: timedelta
    task: Optional[str] = None  # maintenance task to run, defaults to name
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def task_name(self) -> str:
        return self.task or self.name

    def window_key(self, now: datetime) -> str:
        """Same key for every instant inside one cadence window"""
        seconds = int(self.cadence.total_seconds())
        return f"{self.name}:{int(now.timestamp()) // seconds}"


DEFAULT_TASKS = (
    RecurringTask('cleanup', timedelta(days=1)),
    RecurringTask('embed', timedelta(hours=1)),
    RecurringTask('classify', timedelta(days=1)),
    RecurringTask('decay', timedelta(weeks=1)),
    RecurringTask('consolidate', timedelta(days=1), params={'mode': 'preview'}),
)


class MaintenanceScheduler:

    def __init__(
        self,
        core: MemoryCore,
        tasks: Sequence[RecurringTask] = DEFAULT_TASKS,
        poll_interval: float = 300.0,
    ):
        self.core = core
        self.tasks = list(tasks)
        self.poll_interval = poll_interval
        self.shutdown_event = asyncio.Event()

    async def run_due(self, now: Optional[datetime] = None) -> List[MaintenanceRun]:
        """
        Run every task whose window has no completed run yet, for every owner.

        Returns:
            The runs recorded on this tick
        """
        now = now or self.core.clock()
        journal = self.core.store.journal
        recorded = []

        for owner_id in await self.core.store.entities.list_owners():
            for task in self.tasks:
                window_key = task.window_key(now)
                if await journal.has_completed_run(owner_id, task.name, window_key):
                    continue

                started = self.core.clock()
                try:
                    report = await self.core.run_task(task.task_name, owner_id, **task.params)
                except Exception as e:
                    logger.error(f"❌ {task.name} for {owner_id} failed: {e}", exc_info=True)
                    report = BatchReport(task=task.task_name)
                    report.fail(owner_id, e)

                run = await journal.record_run(MaintenanceRun(
                    id='',
                    task_name=task.name,
                    owner_id=owner_id,
                    window_key=window_key,
                    status='completed' if report.ok else 'partial',
                    counts=dict(report.counts),
                    errors=[f"{k}: {v}" for k, v in report.failures.items()],
                    started_at=started,
                    finished_at=self.core.clock(),
                ))
                recorded.append(run)

        if recorded:
            logger.info(f"⏰ Scheduler tick: {len(recorded)} task runs recorded")
        return recorded

    async def run_forever(self):
        logger.info(f"⏰ Scheduler started with {[t.name for t in self.tasks]}")
        while not self.shutdown_event.is_set():
            try:
                await self.run_due()
            except Exception as e:
                logger.error(f"❌ Scheduler tick failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("⏰ Scheduler stopped")

    def stop(self):
        self.shutdown_event.set()


async def run_scheduler():
    pool = await create_postgres_pool(min_size=1, max_size=5)
    scheduler = MaintenanceScheduler(MemoryCore.from_pool(pool, get_settings()))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, scheduler.stop)

    try:
        await scheduler.run_forever()
    finally:
        await pool.close()


def main():
    load_dotenv(Path(os.getcwd()) / '.env')
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("⏰ Starting Maintenance Scheduler...")
    print(f"   Tasks: {', '.join(f'{t.name} every {t.cadence}' for t in DEFAULT_TASKS)}")
    print("   Press Ctrl+C to stop\n")

    asyncio.run(run_scheduler())


if __name__ == "__main__":
    main()
