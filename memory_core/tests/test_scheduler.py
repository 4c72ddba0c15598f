"""
Tests for the recurring-task scheduler and its idempotent windows
"""
import asyncio
from datetime import timedelta

import pytest

from memory_core.tests.fakes import add_entity
from memory_core.workers.scheduler import DEFAULT_TASKS, MaintenanceScheduler, RecurringTask

DAILY_CLEANUP = RecurringTask('cleanup', timedelta(days=1))
HOURLY_EMBED = RecurringTask('embed', timedelta(hours=1))


class TestWindowKey:

    def test_same_window_same_key(self, clock):
        now = clock()

        assert DAILY_CLEANUP.window_key(now) == DAILY_CLEANUP.window_key(now + timedelta(hours=1))
        assert DAILY_CLEANUP.window_key(now) != DAILY_CLEANUP.window_key(now + timedelta(days=1))
        assert DAILY_CLEANUP.window_key(now).startswith('cleanup:')

    def test_task_defaults_to_name(self):
        assert DAILY_CLEANUP.task_name == 'cleanup'
        assert RecurringTask('nightly_preview', timedelta(days=1), task='consolidate').task_name == 'consolidate'

    def test_default_consolidation_only_previews(self):
        consolidate = next(t for t in DEFAULT_TASKS if t.name == 'consolidate')

        assert consolidate.params == {'mode': 'preview'}


class TestRunDue:
    """At most one completed run per owner, task and window"""

    @pytest.mark.asyncio
    async def test_runs_once_per_window(self, core, store, clock):
        await add_entity(store, name='Sarah')
        scheduler = MaintenanceScheduler(core, tasks=[DAILY_CLEANUP, HOURLY_EMBED])

        first = await scheduler.run_due()

        assert [(r.task_name, r.status) for r in first] == [('cleanup', 'completed'), ('embed', 'completed')]
        assert first[1].counts == {'embedded': 1}
        assert await scheduler.run_due() == []

        clock.advance(hours=1)
        later = await scheduler.run_due()

        assert [r.task_name for r in later] == ['embed']
        assert len(await store.journal.list_runs(owner_id='owner_1')) == 3

    @pytest.mark.asyncio
    async def test_every_owner_is_visited(self, core, store):
        await add_entity(store, owner_id='owner_1', name='Sarah')
        await add_entity(store, owner_id='owner_2', name='Marcus')
        scheduler = MaintenanceScheduler(core, tasks=[DAILY_CLEANUP])

        runs = await scheduler.run_due()

        assert sorted(r.owner_id for r in runs) == ['owner_1', 'owner_2']

    @pytest.mark.asyncio
    async def test_partial_runs_are_retried(self, core, store, embedder):
        await add_entity(store, name='Sarah')
        embedder.fail = True
        scheduler = MaintenanceScheduler(core, tasks=[HOURLY_EMBED])

        (failed,) = await scheduler.run_due()

        assert failed.status == 'partial'
        assert failed.errors[0].endswith('RuntimeError: embedding service unavailable')

        embedder.fail = False
        (retried,) = await scheduler.run_due()

        assert retried.status == 'completed'
        assert retried.window_key == failed.window_key

    @pytest.mark.asyncio
    async def test_task_exception_is_recorded_as_partial(self, core, store):
        await add_entity(store, name='Sarah')
        scheduler = MaintenanceScheduler(core, tasks=[RecurringTask('bogus', timedelta(hours=1))])

        (run,) = await scheduler.run_due()

        assert run.status == 'partial'
        assert 'UnknownTask' in run.errors[0]

    @pytest.mark.asyncio
    async def test_no_owners_no_runs(self, core):
        assert await MaintenanceScheduler(core).run_due() == []


@pytest.mark.asyncio
async def test_run_forever_stops(core, store):
    await add_entity(store, name='Sarah')
    scheduler = MaintenanceScheduler(core, tasks=[DAILY_CLEANUP], poll_interval=0.01)

    loop_task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(loop_task, timeout=1)

    assert len(await store.journal.list_runs(task_name='cleanup')) == 1
