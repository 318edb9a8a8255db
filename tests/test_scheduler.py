"""Tests for the auto-backup scheduler."""

import asyncio

import pytest

from sitara_crm.core.scheduler import AutoBackupScheduler
from sitara_crm.core.schema import BackupType, MigrationStatus


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator(None, AUTO_BACKUP_INTERVAL=0.01)


class TestRunOnce:
    def test_skips_without_changes(self, orchestrator, store):
        scheduler = AutoBackupScheduler(orchestrator)
        assert scheduler.run_once() is None
        assert store.list_backups() == []
        assert scheduler.get_status()['stats']['skipped'] == 1

    @pytest.mark.asyncio
    async def test_backs_up_pending_changes(self, orchestrator, store, sample_customer):
        await orchestrator.boot()
        await orchestrator.add('customer', sample_customer)
        scheduler = AutoBackupScheduler(orchestrator)

        record = scheduler.run_once()

        assert record.type == BackupType.AUTO
        assert store.list_backups()[0].key == record.key
        assert orchestrator.changes_since_backup == 0
        assert scheduler.run_once() is None
        assert scheduler.get_status()['last_backup'] == record.key

    def test_deferred_while_migrating(self, orchestrator):
        orchestrator.change_count = 3
        orchestrator.migration_status = MigrationStatus.MIGRATING
        scheduler = AutoBackupScheduler(orchestrator)
        assert scheduler.run_once() is None


class TestLoop:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, orchestrator, store, sample_customer):
        await orchestrator.boot()
        await orchestrator.add('customer', sample_customer)
        scheduler = AutoBackupScheduler(orchestrator)

        task = asyncio.ensure_future(scheduler.run())
        await asyncio.sleep(0.1)
        assert scheduler.get_status()['running']
        scheduler.stop()
        await asyncio.wait_for(task, 1)

        assert len(store.list_backups()) == 1
        assert scheduler.get_status()['stats']['runs'] >= 1

    @pytest.mark.asyncio
    async def test_zero_interval_disables(self, orchestrator):
        scheduler = AutoBackupScheduler(orchestrator, interval=0)
        await scheduler.run()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, orchestrator):
        scheduler = AutoBackupScheduler(orchestrator)
        calls = []

        def flaky_run_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError('disk went away')

        scheduler.run_once = flaky_run_once
        task = asyncio.ensure_future(scheduler.run())
        await asyncio.sleep(0.1)
        scheduler.stop()
        await asyncio.wait_for(task, 1)

        assert len(calls) >= 2
        assert scheduler.get_status()['stats']['errors'] == 1
