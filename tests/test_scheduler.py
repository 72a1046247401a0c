#!/usr/bin/env python3
"""
Tests for background sync scheduling.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from configsync.core.events import (
    ENVIRONMENTS_STRUCTURE_CHANGED,
    WORKSPACE_DATA_UPDATED,
    WORKSPACE_SYNC_COMPLETED,
    WORKSPACE_SYNC_STATUS,
    EventBus,
    NetworkState,
)
from configsync.core.merger import MergeReport
from configsync.core.models import ConfigDocument, SyncResult, SyncStatus, Workspace
from configsync.core.runner import GitStatus
from configsync.core.scheduler import SyncScheduler
from configsync.core.sync import GitSyncService


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


async def parked_sleep(seconds):
    """Zero-length sleeps yield; anything longer waits until cancelled."""
    await asyncio.sleep(0)
    if seconds:
        await asyncio.Event().wait()


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def service():
    """Create a mocked sync service that succeeds without data."""
    service = MagicMock()
    service.git_status = AsyncMock(return_value=GitStatus(is_installed=True, path='git'))
    service.auto_sync_workspace = AsyncMock(return_value=SyncResult(success=True, status=SyncStatus.UP_TO_DATE))
    service.test_workspace_connection = AsyncMock(return_value=MagicMock(success=True))
    service.merger.apply = AsyncMock(return_value=MergeReport())
    return service


@pytest.fixture
def workspaces(settings):
    """Register two Git workspaces and a personal one."""
    settings.workspaces = [
        Workspace(id='ws1', name='One', kind='git', repository_url='https://github.com/a/one.git'),
        Workspace(id='ws2', name='Two', kind='team', repository_url='https://github.com/a/two.git'),
        Workspace(id='local', name='Local', kind='personal'),
    ]
    return settings.workspaces


@pytest.fixture
def events():
    """Create an event bus that records emitted events."""
    bus = EventBus()
    bus.received = []
    bus.subscribe(lambda channel, payload: bus.received.append((channel, payload)))
    return bus


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_scheduler(service, settings, events, clock):
    """Factory for schedulers sharing the mocked collaborators."""
    created = []

    def factory(network=None, sleep=parked_sleep, **kwargs):
        scheduler = SyncScheduler(
            service, settings, network=network or NetworkState(), events=events,
            interval=3600, stabilization_delay=0, clock=clock, sleep=sleep, **kwargs
        )
        created.append(scheduler)
        return scheduler

    yield factory

    for scheduler in created:
        for task in list(scheduler._tasks):
            task.cancel()


class TestPerformSync:
    """Test single sync attempts."""

    @pytest.mark.asyncio
    async def test_successful_sync_without_changes(self, make_scheduler, service, events, workspaces):
        """Test the status events of a sync with nothing new."""
        scheduler = make_scheduler()

        result = await scheduler.perform_sync(workspaces[0])

        assert result.success
        service.auto_sync_workspace.assert_awaited_once_with(workspaces[0])
        channels = [channel for channel, _ in events.received]
        assert channels == [WORKSPACE_SYNC_STATUS, WORKSPACE_SYNC_COMPLETED]
        completed = events.received[-1][1]
        assert completed['success'] is True
        assert completed['hasChanges'] is False
        assert scheduler.is_syncing('ws1') is False

    @pytest.mark.asyncio
    async def test_pulled_data_is_merged(self, make_scheduler, service, events, workspaces):
        """Test that pulled data is applied and announced."""
        document = ConfigDocument(environments={'Dev': {'A': '1'}})
        service.auto_sync_workspace.return_value = SyncResult(
            success=True, status=SyncStatus.UP_TO_DATE, data=document, pulled=1,
        )
        service.merger.apply.return_value = MergeReport(environments_written=True, environment_structure_changed=True)
        scheduler = make_scheduler()

        await scheduler.perform_sync(workspaces[0])

        service.merger.apply.assert_awaited_once_with('ws1', document)
        channels = [channel for channel, _ in events.received]
        assert channels == [ENVIRONMENTS_STRUCTURE_CHANGED, WORKSPACE_DATA_UPDATED, WORKSPACE_SYNC_COMPLETED]
        assert events.received[-1][1]['hasChanges'] is True
        assert scheduler.sync_status() == {}

    @pytest.mark.asyncio
    async def test_failed_result_reported(self, make_scheduler, service, events, workspaces):
        """Test that an unsuccessful result emits a failed completion."""
        service.auto_sync_workspace.return_value = SyncResult(
            success=False, status=SyncStatus.CONFLICT, message='Manual conflict resolution required',
        )
        scheduler = make_scheduler()

        result = await scheduler.perform_sync(workspaces[0])

        assert result.status == SyncStatus.CONFLICT
        channel, payload = events.received[-1]
        assert channel == WORKSPACE_SYNC_COMPLETED
        assert payload == {
            'workspaceId': 'ws1',
            'success': False,
            'timestamp': payload['timestamp'],
            'error': 'Manual conflict resolution required',
        }

    @pytest.mark.asyncio
    async def test_exception_never_propagates(self, make_scheduler, service, events, workspaces):
        """Test that a crashing sync is reported and the flag released."""
        service.auto_sync_workspace.side_effect = RuntimeError('Could not resolve host: github.com')
        scheduler = make_scheduler()

        assert await scheduler.perform_sync(workspaces[0]) is None

        payload = events.received[-1][1]
        assert payload['success'] is False
        assert 'Network connection failed' in payload['error']
        assert scheduler.is_syncing('ws1') is False
        service.record_error.assert_called_once()
        assert service.record_error.call_args[0][0] is workspaces[0]

    @pytest.mark.asyncio
    async def test_failed_merge_persists_error_state(self, settings, runner, events, clock, workspaces):
        """Test that a merge failure after a successful sync is persisted as ERROR."""
        real_service = GitSyncService(settings, runner=runner)
        repo_dir = real_service.repo_dir('ws1')
        (repo_dir / '.git').mkdir(parents=True)
        (repo_dir / 'config').mkdir()
        (repo_dir / 'config' / 'config.json').write_text(json.dumps({'sources': [], 'rules': {}}))
        rules_path = real_service.store.path('ws1', 'rules.json')
        rules_path.parent.mkdir(parents=True)
        rules_path.write_text('[]')
        runner.on('rev-parse', 'HEAD', response='aaaa1111')
        runner.on('rev-parse', 'origin/main', response='aaaa1111')
        scheduler = SyncScheduler(
            real_service, settings, network=NetworkState(), events=events,
            interval=3600, stabilization_delay=0, clock=clock, sleep=parked_sleep
        )

        assert await scheduler.perform_sync(workspaces[0]) is None

        assert events.received[-1][1]['success'] is False
        state = real_service.store.load_sync_state('ws1')
        assert state.status == SyncStatus.ERROR
        assert state.last_error
        assert state.last_sync is not None
        assert state.local_commit == 'aaaa1111'

    @pytest.mark.asyncio
    async def test_git_missing_skips(self, make_scheduler, service, workspaces):
        """Test that nothing runs without git."""
        service.git_status.return_value = GitStatus(is_installed=False)
        scheduler = make_scheduler()

        assert await scheduler.perform_sync(workspaces[0]) is None
        service.auto_sync_workspace.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_flight(self, make_scheduler, service, workspaces):
        """Test that a second concurrent sync of the same workspace is skipped."""
        gate = asyncio.Event()

        async def slow_sync(workspace):
            await gate.wait()
            return SyncResult(success=True, status=SyncStatus.UP_TO_DATE)

        service.auto_sync_workspace.side_effect = slow_sync
        scheduler = make_scheduler()

        first = asyncio.ensure_future(scheduler.perform_sync(workspaces[0]))
        await settle()
        assert scheduler.is_syncing('ws1')
        second = await scheduler.perform_sync(workspaces[0])
        gate.set()
        first_result = await first

        assert second is None
        assert first_result.success
        assert service.auto_sync_workspace.await_count == 1

    @pytest.mark.asyncio
    async def test_different_workspaces_run_concurrently(self, make_scheduler, service, workspaces):
        """Test that single-flight is per workspace."""
        gate = asyncio.Event()

        async def slow_sync(workspace):
            await gate.wait()
            return SyncResult(success=True, status=SyncStatus.UP_TO_DATE)

        service.auto_sync_workspace.side_effect = slow_sync
        scheduler = make_scheduler()

        tasks = [asyncio.ensure_future(scheduler.perform_sync(ws)) for ws in workspaces[:2]]
        await settle()
        assert scheduler.is_syncing('ws1') and scheduler.is_syncing('ws2')
        gate.set()
        results = await asyncio.gather(*tasks)
        assert all(result.success for result in results)


class TestOfflineHandling:
    """Test behaviour while the network flag says offline."""

    @pytest.mark.asyncio
    async def test_short_offline_skips(self, make_scheduler, service, clock, workspaces):
        """Test that syncs are skipped during a short outage."""
        scheduler = make_scheduler(network=NetworkState(online=False))
        clock.advance(10 * 60)

        assert await scheduler.perform_sync(workspaces[0]) is None
        service.test_workspace_connection.assert_not_awaited()
        service.auto_sync_workspace.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_long_offline_checks_remote(self, make_scheduler, service, clock, workspaces):
        """Test that a reachable remote forces a sync after a long outage."""
        scheduler = make_scheduler(network=NetworkState(online=False))
        clock.advance(40 * 60)

        result = await scheduler.perform_sync(workspaces[0])

        assert result.success
        service.test_workspace_connection.assert_awaited_once_with(workspaces[0])
        service.auto_sync_workspace.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reachability_result_is_cached(self, make_scheduler, service, clock, workspaces):
        """Test that unreachable remotes are not rechecked on every tick."""
        service.test_workspace_connection.return_value = MagicMock(success=False)
        scheduler = make_scheduler(network=NetworkState(online=False))
        clock.advance(40 * 60)

        assert await scheduler.perform_sync(workspaces[0]) is None
        clock.advance(60)
        assert await scheduler.perform_sync(workspaces[0]) is None
        assert service.test_workspace_connection.await_count == 1

        clock.advance(5 * 60)
        await scheduler.perform_sync(workspaces[0])
        assert service.test_workspace_connection.await_count == 2

    @pytest.mark.asyncio
    async def test_reachability_timeout_counts_as_unreachable(self, make_scheduler, service, clock, workspaces):
        """Test that a hanging reachability check is treated as offline."""
        service.test_workspace_connection.side_effect = asyncio.TimeoutError()
        scheduler = make_scheduler(network=NetworkState(online=False))
        clock.advance(40 * 60)

        assert await scheduler.check_git_connectivity(workspaces[0]) is False

    @pytest.mark.asyncio
    async def test_offline_time_recorded_on_transition(self, make_scheduler, clock):
        """Test that going offline records when it happened."""
        network = NetworkState()
        scheduler = make_scheduler(network=network)
        clock.advance(100)
        network.set_online(False)
        assert scheduler.offline_since == 100


class TestScheduling:
    """Test timers, switching and resumption."""

    @pytest.mark.asyncio
    async def test_switch_starts_timer_and_syncs(self, make_scheduler, service, workspaces):
        """Test that switching to a Git workspace schedules and syncs it."""
        scheduler = make_scheduler()

        scheduler.on_workspace_switch('ws1')
        await settle()

        assert scheduler.is_scheduled('ws1')
        assert scheduler.active_workspace.id == 'ws1'
        service.auto_sync_workspace.assert_awaited_once()
        assert scheduler.sync_status()['ws1']['scheduled'] is True

    @pytest.mark.asyncio
    async def test_switch_stops_previous(self, make_scheduler, workspaces):
        """Test that the previous workspace's timer is stopped."""
        scheduler = make_scheduler()

        scheduler.on_workspace_switch('ws1')
        timer = scheduler._timers['ws1']
        scheduler.on_workspace_switch('ws2')
        await settle()

        assert not scheduler.is_scheduled('ws1')
        assert scheduler.is_scheduled('ws2')
        assert timer.cancelled()

    @pytest.mark.asyncio
    async def test_personal_workspace_not_scheduled(self, make_scheduler, workspaces):
        """Test that personal workspaces never get a timer."""
        scheduler = make_scheduler()
        scheduler.on_workspace_switch('local')
        assert scheduler._timers == {}

    @pytest.mark.asyncio
    async def test_auto_sync_disabled(self, make_scheduler, workspaces):
        """Test that disabling autoSync stops the active schedule."""
        scheduler = make_scheduler()
        scheduler.on_workspace_switch('ws1')

        updated = Workspace(id='ws1', name='One', kind='git',
                            repository_url='https://github.com/a/one.git', auto_sync=False)
        scheduler.on_workspace_updated(updated)

        assert not scheduler.is_scheduled('ws1')
        assert scheduler.settings.workspace('ws1').auto_sync is False

    @pytest.mark.asyncio
    async def test_offline_switch_defers_until_online(self, make_scheduler, service, workspaces):
        """Test that a schedule deferred while offline starts on reconnect."""
        network = NetworkState(online=False)
        scheduler = make_scheduler(network=network)

        scheduler.on_workspace_switch('ws1')
        assert not scheduler.is_scheduled('ws1')

        network.set_online(True)
        await settle(20)

        assert scheduler.is_scheduled('ws1')
        assert scheduler.offline_since is None
        service.auto_sync_workspace.assert_awaited()

    @pytest.mark.asyncio
    async def test_resume_aborts_if_offline_again(self, make_scheduler, service, workspaces):
        """Test that resumption re-checks the network after the delay."""
        network = NetworkState(online=False)
        scheduler = make_scheduler(network=network)
        scheduler.on_workspace_switch('ws1')

        await scheduler.resume_all_syncs()

        assert not scheduler.is_scheduled('ws1')
        service.auto_sync_workspace.assert_not_awaited()


class TestManualSync:
    """Test user-triggered syncs."""

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, make_scheduler, workspaces):
        """Test the not-found error."""
        result = await make_scheduler().manual_sync('missing')
        assert result == {'success': False, 'error': 'Workspace missing not found'}

    @pytest.mark.asyncio
    async def test_personal_workspace(self, make_scheduler, workspaces):
        """Test that only Git and team workspaces can be synced."""
        result = await make_scheduler().manual_sync('local')
        assert result['error'] == 'Only Git/Team workspaces can be synced'

    @pytest.mark.asyncio
    async def test_success(self, make_scheduler, workspaces):
        """Test a successful manual sync."""
        result = await make_scheduler().manual_sync('ws1')
        assert result['success'] is True
        assert result['error'] is None
        assert result['result'].status == SyncStatus.UP_TO_DATE


class TestShutdown:
    """Test graceful shutdown."""

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_sync(self, make_scheduler, service, workspaces):
        """Test that shutdown lets a running sync finish."""
        gate = asyncio.Event()
        polls = []

        async def slow_sync(workspace):
            await gate.wait()
            return SyncResult(success=True, status=SyncStatus.UP_TO_DATE)

        async def poll_sleep(seconds):
            polls.append(seconds)
            gate.set()
            await settle()

        service.auto_sync_workspace.side_effect = slow_sync
        scheduler = make_scheduler(sleep=poll_sleep, shutdown_timeout=5, shutdown_poll=0.5)

        sync = asyncio.ensure_future(scheduler.perform_sync(workspaces[0]))
        await settle()
        await scheduler.shutdown()

        assert polls
        assert scheduler.is_syncing('ws1') is False
        assert (await sync).success

    @pytest.mark.asyncio
    async def test_wait_is_bounded(self, make_scheduler, service, workspaces):
        """Test that shutdown gives up after the timeout."""
        polls = []

        async def hang(workspace):
            await asyncio.Event().wait()

        async def poll_sleep(seconds):
            polls.append(seconds)

        service.auto_sync_workspace.side_effect = hang
        scheduler = make_scheduler(sleep=poll_sleep, shutdown_timeout=1, shutdown_poll=0.5)

        sync = asyncio.ensure_future(scheduler.perform_sync(workspaces[0]))
        await settle()
        await scheduler.shutdown()

        assert polls == [0.5, 0.5]
        sync.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sync

    @pytest.mark.asyncio
    async def test_timers_cancelled(self, make_scheduler, workspaces):
        """Test that every timer is stopped."""
        scheduler = make_scheduler()
        scheduler.on_workspace_switch('ws1')
        await scheduler.shutdown()
        assert scheduler._timers == {}
