#!/usr/bin/env python3
"""
Background sync scheduling for configsync.

``SyncScheduler`` keeps one periodic task for the active workspace, runs at
most one sync per workspace at a time, and copes with a network flag that
may be stale: after a long offline stretch it checks the workspace's own
Git remote and syncs anyway when that host answers.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Set

from .events import (
    ENVIRONMENTS_STRUCTURE_CHANGED, WORKSPACE_DATA_UPDATED, WORKSPACE_SYNC_COMPLETED,
    WORKSPACE_SYNC_STATUS, EventBus, NetworkState,
)
from .errors import classify_error
from .models import SyncResult, Workspace, utc_now_iso
from .settings import EngineSettings
from .sync import GitSyncService
from ..utils.logger import get_logger

DEFAULT_SYNC_INTERVAL = 60 * 60
SHUTDOWN_TIMEOUT = 30.0
SHUTDOWN_POLL_INTERVAL = 0.5
MAX_OFFLINE_DURATION = 30 * 60
GIT_CONNECTIVITY_CHECK_INTERVAL = 5 * 60
GIT_CONNECTIVITY_TIMEOUT = 15.0
NETWORK_STABILIZATION_DELAY = 3.0


class SyncScheduler:
    """Periodic, single-flight sync driver for the active workspace."""

    def __init__(
        self,
        service: GitSyncService,
        settings: EngineSettings,
        network: Optional[NetworkState] = None,
        events: Optional[EventBus] = None,
        interval: Optional[float] = None,
        stabilization_delay: Optional[float] = None,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        shutdown_poll: float = SHUTDOWN_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
    ):
        """
        Initialize the scheduler.

        Args:
            service: Sync service used for every attempt
            settings: Settings holding the known workspaces
            network: Host-fed network state
            events: Event bus for status notifications
            interval: Seconds between periodic syncs
            stabilization_delay: Wait after the network comes back
            shutdown_timeout: Longest wait for in-flight syncs on shutdown
            shutdown_poll: Poll period while waiting
            clock: Monotonic clock in seconds
            sleep: Coroutine used for every wait
        """
        self.logger = get_logger(f"{__name__}.SyncScheduler")
        self.service = service
        self.settings = settings
        self.network = network or NetworkState()
        self.events = events or EventBus()
        self.interval = interval if interval is not None else settings.sync_interval
        self.stabilization_delay = (
            stabilization_delay if stabilization_delay is not None
            else settings.network_stabilization_delay
        )
        self.shutdown_timeout = shutdown_timeout
        self.shutdown_poll = shutdown_poll
        self._clock = clock
        self._sleep = sleep

        self._timers: Dict[str, asyncio.Task] = {}
        self._in_progress: Dict[str, bool] = {}
        self._last_sync: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.active_workspace: Optional[Workspace] = None

        self.offline_since: Optional[float] = None if self.network.is_online else clock()
        self._connectivity_cache: Dict[str, bool] = {}
        self._connectivity_checked: Dict[str, float] = {}

        self.network.add_listener(self._on_network_change)

    # Helpers

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _find_workspace(self, workspace_id: str) -> Optional[Workspace]:
        return self.settings.workspace(workspace_id)

    def is_scheduled(self, workspace_id: str) -> bool:
        return workspace_id in self._timers

    def is_syncing(self, workspace_id: str) -> bool:
        return self._in_progress.get(workspace_id, False)

    # Network

    def _on_network_change(self, was_online: bool, is_online: bool):
        if was_online and not is_online:
            self.logger.info("Network went offline, recording offline time")
            self.offline_since = self._clock()
        elif is_online and not was_online:
            self.logger.info("Network restored, resuming sync schedules")
            self.offline_since = None
            self._spawn(self.resume_all_syncs())

    async def resume_all_syncs(self):
        """Resume the active workspace's schedule once the network has settled."""
        self.offline_since = None
        self._connectivity_cache.clear()
        self._connectivity_checked.clear()

        await self._sleep(self.stabilization_delay)
        if not self.network.is_online:
            self.logger.info("Network went offline again before resuming syncs")
            return

        workspace = self.active_workspace
        if workspace is None or not workspace.schedules_auto_sync:
            return

        self.logger.info(f"Resuming sync for active workspace {workspace.id}")
        if self.is_scheduled(workspace.id):
            await self.perform_sync(workspace)
        else:
            self.start_sync(workspace)

    async def check_git_connectivity(self, workspace: Workspace) -> bool:
        """Check the workspace remote directly; results are cached for five minutes."""
        now = self._clock()
        checked = self._connectivity_checked.get(workspace.id)
        if checked is not None and now - checked < GIT_CONNECTIVITY_CHECK_INTERVAL:
            return self._connectivity_cache.get(workspace.id, False)

        try:
            result = await asyncio.wait_for(
                self.service.test_workspace_connection(workspace),
                timeout=GIT_CONNECTIVITY_TIMEOUT,
            )
            reachable = bool(result.success)
        except asyncio.TimeoutError:
            self.logger.debug(f"Git connectivity check timed out for workspace {workspace.id}")
            reachable = False

        self._connectivity_cache[workspace.id] = reachable
        self._connectivity_checked[workspace.id] = now
        return reachable

    # Scheduling

    async def _timer(self, workspace: Workspace):
        # Syncs run in their own tasks so cancelling the timer never interrupts one
        while True:
            self._spawn(self.perform_sync(workspace))
            await self._sleep(self.interval)

    def start_sync(self, workspace: Workspace):
        if self.is_scheduled(workspace.id):
            self.logger.debug(f"Sync already scheduled for workspace {workspace.id}")
            return

        if not self.network.is_online:
            self.logger.info(f"Network is offline, deferring sync schedule for workspace {workspace.id}")
            return

        self.logger.info(f"Starting auto-sync for workspace {workspace.id} ({workspace.name})")
        self._timers[workspace.id] = self._spawn(self._timer(workspace))

    def stop_sync(self, workspace_id: str):
        task = self._timers.pop(workspace_id, None)
        if task is not None:
            task.cancel()
            self.logger.info(f"Stopped auto-sync for workspace {workspace_id}")

    def on_workspace_switch(self, workspace_id: str):
        self.logger.info(f"Workspace switched to: {workspace_id}")

        if self.active_workspace is not None:
            self.stop_sync(self.active_workspace.id)

        workspace = self._find_workspace(workspace_id)
        if workspace is None:
            self.logger.warning(f"Workspace {workspace_id} not found")
            return

        self.active_workspace = workspace
        if workspace.schedules_auto_sync:
            self.start_sync(workspace)
        else:
            self.logger.info(f"Workspace {workspace_id} is not a Git workspace or has autoSync disabled")

    def on_workspace_updated(self, workspace: Workspace):
        """Take an edited descriptor into account, restarting its schedule if active."""
        self.logger.info(f"Workspace {workspace.id} updated, autoSync: {workspace.auto_sync}")

        for index, known in enumerate(self.settings.workspaces):
            if known.id == workspace.id:
                self.settings.workspaces[index] = workspace
                break
        else:
            self.settings.workspaces.append(workspace)

        if self.active_workspace is None or self.active_workspace.id != workspace.id:
            return

        self.stop_sync(workspace.id)
        self.active_workspace = workspace
        if workspace.schedules_auto_sync:
            self.logger.info(f"Restarting auto-sync for workspace {workspace.id}")
            self.start_sync(workspace)
        else:
            self.logger.info(f"Auto-sync disabled for workspace {workspace.id}")

    # Sync

    async def perform_sync(self, workspace: Workspace) -> Optional[SyncResult]:
        """
        Run one unattended sync, unless it is skipped.

        Returns:
            The SyncResult, or None when the attempt was skipped
        """
        if self._in_progress.get(workspace.id):
            self.logger.debug(f"Sync already in progress for workspace {workspace.id}, skipping")
            return None

        # Claimed before the first await so a concurrent tick sees it
        self._in_progress[workspace.id] = True
        try:
            if not await self._should_sync(workspace):
                return None

            git = await self.service.git_status()
            if not git.is_installed:
                self.logger.warning(f"Git is not installed, skipping sync for workspace {workspace.id}")
                return None

            self.logger.info(f"Starting sync for workspace {workspace.id}")
            try:
                result = await self.service.auto_sync_workspace(workspace)
                if result.success:
                    await self._handle_success(workspace, result)
                else:
                    self._handle_failure(workspace, result)
            except Exception as e:
                # Background syncs never propagate
                self.logger.error(f"Sync failed for workspace {workspace.id}: {e}")
                classified = classify_error(e, {'branch': workspace.branch})
                self.service.record_error(workspace, classified.message)
                self._emit_completed(workspace.id, False, error=classified.message)
                return None
            return result
        finally:
            self._in_progress[workspace.id] = False

    async def _should_sync(self, workspace: Workspace) -> bool:
        if self.network.is_online:
            return True

        if self.offline_since is None:
            self.offline_since = self._clock()

        offline_for = self._clock() - self.offline_since
        if offline_for <= MAX_OFFLINE_DURATION:
            self.logger.debug(f"Network offline, skipping sync for workspace {workspace.id}")
            return False

        self.logger.info(f"Network offline for {round(offline_for / 60)}min, attempting Git connectivity check")
        if await self.check_git_connectivity(workspace):
            self.logger.info("Git server is reachable despite network offline state, forcing sync")
            return True

        self.logger.debug(f"Git server not reachable, skipping sync for workspace {workspace.id}")
        return False

    async def _handle_success(self, workspace: Workspace, result: SyncResult):
        timestamp = utc_now_iso()
        self._last_sync[workspace.id] = timestamp
        has_changes = False

        if result.data is not None:
            report = await self.service.merger.apply(workspace.id, result.data)
            has_changes = report.writes > 0
            for warning in report.warnings:
                self.logger.warning(warning)
            if report.environment_structure_changed:
                self.events.emit(ENVIRONMENTS_STRUCTURE_CHANGED, {
                    'workspaceId': workspace.id,
                    'timestamp': timestamp,
                })

        if has_changes:
            self.events.emit(WORKSPACE_DATA_UPDATED, {
                'workspaceId': workspace.id,
                'timestamp': timestamp,
                'hasChanges': True,
            })
        else:
            self.events.emit(WORKSPACE_SYNC_STATUS, {
                'workspaceId': workspace.id,
                'syncing': False,
                'hasChanges': False,
            })

        self._emit_completed(workspace.id, True, has_changes=has_changes, timestamp=timestamp)
        self.logger.info(f"Sync completed for workspace {workspace.id}{' with changes' if has_changes else ''}")

    def _handle_failure(self, workspace: Workspace, result: SyncResult):
        message = result.error.message if result.error else result.message
        self.logger.error(f"Sync failed for workspace {workspace.id}: {message}")
        self._emit_completed(workspace.id, False, error=message)

    def _emit_completed(self, workspace_id: str, success: bool, has_changes: bool = False,
                        error: Optional[str] = None, timestamp: Optional[str] = None):
        payload: Dict[str, Any] = {
            'workspaceId': workspace_id,
            'success': success,
            'timestamp': timestamp or utc_now_iso(),
        }
        if success:
            payload['hasChanges'] = has_changes
        else:
            payload['error'] = error
        self.events.emit(WORKSPACE_SYNC_COMPLETED, payload)

    async def manual_sync(self, workspace_id: str) -> Dict[str, Any]:
        workspace = self._find_workspace(workspace_id)
        if workspace is None:
            error = f"Workspace {workspace_id} not found"
            self.logger.error(f"Manual sync failed: {error}")
            return {'success': False, 'error': error}

        if not workspace.is_syncable:
            error = 'Only Git/Team workspaces can be synced'
            self.logger.error(f"Manual sync failed for workspace {workspace_id}: {error}")
            return {'success': False, 'error': error}

        result = await self.perform_sync(workspace)
        if result is None:
            return {'success': False, 'error': 'Sync skipped', 'skipped': True}
        return {
            'success': result.success,
            'error': None if result.success else (result.error.message if result.error else result.message),
            'result': result,
        }

    def sync_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            workspace_id: {
                'scheduled': True,
                'syncing': self.is_syncing(workspace_id),
                'last_sync': self._last_sync.get(workspace_id),
            }
            for workspace_id in self._timers
        }

    async def shutdown(self):
        """Stop every timer, then wait a bounded time for in-flight syncs."""
        self.logger.info("Shutting down sync scheduler")

        for workspace_id in list(self._timers):
            self.stop_sync(workspace_id)

        pending = [workspace_id for workspace_id, busy in self._in_progress.items() if busy]
        if pending:
            self.logger.info(f"Waiting for {len(pending)} syncs to complete...")
            for _ in range(max(1, int(self.shutdown_timeout / self.shutdown_poll))):
                if not any(self._in_progress.get(workspace_id) for workspace_id in pending):
                    break
                await self._sleep(self.shutdown_poll)
            else:
                self.logger.warning("Shutdown timed out with syncs still in progress")

        self.logger.info("Sync scheduler shutdown complete")
