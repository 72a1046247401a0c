#!/usr/bin/env python3
"""
Synchronization service for configsync.

``GitSyncService`` ties the engine together for one workspace at a time:
it makes sure a working copy exists, resolves how it relates to the remote
branch, pulls, pushes or resolves conflicts accordingly, and loads the
configuration snapshot that the merger imports into local storage.
"""

import json
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .auth import AUTH_NONE, AuthHandle, AuthProvider, display_url
from .cleanup import CleanupManager
from .conflict import ConflictResolver
from .connection import ConnectionTester, ConnectionTestResult
from .documents import WorkspaceStore
from .errors import ConfigSyncError, GitCommandError, RepositoryError, classify_error
from .merger import ConfigMerger
from .models import ConfigDocument, SyncResult, SyncState, SyncStatus, Workspace, utc_now_iso
from .progress import ProgressSink
from .repository import RepositoryOperations
from .runner import CommandRunner, GitStatus, LS_REMOTE_TIMEOUT
from .settings import EngineSettings
from .sparse import SparseCheckoutManager, patterns_for_workspace
from .status import SyncStatusResolver
from ..utils.logger import get_logger

CONFIG_FILENAMES = (
    'open-headers-config.json',
    'open-headers.json',
    'config.json',
    'openheaders.json',
)

AUTO_SYNC_MESSAGE = 'Auto-sync: Update configuration ({timestamp})'


def validate_config(document: ConfigDocument) -> List[str]:
    """Shape problems in a configuration snapshot; empty when it is usable."""
    errors = []

    if not isinstance(document.sources, list):
        errors.append('sources must be a list')
    else:
        for index, source in enumerate(document.sources):
            if not isinstance(source, dict):
                errors.append(f"sources[{index}] must be an object")
            elif not source.get('sourceId'):
                errors.append(f"sources[{index}] is missing sourceId")

    if not isinstance(document.rules, dict):
        errors.append('rules must be an object')
    else:
        for rule_type, rules in document.rules.items():
            if not isinstance(rules, list):
                errors.append(f"rules.{rule_type} must be a list")

    if not isinstance(document.proxy_rules, list):
        errors.append('proxyRules must be a list')

    if document.environment_schema is not None and not isinstance(document.environment_schema, dict):
        errors.append('environmentSchema must be an object')

    if document.environments is not None:
        if not isinstance(document.environments, dict):
            errors.append('environments must be an object')
        else:
            for name, variables in document.environments.items():
                if not isinstance(variables, dict):
                    errors.append(f"environments.{name} must be an object")

    return errors


class GitSyncService:
    """Explicitly constructed sync engine; one instance per process is typical."""

    def __init__(
        self,
        settings: EngineSettings,
        runner: Optional[CommandRunner] = None,
        auth: Optional[AuthProvider] = None,
        repository: Optional[RepositoryOperations] = None,
        status: Optional[SyncStatusResolver] = None,
        conflicts: Optional[ConflictResolver] = None,
        store: Optional[WorkspaceStore] = None,
        merger: Optional[ConfigMerger] = None,
        cleanup: Optional[CleanupManager] = None,
        connection: Optional[ConnectionTester] = None,
    ):
        """
        Initialize the service.

        Every collaborator can be passed in; missing ones are built from
        ``settings``.

        Args:
            settings: Engine settings (directories, clone depth, delays)
        """
        self.logger = get_logger(f"{__name__}.GitSyncService")
        self.settings = settings

        self.runner = runner or CommandRunner()
        self.auth = auth or AuthProvider(settings.ssh_dir)
        self.repository = repository or RepositoryOperations(
            self.runner,
            self.auth,
            SparseCheckoutManager(self.runner),
            new_branch_delay=settings.new_branch_propagation_delay,
        )
        self.status = status or SyncStatusResolver(self.runner, self.repository)
        self.conflicts = conflicts or ConflictResolver(self.runner, self.repository)
        self.store = store or WorkspaceStore(settings.data_dir)
        self.merger = merger or ConfigMerger(self.store)
        self.cleanup = cleanup or CleanupManager(settings.repos_dir, settings.ssh_dir)
        self.connection = connection or ConnectionTester(self.runner, self.auth)

    def repo_dir(self, workspace_id: str) -> Path:
        """Stable working copy location, reused across restarts."""
        return Path(self.settings.repos_dir) / f"workspace-{workspace_id}"

    def has_working_copy(self, workspace_id: str) -> bool:
        return (self.repo_dir(workspace_id) / '.git').exists()

    async def git_status(self) -> GitStatus:
        return await self.runner.git_status()

    # Configuration loading

    def load_workspace_config(self, repo_dir, config_path: str) -> Optional[ConfigDocument]:
        """
        Read the configuration snapshot from a working copy.

        Args:
            repo_dir: Working copy
            config_path: Directory inside the repository

        Returns:
            ConfigDocument from the first readable candidate file, or None
        """
        config_dir = Path(repo_dir) / (config_path or '')
        self.logger.info(f"Loading workspace config from {config_dir}")

        for filename in CONFIG_FILENAMES:
            path = config_dir / filename
            if not path.is_file():
                continue
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable config file {path}: {e}")
                continue
            if not isinstance(data, dict):
                self.logger.warning(f"Skipping config file {path}: top level is not an object")
                continue

            document = ConfigDocument.from_dict(data)
            self.logger.info(
                f"Loaded config with {len(document.sources)} sources, {len(document.rules)} rule types, "
                f"{len(document.proxy_rules)} proxy rules"
            )
            return document

        self.logger.warning(f"No configuration file found in {config_dir}")
        return None

    def validate_config(self, document: Optional[ConfigDocument]) -> List[str]:
        if document is None:
            return ['No configuration file found']
        return validate_config(document)

    # Sync

    async def _ensure_working_copy(self, workspace: Workspace, repo_dir: Path,
                                   progress: ProgressSink):
        if (repo_dir / '.git').exists():
            return

        self.logger.info(f"Repository not found for workspace {workspace.id}, cloning...")
        if repo_dir.exists():
            # Leftover from an interrupted clone
            self.cleanup.remove_repository(repo_dir)

        await self.repository.clone(
            workspace.repository_url,
            repo_dir,
            branch=workspace.branch,
            auth_type=workspace.auth_type,
            auth_data=workspace.auth_data,
            depth=self.settings.clone_depth,
            sparse_patterns=patterns_for_workspace(workspace),
            progress=progress,
        )

    async def _head(self, repo_dir) -> Optional[str]:
        try:
            result = await self.runner.run(['rev-parse', 'HEAD'], cwd=repo_dir)
        except GitCommandError as e:
            self.logger.debug(f"Could not read HEAD: {e}")
            return None
        return result.stdout.strip() or None

    async def _dispatch(self, workspace: Workspace, repo_dir: Path, state: SyncState,
                        handle: AuthHandle, auto_resolve: bool, progress: ProgressSink) -> SyncResult:
        branch = workspace.branch

        if state.status == SyncStatus.UP_TO_DATE:
            return SyncResult(
                success=True,
                status=SyncStatus.UP_TO_DATE,
                message='Workspace is up to date',
                data=self.load_workspace_config(repo_dir, workspace.config_path),
                state=state,
            )

        if state.status == SyncStatus.NEEDS_PULL:
            progress.report('pull', details=f"Pulling {state.behind} new commits...")
            pulled = await self.repository.pull(repo_dir, branch, handle, progress=progress)
            progress.success('pull', pulled['message'])

            progress.report('validate', details='Validating updated configuration...')
            document = self.load_workspace_config(repo_dir, workspace.config_path)
            config_errors = self.validate_config(document)
            if config_errors:
                progress.warning('validate', '; '.join(config_errors))
            else:
                progress.success('validate', 'Configuration is valid')

            return SyncResult(
                success=True,
                status=SyncStatus.UP_TO_DATE,
                message=pulled['message'],
                changes=True,
                pulled=state.behind,
                data=document,
                config_errors=config_errors,
                state=state,
            )

        if state.status == SyncStatus.NEEDS_PUSH:
            progress.report('push', details=f"Pushing {state.ahead} commits...")
            pushed = await self.repository.push(repo_dir, branch, handle, progress=progress)
            progress.success('push', pushed['message'])
            return SyncResult(
                success=True,
                status=SyncStatus.UP_TO_DATE,
                message=pushed['message'],
                changes=True,
                pushed=state.ahead,
                state=state,
            )

        if state.status == SyncStatus.CONFLICT:
            result = await self.conflicts.resolve(
                repo_dir,
                branch,
                state,
                auto_resolve=auto_resolve,
                auth=handle,
                config_path=workspace.config_path,
                progress=progress,
            )
            if result.resolved:
                result.data = self.load_workspace_config(repo_dir, workspace.config_path)
            return result

        error = ConfigSyncError(state.last_error or 'Failed to check sync status')
        return SyncResult(
            success=False,
            status=SyncStatus.ERROR,
            message=state.last_error or 'Failed to check sync status',
            state=state,
            error=classify_error(error, {'branch': branch}),
        )

    async def _final_state(self, repo_dir: Path, result: SyncResult) -> SyncState:
        state = result.state or SyncState(SyncStatus.ERROR)
        now = utc_now_iso()

        if result.success:
            head = await self._head(repo_dir)
            return SyncState(SyncStatus.UP_TO_DATE, local_commit=head, remote_commit=head, last_sync=now)

        if result.status == SyncStatus.CONFLICT:
            return SyncState(
                SyncStatus.CONFLICT,
                local_commit=state.local_commit,
                remote_commit=state.remote_commit,
                ahead=state.ahead,
                behind=state.behind,
                last_sync=now,
                last_error=result.message,
            )

        return SyncState(
            SyncStatus.ERROR,
            local_commit=state.local_commit,
            remote_commit=state.remote_commit,
            last_sync=now,
            last_error=result.message,
        )

    def _persist(self, workspace: Workspace, state: SyncState):
        try:
            self.store.save_sync_state(workspace, state)
        except OSError as e:
            self.logger.error(f"Failed to persist sync state for workspace {workspace.id}: {e}")

    def record_error(self, workspace: Workspace, message: str) -> SyncState:
        """Persist an ERROR state for a failure raised outside ``sync_workspace``."""
        try:
            previous = self.store.load_sync_state(workspace.id)
        except (OSError, ValueError):
            previous = None
        state = SyncState(
            SyncStatus.ERROR,
            local_commit=previous.local_commit if previous else None,
            remote_commit=previous.remote_commit if previous else None,
            last_sync=utc_now_iso(),
            last_error=message,
        )
        self._persist(workspace, state)
        return state

    async def sync_workspace(self, workspace: Workspace, auto_resolve: bool = False,
                             progress: Optional[ProgressSink] = None) -> SyncResult:
        """
        Run one sync attempt for ``workspace``.

        Args:
            workspace: Workspace descriptor
            auto_resolve: Rebase and push diverged branches instead of
                reporting them for manual resolution
            progress: Optional progress sink

        Returns:
            SyncResult; failures are classified, never raised
        """
        progress = progress or ProgressSink()
        repo_dir = self.repo_dir(workspace.id)
        self.logger.info(f"Syncing workspace: {workspace.name} ({workspace.id})")

        try:
            if not workspace.is_syncable:
                raise RepositoryError(f"Workspace {workspace.id} is not a git workspace")

            await self._ensure_working_copy(workspace, repo_dir, progress)

            with self.auth.session(workspace.repository_url, workspace.auth_type, workspace.auth_data) as handle:
                async with self.repository.remote_session(repo_dir, handle):
                    progress.report('status', details='Checking sync status...')
                    state = await self.status.resolve(repo_dir, workspace.branch, handle)
                    progress.success('status', state.status.value)
                    result = await self._dispatch(workspace, repo_dir, state, handle, auto_resolve, progress)
        except Exception as e:
            classified = classify_error(e, {'branch': workspace.branch, 'url': display_url(workspace.repository_url or '')})
            self.logger.error(f"Sync failed for workspace {workspace.id}: {classified.message}")
            progress.error('sync', classified.message)
            result = SyncResult(
                success=False,
                status=SyncStatus.ERROR,
                message=str(e),
                state=SyncState(SyncStatus.ERROR, last_error=str(e)),
                error=classified,
            )

        result.state = await self._final_state(repo_dir, result)
        self._persist(workspace, result.state)
        return result

    async def check_status(self, workspace: Workspace) -> SyncState:
        """Resolve the current SyncState without pulling or pushing."""
        if not self.has_working_copy(workspace.id):
            return SyncState(SyncStatus.ERROR, last_error='Repository has not been cloned yet')

        repo_dir = self.repo_dir(workspace.id)
        try:
            with self.auth.session(workspace.repository_url, workspace.auth_type, workspace.auth_data) as handle:
                return await self.status.resolve(repo_dir, workspace.branch, handle)
        except ConfigSyncError as e:
            return SyncState(SyncStatus.ERROR, last_error=str(e), last_sync=utc_now_iso())

    async def auto_sync_workspace(self, workspace: Workspace, commit_changes: bool = True,
                                  progress: Optional[ProgressSink] = None) -> SyncResult:
        """Commit pending local edits, then sync with automatic conflict resolution."""
        progress = progress or ProgressSink()
        repo_dir = self.repo_dir(workspace.id)
        self.logger.info(f"Auto-syncing workspace: {workspace.id}")

        commit_hash = None
        if commit_changes and self.has_working_copy(workspace.id):
            try:
                if await self.repository.has_uncommitted_changes(repo_dir):
                    progress.report('commit', details='Committing local changes...')
                    commit_hash = await self.repository.auto_commit(
                        repo_dir, AUTO_SYNC_MESSAGE.format(timestamp=utc_now_iso())
                    )
                    progress.success('commit', 'Local changes committed')
            except Exception as e:
                classified = classify_error(e, {'branch': workspace.branch})
                self.logger.error(f"Auto-sync failed: {classified.message}")
                progress.error('commit', classified.message)
                state = SyncState(SyncStatus.ERROR, last_sync=utc_now_iso(), last_error=str(e))
                self._persist(workspace, state)
                return SyncResult(
                    success=False,
                    status=SyncStatus.ERROR,
                    message=f"Auto-sync failed: {e}",
                    state=state,
                    error=classified,
                )

        result = await self.sync_workspace(workspace, auto_resolve=True, progress=progress)
        result.local_changes_committed = commit_hash is not None
        result.commit_hash = commit_hash
        return result

    # Connection testing

    async def test_connection(self, url: str, branch: str = 'main', auth_type: str = AUTH_NONE,
                              auth_data: Optional[Mapping[str, Any]] = None, config_path: Optional[str] = None,
                              check_write_access: bool = False, is_invite: bool = False,
                              progress: Optional[ProgressSink] = None) -> ConnectionTestResult:
        return await self.connection.test(
            url,
            branch=branch,
            auth_type=auth_type,
            auth_data=auth_data,
            config_path=config_path,
            check_write_access=check_write_access,
            is_invite=is_invite,
            progress=progress,
        )

    async def test_workspace_connection(self, workspace: Workspace,
                                        progress: Optional[ProgressSink] = None) -> ConnectionTestResult:
        return await self.test_connection(
            workspace.repository_url,
            branch=workspace.branch,
            auth_type=workspace.auth_type,
            auth_data=workspace.auth_data,
            config_path=workspace.config_path,
            progress=progress,
        )

    # Publishing

    async def publish_configuration(
        self,
        url: str,
        files: Mapping[str, str],
        message: str,
        branch: str = 'main',
        config_path: str = '',
        auth_type: str = AUTH_NONE,
        auth_data: Optional[Mapping[str, Any]] = None,
        author: Optional[str] = None,
        email: Optional[str] = None,
        progress: Optional[ProgressSink] = None,
    ) -> str:
        """
        Commit configuration files to ``branch`` from a scratch clone.

        A branch missing on the remote is created from the default branch
        and pushed with upstream tracking.

        Args:
            url: Repository URL
            files: File name -> content, placed under ``config_path``
            message: Commit message
            branch: Target branch
            config_path: Directory inside the repository
            auth_type: Authentication type
            auth_data: Authentication data
            author: Commit author name
            email: Commit author email
            progress: Optional progress sink

        Returns:
            Hash of the new commit

        Raises:
            ConfigSyncError: If any step fails; the scratch clone is removed
        """
        scratch = Path(self.settings.repos_dir) / f"commit-{int(time.time() * 1000)}"
        needs_new_branch = False

        with self.auth.session(url, auth_type, auth_data) as handle:
            try:
                heads = await self.repository.ls_remote_heads(
                    handle.effective_url, auth=handle, branch=branch, timeout=LS_REMOTE_TIMEOUT
                )
                needs_new_branch = branch not in heads
            except GitCommandError as e:
                self.logger.warning(f"Failed to check branch existence, will try to clone anyway: {e}")

        try:
            if needs_new_branch:
                self.logger.info(f"Branch '{branch}' not found, cloning default branch")
                await self.repository.clone(url, scratch, auth_type=auth_type, auth_data=auth_data,
                                            depth=0, progress=progress)
                await self.repository.create_branch(scratch, branch)
            else:
                await self.repository.clone(url, scratch, branch=branch, auth_type=auth_type,
                                            auth_data=auth_data, depth=1, progress=progress)

            prefix = config_path.strip('/')
            placed = {
                (f"{prefix}/{name}" if prefix else name): content
                for name, content in files.items()
            }
            commit_hash = await self.repository.commit_files(scratch, placed, message, author, email)

            with self.auth.session(url, auth_type, auth_data) as handle:
                await self.repository.push(scratch, branch, handle, set_upstream=needs_new_branch,
                                           progress=progress)
        except Exception as e:
            classified = classify_error(e, {'branch': branch})
            self.logger.error(f"Failed to publish configuration: {classified.message}")
            raise ConfigSyncError(classified.message) from e
        finally:
            self.cleanup_directory(scratch)

        self.logger.info(f"Published configuration to {display_url(url)} ({branch}) as {commit_hash[:8]}")
        return commit_hash

    # Cleanup

    def cleanup_directory(self, directory) -> bool:
        try:
            self.cleanup.remove_repository(directory)
            return True
        except OSError as e:
            self.logger.error(f"Failed to cleanup directory {directory}: {e}")
            return False

    def cleanup_workspace(self, workspace_id: str, remove_documents: bool = False) -> bool:
        """Remove a workspace's working copy and, optionally, its local documents."""
        removed = self.cleanup_directory(self.repo_dir(workspace_id))
        if remove_documents:
            try:
                self.store.delete(workspace_id)
            except OSError as e:
                self.logger.error(f"Failed to remove documents for workspace {workspace_id}: {e}")
                return False
        return removed

    def perform_cleanup(self, force: bool = False) -> Dict[str, Any]:
        return self.cleanup.perform_cleanup(force=force)
