#!/usr/bin/env python3
"""
Conflict resolution for configsync.

A diverged branch is either reported for manual resolution or, under the
unattended policy, rebased onto the remote and pushed. Before pushing, the
rebased tree is checked for unmerged paths and leftover conflict markers in
the configuration files; any hit stops the push.
"""

from pathlib import Path
from typing import List, Optional

from .auth import AuthHandle
from .errors import GitCommandError, classify_error
from .models import SyncResult, SyncState, SyncStatus
from .progress import ProgressSink
from .repository import RepositoryOperations
from .runner import CommandRunner, PULL_TIMEOUT
from ..utils.logger import get_logger

STASH_MESSAGE = 'Auto-sync stash'

CONFLICT_MARKERS = ('<<<<<<< ', '>>>>>>> ')
CONFLICT_SEPARATOR = '======='


def has_conflict_markers(text: str) -> bool:
    for line in text.splitlines():
        if line.startswith(CONFLICT_MARKERS) or line.rstrip() == CONFLICT_SEPARATOR:
            return True
    return False


class ConflictResolver:
    """Rebase-based automatic resolution with a manual fallback."""

    def __init__(self, runner: CommandRunner, repository: RepositoryOperations):
        self.logger = get_logger(f"{__name__}.ConflictResolver")
        self.runner = runner
        self.repository = repository

    async def unmerged_paths(self, repo_dir) -> List[str]:
        result = await self.runner.run(['diff', '--name-only', '--diff-filter=U'], cwd=repo_dir)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def files_with_markers(self, repo_dir, config_path: Optional[str]) -> List[str]:
        """Configuration JSON files under ``config_path`` that contain conflict markers."""
        root = Path(repo_dir)
        base = root / config_path if config_path else root
        if not base.is_dir():
            return []

        hits = []
        for path in sorted(base.rglob('*.json')):
            if '.git' in path.relative_to(root).parts:
                continue
            try:
                text = path.read_text(encoding='utf-8', errors='replace')
            except OSError as e:
                self.logger.warning(f"Could not scan {path}: {e}")
                continue
            if has_conflict_markers(text):
                hits.append(str(path.relative_to(root)))
        return hits

    async def _abort_rebase(self, repo_dir):
        try:
            await self.runner.run(['rebase', '--abort'], cwd=repo_dir)
        except GitCommandError as e:
            # No rebase in progress
            self.logger.debug(f"rebase --abort: {e}")

    async def _pop_stash(self, repo_dir):
        try:
            await self.runner.run(['stash', 'pop'], cwd=repo_dir)
        except GitCommandError as e:
            self.logger.warning(f"Failed to restore stashed changes: {e}")

    async def resolve(
        self,
        repo_dir,
        branch: str,
        state: SyncState,
        auto_resolve: bool = False,
        auth: Optional[AuthHandle] = None,
        config_path: Optional[str] = None,
        progress: Optional[ProgressSink] = None,
    ) -> SyncResult:
        """
        Handle a CONFLICT state.

        Args:
            repo_dir: Working copy
            branch: Branch tracked on origin
            state: The resolved CONFLICT state (ahead/behind counts)
            auto_resolve: Rebase and push instead of reporting
            auth: Active auth handle for pull and push
            config_path: Configuration directory scanned after the rebase
            progress: Optional progress sink

        Returns:
            UP_TO_DATE with ``resolved`` on success, otherwise CONFLICT with
            ``requires_manual_resolution``
        """
        self.logger.warning(f"Conflict detected: {state.ahead} ahead, {state.behind} behind")

        if not auto_resolve:
            return SyncResult(
                success=False,
                status=SyncStatus.CONFLICT,
                message='Manual conflict resolution required',
                requires_manual_resolution=True,
                state=state,
            )

        if progress:
            progress.report('resolve', details='Auto-resolving conflicts...')

        stashed = False
        try:
            if await self.repository.has_uncommitted_changes(repo_dir):
                await self.runner.run(['stash', 'push', '-m', STASH_MESSAGE], cwd=repo_dir)
                stashed = True

            async with self.repository.remote_session(repo_dir, auth):
                try:
                    await self.runner.run(
                        ['pull', '--rebase', 'origin', branch],
                        cwd=repo_dir,
                        env=dict(auth.env) if auth is not None else None,
                        timeout=PULL_TIMEOUT,
                    )
                except GitCommandError:
                    await self._abort_rebase(repo_dir)
                    if stashed:
                        await self._pop_stash(repo_dir)
                    raise

                if stashed:
                    await self._pop_stash(repo_dir)

                unmerged = await self.unmerged_paths(repo_dir)
                marked = self.files_with_markers(repo_dir, config_path)
                if unmerged or marked:
                    paths = ', '.join(sorted(set(unmerged + marked)))
                    raise GitCommandError(f"Merge conflict remains after rebase in: {paths}")

                pushed = await self.repository.push(repo_dir, branch, auth, progress=progress)
        except Exception as e:
            self.logger.error(f"Auto-resolve failed: {e}")
            if progress:
                progress.error('resolve', str(e))
            return SyncResult(
                success=False,
                status=SyncStatus.CONFLICT,
                message=f"Auto-resolve failed: {e}",
                requires_manual_resolution=True,
                state=state,
                error=classify_error(e, {'branch': branch}),
            )

        if progress:
            progress.success('resolve', 'Conflicts resolved automatically')
        return SyncResult(
            success=True,
            status=SyncStatus.UP_TO_DATE,
            message='Conflicts resolved automatically',
            changes=True,
            pushed=pushed['commits'],
            resolved=True,
            state=state,
        )
