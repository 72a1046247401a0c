#!/usr/bin/env python3
"""
Sync status resolution for configsync.

This module classifies how a working copy relates to its remote branch.
The state is computed fresh on every sync attempt from a targeted fetch and
a merge-base comparison; failures are reported as an ERROR state instead of
being raised.
"""

import asyncio
from typing import Optional

from .auth import AuthHandle
from .errors import GitCommandError
from .models import SyncState, SyncStatus, utc_now_iso
from .repository import RepositoryOperations, parse_count
from .runner import CommandRunner, SHORT_TIMEOUT
from ..utils.logger import get_logger

FETCH_ATTEMPTS = 3
FETCH_RETRY_DELAY = 2.0

MISSING_REF_MARKER = "couldn't find remote ref"


class SyncStatusResolver:
    """Compare HEAD with origin/<branch> and classify the divergence."""

    def __init__(
        self,
        runner: CommandRunner,
        repository: RepositoryOperations,
        fetch_attempts: int = FETCH_ATTEMPTS,
        retry_delay: float = FETCH_RETRY_DELAY,
        sleep=asyncio.sleep,
    ):
        self.logger = get_logger(f"{__name__}.SyncStatusResolver")
        self.runner = runner
        self.repository = repository
        self.fetch_attempts = fetch_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def _fetch(self, repo_dir, branch: str, auth: Optional[AuthHandle]):
        """Fetch the branch, retrying while a freshly pushed ref is not visible yet."""
        env = dict(auth.env) if auth is not None else None
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.runner.run(
                    ['fetch', 'origin', branch], cwd=repo_dir, env=env,
                    timeout=SHORT_TIMEOUT,
                )
                return
            except GitCommandError as e:
                if MISSING_REF_MARKER not in f"{e}{e.stderr}" or attempt >= self.fetch_attempts:
                    raise
                self.logger.warning(
                    f"Branch {branch} not found on remote (attempt {attempt}/{self.fetch_attempts}), "
                    f"retrying in {self.retry_delay}s..."
                )
                await self._sleep(self.retry_delay)

    async def _rev_parse(self, repo_dir, ref: str) -> str:
        result = await self.runner.run(['rev-parse', ref], cwd=repo_dir)
        return result.stdout.strip()

    async def commit_count(self, repo_dir, commit_range: str) -> int:
        """Number of commits in ``commit_range``; 0 if git cannot tell."""
        try:
            result = await self.runner.run(['rev-list', '--count', commit_range], cwd=repo_dir)
        except GitCommandError as e:
            self.logger.debug(f"Could not count {commit_range}: {e}")
            return 0
        return parse_count(result.stdout)

    async def resolve(self, repo_dir, branch: str, auth: Optional[AuthHandle] = None) -> SyncState:
        """
        Resolve the sync state of ``branch``.

        Args:
            repo_dir: Working copy
            branch: Branch tracked on origin
            auth: Active auth handle for the fetch

        Returns:
            SyncState; ERROR with the git message when anything fails
        """
        remote_ref = f"origin/{branch}"
        try:
            async with self.repository.remote_session(repo_dir, auth):
                await self._fetch(repo_dir, branch, auth)

            local = await self._rev_parse(repo_dir, 'HEAD')
            remote = await self._rev_parse(repo_dir, remote_ref)

            if local == remote:
                return SyncState(SyncStatus.UP_TO_DATE, local_commit=local, remote_commit=remote)

            result = await self.runner.run(['merge-base', 'HEAD', remote_ref], cwd=repo_dir)
            base = result.stdout.strip()

            if base == local:
                behind = await self.commit_count(repo_dir, f"HEAD..{remote_ref}")
                return SyncState(SyncStatus.NEEDS_PULL, local, remote, behind=behind)

            if base == remote:
                ahead = await self.commit_count(repo_dir, f"{remote_ref}..HEAD")
                return SyncState(SyncStatus.NEEDS_PUSH, local, remote, ahead=ahead)

            return SyncState(
                SyncStatus.CONFLICT,
                local,
                remote,
                ahead=await self.commit_count(repo_dir, f"{remote_ref}..HEAD"),
                behind=await self.commit_count(repo_dir, f"HEAD..{remote_ref}"),
            )
        except Exception as e:
            self.logger.error(f"Failed to check sync status: {e}")
            return SyncState(SyncStatus.ERROR, last_error=str(e), last_sync=utc_now_iso())
