#!/usr/bin/env python3
"""
Repository operations for configsync.

This module wraps the git porcelain the sync engine needs: clone, fetch,
pull and push against an authenticated remote, working-copy status, branch
management and commits. Remote operations accept an AuthHandle; while one is
active the handle's effective URL is placed on ``origin`` and the plain URL
is restored afterwards, so credentials never outlive the session on disk.
"""

import os
import shutil
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .auth import AUTH_NONE, AuthHandle, AuthProvider, display_url
from .errors import GitCommandError, RepositoryError
from .models import CommitInfo, RepositoryStatus
from .progress import ProgressSink
from .runner import (
    CLONE_MAX_OUTPUT_BYTES, CLONE_TIMEOUT, FETCH_TIMEOUT, LS_REMOTE_TIMEOUT,
    PULL_TIMEOUT, PUSH_TIMEOUT, CommandRunner,
)
from .sparse import SparseCheckoutManager
from ..utils.logger import get_logger

NEW_BRANCH_PROPAGATION_DELAY = 5.0

DEFAULT_USER_NAME = 'ConfigSync User'
DEFAULT_USER_EMAIL = 'configsync@localhost'

LOG_FORMAT = '%H|%an|%ae|%at|%s'

CHANGE_KEYS = ('modified', 'added', 'deleted', 'renamed', 'untracked')


def parse_status_output(output: str) -> Dict[str, List[str]]:
    """Group ``git status --porcelain`` lines by change type."""
    changes = {key: [] for key in CHANGE_KEYS}
    for line in output.splitlines():
        if not line.strip():
            continue
        code = line[:2]
        path = line[3:]
        if code == '??':
            changes['untracked'].append(path)
        elif 'M' in code:
            changes['modified'].append(path)
        elif 'A' in code:
            changes['added'].append(path)
        elif 'D' in code:
            changes['deleted'].append(path)
        elif 'R' in code:
            changes['renamed'].append(path)
    return changes


def parse_commit_line(line: str) -> Optional[CommitInfo]:
    """Parse one ``%H|%an|%ae|%at|%s`` line; the subject may contain '|'."""
    line = line.strip().strip('"')
    if not line:
        return None
    parts = line.split('|', 4)
    if len(parts) < 5:
        return None
    commit_hash, author, email, timestamp, message = parts
    try:
        date = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    except ValueError:
        date = None
    return CommitInfo(hash=commit_hash, author=author, email=email, date=date, message=message)


def parse_count(output: str) -> int:
    try:
        return int(output.strip() or 0)
    except ValueError:
        return 0


def parse_heads(output: str) -> List[str]:
    """Branch names from ``ls-remote --heads`` output."""
    branches = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].startswith('refs/heads/'):
            branches.append(parts[1][len('refs/heads/'):])
    return branches


class RepositoryOperations:
    """Clone, fetch, pull, push, status, branches and commits."""

    def __init__(
        self,
        runner: CommandRunner,
        auth: AuthProvider,
        sparse: Optional[SparseCheckoutManager] = None,
        new_branch_delay: float = NEW_BRANCH_PROPAGATION_DELAY,
        sleep=asyncio.sleep,
    ):
        """
        Initialize repository operations.

        Args:
            runner: Git command runner
            auth: Auth provider used by clone
            sparse: Sparse checkout manager (created from the runner if omitted)
            new_branch_delay: Seconds to wait after the first push of a branch
            sleep: Coroutine used for that wait
        """
        self.logger = get_logger(f"{__name__}.RepositoryOperations")
        self.runner = runner
        self.auth = auth
        self.sparse = sparse or SparseCheckoutManager(runner)
        self.new_branch_delay = new_branch_delay
        self._sleep = sleep
        # repo dir -> nesting depth of active authenticated sessions
        self._remote_sessions: Dict[str, int] = {}

    @staticmethod
    def _env(auth: Optional[AuthHandle]) -> Optional[Dict[str, str]]:
        return dict(auth.env) if auth is not None else None

    # Remote URL handling

    async def get_remote_url(self, repo_dir) -> Optional[str]:
        try:
            result = await self.runner.run(['config', '--get', 'remote.origin.url'], cwd=repo_dir)
        except GitCommandError as e:
            self.logger.error(f"Failed to get repository URL: {e}")
            return None
        return result.stdout.strip() or None

    async def set_remote_url(self, repo_dir, url: str):
        await self.runner.run(['remote', 'set-url', 'origin', url], cwd=repo_dir)

    @asynccontextmanager
    async def remote_session(self, repo_dir, auth: Optional[AuthHandle]):
        """Point ``origin`` at the handle's effective URL for the block.

        Nested sessions for the same working copy reuse the outer one.
        """
        key = str(Path(repo_dir).resolve())
        if auth is None or self._remote_sessions.get(key):
            self._remote_sessions[key] = self._remote_sessions.get(key, 0) + 1
            try:
                yield
            finally:
                self._remote_sessions[key] -= 1
            return

        original = await self.get_remote_url(repo_dir)
        swapped = bool(original) and auth.effective_url != original
        if swapped:
            await self.set_remote_url(repo_dir, auth.effective_url)
        self._remote_sessions[key] = 1
        try:
            yield
        finally:
            self._remote_sessions[key] = 0
            if swapped:
                await self.set_remote_url(repo_dir, display_url(original))

    # Clone

    def ensure_clean_directory(self, directory):
        """
        Make sure ``directory`` can be cloned into.

        Raises:
            RepositoryError: If the directory exists and is not empty
        """
        path = Path(directory)
        if path.exists():
            if not path.is_dir():
                raise RepositoryError(f"Target {path} exists and is not a directory")
            if any(path.iterdir()):
                raise RepositoryError(f"Directory {path} is not empty")
        else:
            path.mkdir(parents=True)

    def _remove_directory(self, directory):
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.error(f"Failed to cleanup directory {directory}: {e}")

    async def clone(
        self,
        url: str,
        target_dir,
        branch: Optional[str] = None,
        auth_type: str = AUTH_NONE,
        auth_data: Optional[Mapping[str, Any]] = None,
        depth: int = 1,
        sparse_patterns: Optional[List[str]] = None,
        progress: Optional[ProgressSink] = None,
    ) -> str:
        """
        Clone a repository into an empty or missing directory.

        Args:
            url: Repository URL as configured
            target_dir: Destination working copy
            branch: Branch to check out; the remote default when omitted
            auth_type: Authentication type
            auth_data: Authentication data
            depth: History depth; 0 clones full history
            sparse_patterns: Workspace-form sparse patterns, if any
            progress: Optional progress sink

        Returns:
            The branch that was checked out

        Raises:
            RepositoryError: If the target is not empty
            GitCommandError: If git fails; the partial clone is removed
        """
        target = Path(target_dir)
        self.logger.info(f"Cloning repository: {display_url(url)} to {target}")
        if progress:
            progress.report('clone', details='Preparing to clone repository...')

        self.ensure_clean_directory(target)

        try:
            with self.auth.session(url, auth_type, auth_data) as handle:
                command = ['clone', '--progress']
                if depth and depth > 0:
                    command += ['--depth', str(depth)]
                if sparse_patterns:
                    command += ['--no-checkout', '--filter=blob:none']
                if branch:
                    command += ['--branch', branch]
                command += [handle.effective_url, str(target)]

                if progress:
                    progress.report('clone', details='Cloning repository...')
                await self.runner.run(
                    command,
                    env=handle.env,
                    timeout=CLONE_TIMEOUT,
                    max_output_bytes=CLONE_MAX_OUTPUT_BYTES,
                )

                if sparse_patterns:
                    if progress:
                        progress.report('sparse', details='Configuring sparse checkout...')
                    await self.sparse.init(target, env=handle.env)
                    await self.sparse.set(target, sparse_patterns, env=handle.env, apply=False)
                    await self.runner.run(['checkout'], cwd=target, env=handle.env)

                # Credentials must not stay in .git/config
                await self.set_remote_url(target, display_url(url))

                actual_branch = branch
                if not branch:
                    result = await self.runner.run(['rev-parse', '--abbrev-ref', 'HEAD'], cwd=target)
                    actual_branch = result.stdout.strip()
        except BaseException:
            self.logger.error(f"Clone failed, removing {target}")
            self._remove_directory(target)
            raise

        self.logger.info('Clone completed successfully')
        if progress:
            progress.success('clone', f"Cloned branch '{actual_branch}'")
        return actual_branch

    # Remote queries

    async def ls_remote_heads(self, remote: str = 'origin', repo_dir=None,
                              auth: Optional[AuthHandle] = None, branch: Optional[str] = None,
                              timeout: float = LS_REMOTE_TIMEOUT) -> List[str]:
        """Branch names on a remote (``origin`` inside a working copy, or a URL)."""
        command = ['ls-remote', '--heads', remote]
        if branch:
            command.append(branch)
        result = await self.runner.run(command, cwd=repo_dir, env=self._env(auth), timeout=timeout)
        return parse_heads(result.stdout)

    async def remote_branch_exists(self, repo_dir, branch: str, auth: Optional[AuthHandle] = None) -> bool:
        async with self.remote_session(repo_dir, auth):
            heads = await self.ls_remote_heads('origin', repo_dir=repo_dir, auth=auth, branch=branch)
        return branch in heads

    async def default_branch(self, repo_dir, auth: Optional[AuthHandle] = None) -> str:
        """
        Resolve the remote's default branch.

        Raises:
            RepositoryError: If neither symbolic-ref nor main/master resolves it
        """
        try:
            result = await self.runner.run(
                ['symbolic-ref', 'refs/remotes/origin/HEAD'], cwd=repo_dir, env=self._env(auth)
            )
            return result.stdout.strip().replace('refs/remotes/origin/', '')
        except GitCommandError:
            self.logger.debug('origin/HEAD is not set, probing for main/master')

        heads = await self.ls_remote_heads('origin', repo_dir=repo_dir, auth=auth)
        for candidate in ('main', 'master'):
            if candidate in heads:
                return candidate
        raise RepositoryError('Could not determine default branch')

    async def fetch(self, repo_dir, branch: str, auth: Optional[AuthHandle] = None):
        """Fetch only ``branch`` from origin."""
        async with self.remote_session(repo_dir, auth):
            await self.runner.run(
                ['fetch', 'origin', branch], cwd=repo_dir, env=self._env(auth), timeout=FETCH_TIMEOUT
            )

    # Pull / push

    async def pull(self, repo_dir, branch: str, auth: Optional[AuthHandle] = None,
                   progress: Optional[ProgressSink] = None) -> Dict[str, Any]:
        """
        Bring ``branch`` up to date with origin.

        A branch missing on the remote is created locally: from nothing in an
        empty repository, otherwise from the remote's default branch.

        Returns:
            Dict with ``changes`` (bool), ``commits`` (int) and ``message``
        """
        self.logger.info(f"Pulling changes in: {repo_dir}, branch: {branch}")
        if progress:
            progress.report('pull', details='Checking repository status...')
        env = self._env(auth)

        async with self.remote_session(repo_dir, auth):
            heads = await self.ls_remote_heads('origin', repo_dir=repo_dir, auth=auth)

            if branch not in heads:
                self.logger.info(f"Branch '{branch}' does not exist on remote")
                if not heads:
                    await self.runner.run(['checkout', '-b', branch], cwd=repo_dir, env=env)
                    return {'changes': False, 'commits': 0,
                            'message': 'Created new branch in empty repository'}

                default = await self.default_branch(repo_dir, auth)
                await self.runner.run(
                    ['fetch', 'origin', f"{default}:{default}"],
                    cwd=repo_dir, env=env, timeout=FETCH_TIMEOUT,
                )
                await self.runner.run(['checkout', '-b', branch, f"origin/{default}"], cwd=repo_dir, env=env)
                return {'changes': True, 'commits': 0,
                        'message': f"Created branch '{branch}' from '{default}'"}

            if progress:
                progress.report('pull', details='Fetching latest changes...')
            await self.runner.run(['fetch', 'origin', branch], cwd=repo_dir, env=env, timeout=FETCH_TIMEOUT)

            result = await self.runner.run(['rev-list', f"HEAD..origin/{branch}", '--count'], cwd=repo_dir)
            behind = parse_count(result.stdout)
            if behind == 0:
                self.logger.info('Already up to date')
                if progress:
                    progress.success('pull', 'Already up to date')
                return {'changes': False, 'commits': 0, 'message': 'Already up to date'}

            if progress:
                progress.report('pull', details=f"Pulling {behind} new commits...")
            await self.runner.run(['pull', 'origin', branch], cwd=repo_dir, env=env, timeout=PULL_TIMEOUT)

        message = f"Pulled {behind} new commits"
        if progress:
            progress.success('pull', message)
        return {'changes': True, 'commits': behind, 'message': message}

    async def push(self, repo_dir, branch: str, auth: Optional[AuthHandle] = None,
                   force: bool = False, set_upstream: bool = False,
                   progress: Optional[ProgressSink] = None) -> Dict[str, Any]:
        """
        Push ``branch`` to origin.

        Args:
            repo_dir: Working copy
            branch: Branch to push
            auth: Active auth handle
            force: Push even when nothing is ahead, with ``--force``
            set_upstream: First push of a new branch
            progress: Optional progress sink

        Returns:
            Dict with ``pushed`` (bool), ``commits`` (int) and ``message``
        """
        self.logger.info(f"Pushing changes from: {repo_dir}, branch: {branch}")
        env = self._env(auth)

        if set_upstream:
            try:
                result = await self.runner.run(['rev-list', 'HEAD', '--count'], cwd=repo_dir)
                count = parse_count(result.stdout) or 1
            except GitCommandError:
                count = 1
        else:
            try:
                result = await self.runner.run(['rev-list', f"origin/{branch}..HEAD", '--count'], cwd=repo_dir)
                count = parse_count(result.stdout)
            except GitCommandError as e:
                # origin/<branch> is unknown until the first push
                self.logger.warning(f"Could not count unpushed commits: {e}")
                count = 1
            if count == 0 and not force:
                self.logger.info('No changes to push')
                return {'pushed': False, 'commits': 0, 'message': 'No changes to push'}

        command = ['push', 'origin']
        if force:
            command.append('--force')
        if set_upstream:
            command.append('--set-upstream')
        command.append(branch)

        if progress:
            progress.report('push', details=f"Pushing {count} commits...")
        async with self.remote_session(repo_dir, auth):
            await self.runner.run(command, cwd=repo_dir, env=env, timeout=PUSH_TIMEOUT)

        if set_upstream and self.new_branch_delay > 0:
            self.logger.info('Waiting for the remote to process the new branch...')
            if progress:
                progress.report('push', details='Waiting for remote to process new branch...')
            await self._sleep(self.new_branch_delay)

        message = f"Pushed {count} commits"
        if progress:
            progress.success('push', message)
        return {'pushed': True, 'commits': count, 'message': message}

    # Working copy

    async def last_commit(self, repo_dir, ref: str = 'HEAD') -> Optional[CommitInfo]:
        try:
            result = await self.runner.run(['log', ref, '-1', f"--pretty=format:{LOG_FORMAT}"], cwd=repo_dir)
        except GitCommandError:
            # No commits yet
            return None
        return parse_commit_line(result.stdout)

    async def current_branch(self, repo_dir) -> str:
        result = await self.runner.run(['rev-parse', '--abbrev-ref', 'HEAD'], cwd=repo_dir)
        return result.stdout.strip()

    async def status(self, repo_dir) -> RepositoryStatus:
        """Current branch, porcelain changes and latest commit."""
        branch = await self.current_branch(repo_dir)
        result = await self.runner.run(['status', '--porcelain'], cwd=repo_dir)
        return RepositoryStatus(
            branch=branch,
            changes=parse_status_output(result.stdout),
            last_commit=await self.last_commit(repo_dir),
        )

    async def has_uncommitted_changes(self, repo_dir) -> bool:
        result = await self.runner.run(['status', '--porcelain'], cwd=repo_dir)
        return bool(result.stdout.strip())

    async def history(self, repo_dir, limit: int = 10) -> List[CommitInfo]:
        result = await self.runner.run(
            ['log', f"-{int(limit)}", f"--pretty=format:{LOG_FORMAT}"], cwd=repo_dir
        )
        commits = [parse_commit_line(line) for line in result.stdout.splitlines()]
        return [commit for commit in commits if commit is not None]

    # Commits

    async def _config_value(self, repo_dir, key: str) -> str:
        try:
            result = await self.runner.run(['config', key], cwd=repo_dir)
        except GitCommandError:
            return ''
        return result.stdout.strip()

    async def ensure_identity(self, repo_dir, name: Optional[str] = None, email: Optional[str] = None):
        """Set a local user.name/user.email when git has none configured."""
        if not await self._config_value(repo_dir, 'user.name'):
            await self.runner.run(['config', 'user.name', name or DEFAULT_USER_NAME], cwd=repo_dir)
        if not await self._config_value(repo_dir, 'user.email'):
            await self.runner.run(['config', 'user.email', email or DEFAULT_USER_EMAIL], cwd=repo_dir)

    async def commit(self, repo_dir, message: str) -> str:
        """Commit what is staged and return the new HEAD hash."""
        try:
            await self.runner.run(['commit', '-m', message], cwd=repo_dir)
        except GitCommandError as e:
            if 'nothing to commit' in f"{e.stdout}{e.stderr}":
                raise RepositoryError('No changes staged for commit') from e
            raise
        result = await self.runner.run(['rev-parse', 'HEAD'], cwd=repo_dir)
        return result.stdout.strip()

    async def auto_commit(self, repo_dir, message: str, include_untracked: bool = True) -> Optional[str]:
        """
        Stage and commit every local change.

        Returns:
            The commit hash, or None when the working copy was clean
        """
        status = await self.status(repo_dir)
        if not status.has_changes:
            self.logger.debug('No changes to commit')
            return None

        await self.ensure_identity(repo_dir)
        if include_untracked:
            for path in status.changes['untracked']:
                await self.runner.run(['add', '--', path], cwd=repo_dir)
        await self.runner.run(['add', '-u'], cwd=repo_dir)

        commit_hash = await self.commit(repo_dir, message)
        self.logger.info(f"Committed local changes as {commit_hash[:8]}")
        return commit_hash

    async def commit_files(self, repo_dir, files: Mapping[str, str], message: str,
                           author: Optional[str] = None, email: Optional[str] = None) -> str:
        """Write ``files`` (relative path -> content), stage and commit them."""
        await self.ensure_identity(repo_dir, author, email)
        root = Path(repo_dir)
        for relative, content in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(str(content), encoding='utf-8')
            await self.runner.run(['add', '--', relative.replace(os.sep, '/')], cwd=repo_dir)
        return await self.commit(repo_dir, message)

    # Branches

    async def create_branch(self, repo_dir, name: str, base: Optional[str] = None):
        command = ['checkout', '-b', name]
        if base:
            command.append(base)
        await self.runner.run(command, cwd=repo_dir)
        self.logger.info(f"Created branch '{name}'{' from ' + base if base else ''}")

    async def switch_branch(self, repo_dir, name: str):
        await self.runner.run(['checkout', name], cwd=repo_dir)

    async def list_branches(self, repo_dir, remote: bool = False) -> List[str]:
        command = ['branch', '--format=%(refname:short)']
        if remote:
            command.insert(1, '-r')
        result = await self.runner.run(command, cwd=repo_dir)
        branches = []
        for line in result.stdout.splitlines():
            name = line.strip()
            if not name or name.endswith('/HEAD'):
                continue
            branches.append(name)
        return branches

    async def delete_branch(self, repo_dir, name: str, force: bool = False):
        await self.runner.run(['branch', '-D' if force else '-d', name], cwd=repo_dir)

    async def branch_exists(self, repo_dir, name: str) -> bool:
        try:
            await self.runner.run(['rev-parse', '--verify', '--quiet', f"refs/heads/{name}"], cwd=repo_dir)
        except GitCommandError:
            return False
        return True

    async def branch_info(self, repo_dir, name: str) -> Dict[str, Any]:
        """Latest commit, upstream and ahead/behind counts for a local branch."""
        info = {
            'name': name,
            'commit': await self.last_commit(repo_dir, name),
            'upstream': None,
            'ahead': 0,
            'behind': 0,
        }
        try:
            result = await self.runner.run(['rev-parse', '--abbrev-ref', f"{name}@{{upstream}}"], cwd=repo_dir)
        except GitCommandError:
            return info

        upstream = result.stdout.strip()
        info['upstream'] = upstream
        try:
            result = await self.runner.run(
                ['rev-list', '--left-right', '--count', f"{name}...{upstream}"], cwd=repo_dir
            )
        except GitCommandError as e:
            self.logger.debug(f"Could not count commits against {upstream}: {e}")
            return info

        counts = result.stdout.split()
        if len(counts) == 2:
            info['ahead'] = parse_count(counts[0])
            info['behind'] = parse_count(counts[1])
        return info
