#!/usr/bin/env python3
"""
Sparse checkout management for configsync.

Working copies only need the configuration directory, so clones use cone-mode
sparse checkout. Patterns are written in the workspace form (``/*`` for root
files, ``/<dir>/`` for directories) and converted to cone directories when
handed to git; cone mode always materializes root files.
"""

import posixpath
from typing import Iterable, List, Optional

from .errors import GitCommandError, RepositoryError
from .runner import CommandRunner
from .models import Workspace
from ..utils.logger import get_logger

ROOT_FILES_PATTERN = '/*'
FULL_TREE_PATTERNS = ('/', '/*')


def path_to_pattern(file_path: str) -> Optional[str]:
    """Directory pattern covering ``file_path``; None for root-level files."""
    normalized = file_path.replace('\\', '/')
    directory = posixpath.dirname(normalized)
    if directory in ('', '.', '/'):
        return None
    return f"/{directory.strip('/')}/"


def config_dir_pattern(config_path: str) -> Optional[str]:
    """Pattern for a configured path, which may name a directory or a file."""
    normalized = config_path.replace('\\', '/').strip()
    if not normalized or normalized in ('.', '/', './'):
        return None
    if normalized.endswith('/') or not posixpath.splitext(normalized)[1]:
        return f"/{normalized.strip('/')}/"
    return path_to_pattern(normalized)


def workspace_patterns(config_paths: Iterable[str]) -> List[str]:
    """Root files plus the directory of every configured path."""
    patterns = [ROOT_FILES_PATTERN]
    for config_path in config_paths:
        if not config_path:
            continue
        pattern = config_dir_pattern(config_path)
        if pattern and pattern not in patterns:
            patterns.append(pattern)
    return patterns


def to_cone_directories(patterns: Iterable[str]) -> List[str]:
    directories = []
    for pattern in patterns:
        if pattern == ROOT_FILES_PATTERN:
            continue
        directory = pattern.strip('/')
        if directory and directory not in directories:
            directories.append(directory)
    return directories


class SparseCheckoutManager:
    """Enable, edit and inspect cone-mode sparse checkout."""

    def __init__(self, runner: CommandRunner):
        self.logger = get_logger(f"{__name__}.SparseCheckoutManager")
        self.runner = runner

    def validate_patterns(self, patterns: List[str]):
        """
        Reject patterns that are empty or would materialize the whole tree.

        ``/*`` is accepted next to directory patterns, where it stands for
        root-level files only.

        Raises:
            RepositoryError: If a pattern is invalid
        """
        if not patterns:
            raise RepositoryError('At least one pattern is required')

        for pattern in patterns:
            if not isinstance(pattern, str) or not pattern.strip():
                raise RepositoryError(f"Invalid pattern: {pattern!r}")
            if pattern == '/':
                raise RepositoryError('Pattern would include entire repository. Use disable() instead.')
            if '..' in pattern:
                self.logger.warning(f"Pattern '{pattern}' contains '..', which may not work as expected")

        if all(pattern in FULL_TREE_PATTERNS for pattern in patterns):
            raise RepositoryError('Pattern would include entire repository. Use disable() instead.')

    async def init(self, repo_dir, patterns: Optional[List[str]] = None, env=None):
        """Enable cone-mode sparse checkout, optionally setting patterns."""
        self.logger.info('Initializing sparse checkout')
        await self.runner.run(['sparse-checkout', 'init', '--cone'], cwd=repo_dir, env=env)
        if patterns:
            await self.set(repo_dir, patterns, env=env)

    async def set(self, repo_dir, patterns: List[str], env=None, apply: bool = True) -> List[str]:
        """
        Replace the sparse checkout patterns.

        Args:
            repo_dir: Working copy
            patterns: Workspace-form patterns
            env: Extra environment for git
            apply: Refresh the working tree afterwards

        Returns:
            The cone directories handed to git
        """
        self.validate_patterns(patterns)
        directories = to_cone_directories(patterns)
        if not directories:
            raise RepositoryError('Pattern would include entire repository. Use disable() instead.')

        self.logger.info(f"Setting sparse checkout patterns: {directories}")
        await self.runner.run(['sparse-checkout', 'set'] + directories, cwd=repo_dir, env=env)
        if apply:
            await self.runner.run(['read-tree', '-m', '-u', 'HEAD'], cwd=repo_dir, env=env)
        return directories

    async def add(self, repo_dir, patterns: List[str]) -> List[str]:
        current = await self.list(repo_dir)
        merged = current + [p for p in patterns if p not in current]
        return await self.set(repo_dir, merged)

    async def remove(self, repo_dir, patterns: List[str]) -> List[str]:
        current = await self.list(repo_dir)
        removed = set(to_cone_directories(patterns))
        remaining = [p for p in current if p not in patterns and p.strip('/') not in removed]
        if not remaining:
            raise RepositoryError('Cannot remove all patterns. Use disable() instead.')
        return await self.set(repo_dir, remaining)

    async def list(self, repo_dir) -> List[str]:
        result = await self.runner.run(['sparse-checkout', 'list'], cwd=repo_dir)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def _config_flag(self, repo_dir, key: str) -> bool:
        try:
            result = await self.runner.run(['config', '--get', key], cwd=repo_dir)
        except GitCommandError:
            # git config exits 1 when the key is unset
            return False
        return result.stdout.strip() == 'true'

    async def is_enabled(self, repo_dir) -> bool:
        return await self._config_flag(repo_dir, 'core.sparseCheckout')

    async def disable(self, repo_dir):
        self.logger.info('Disabling sparse checkout')
        await self.runner.run(['sparse-checkout', 'disable'], cwd=repo_dir)

    async def status(self, repo_dir) -> dict:
        if not await self.is_enabled(repo_dir):
            return {'enabled': False, 'patterns': [], 'mode': 'none'}

        patterns = await self.list(repo_dir)
        cone = await self._config_flag(repo_dir, 'core.sparseCheckoutCone')
        return {'enabled': True, 'patterns': patterns, 'mode': 'cone' if cone else 'legacy'}


def patterns_for_workspace(workspace: Workspace) -> List[str]:
    """Sparse patterns for a workspace; empty means a full checkout."""
    if config_dir_pattern(workspace.config_path or '') is None:
        return []
    return workspace_patterns([workspace.config_path])
