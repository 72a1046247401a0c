#!/usr/bin/env python3
"""
Retention cleanup for configsync.

Working copies, scratch directories and SSH key material accumulate under
the repositories and SSH directories. ``CleanupManager`` removes entries
older than their retention window, or everything when forced.
"""

import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..utils.logger import get_logger

HOUR = 60 * 60
DAY = 24 * HOUR

TEMP_FILE_AGE = 24 * HOUR
OLD_REPO_AGE = 7 * DAY
SSH_KEY_AGE = 30 * DAY
MAX_TEMP_SIZE = 1024 * 1024 * 1024

MAX_OLD_ENTRIES = 10
MAX_OLD_KEYS = 5

REPOSITORY_PREFIX = 'workspace-'
SSH_KEY_PREFIX = 'git-ssh-key-'
GIT_LOCK_FILES = ('index.lock', 'HEAD.lock', 'config.lock')


@dataclass
class CleanupResult:
    cleaned: int = 0
    freed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'cleaned': self.cleaned, 'freed': self.freed, 'errors': list(self.errors)}


def format_size(size_bytes: float) -> str:
    """Human readable size with two decimals."""
    units = ['B', 'KB', 'MB', 'GB']
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    return f"{size:.2f} {units[unit]}"


def directory_size(path: Path) -> int:
    """Total size in bytes; unreadable entries count as zero."""
    try:
        if path.is_file() or path.is_symlink():
            return path.lstat().st_size
        return sum(
            entry.lstat().st_size
            for entry in path.rglob('*')
            if entry.is_file() and not entry.is_symlink()
        )
    except OSError:
        return 0


class CleanupManager:
    """Age-based removal of working copies, scratch entries and SSH keys."""

    def __init__(self, repos_dir, ssh_dir, clock: Callable[[], float] = time.time):
        self.logger = get_logger(f"{__name__}.CleanupManager")
        self.repos_dir = Path(repos_dir)
        self.ssh_dir = Path(ssh_dir)
        self._clock = clock

    def _age(self, path: Path) -> float:
        return self._clock() - path.stat().st_mtime

    @staticmethod
    def _entries(directory: Path) -> List[Path]:
        if not directory.is_dir():
            return []
        return sorted(directory.iterdir())

    def clean_git_locks(self, repo_path: Path):
        git_dir = Path(repo_path) / '.git'
        for name in GIT_LOCK_FILES:
            lock = git_dir / name
            if lock.exists():
                lock.unlink()
                self.logger.debug(f"Removed lock file: {name}")

    def remove_repository(self, repo_path):
        """Remove a working copy, clearing stale git lock files first."""
        repo_path = Path(repo_path)
        if not repo_path.exists():
            return
        self.clean_git_locks(repo_path)
        shutil.rmtree(repo_path)

    @staticmethod
    def _remove(path: Path):
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    def cleanup_temp_files(self, force: bool = False) -> CleanupResult:
        """Remove scratch entries older than a day; working copies are left to ``cleanup_old_repositories``."""
        self.logger.info("Cleaning up temporary files")
        result = CleanupResult()

        for entry in self._entries(self.repos_dir):
            if entry.name.startswith(REPOSITORY_PREFIX):
                continue
            try:
                if force or self._age(entry) > TEMP_FILE_AGE:
                    size = directory_size(entry)
                    self._remove(entry)
                    result.cleaned += 1
                    result.freed += size
                    self.logger.debug(f"Cleaned: {entry.name} ({format_size(size)})")
            except OSError as e:
                self.logger.error(f"Failed to clean {entry.name}: {e}")
                result.errors.append(f"{entry.name}: {e}")

        return result

    def cleanup_old_repositories(self, force: bool = False) -> CleanupResult:
        self.logger.info("Cleaning up old repositories")
        result = CleanupResult()

        for entry in self._entries(self.repos_dir):
            if not entry.name.startswith(REPOSITORY_PREFIX) or not entry.is_dir():
                continue
            try:
                if force or self._age(entry) > OLD_REPO_AGE:
                    size = directory_size(entry)
                    self.remove_repository(entry)
                    result.cleaned += 1
                    result.freed += size
                    self.logger.debug(f"Cleaned repository: {entry.name} ({format_size(size)})")
            except OSError as e:
                self.logger.error(f"Failed to clean repository {entry.name}: {e}")
                result.errors.append(f"{entry.name}: {e}")

        return result

    def cleanup_old_ssh_keys(self, force: bool = False) -> CleanupResult:
        """Remove private keys older than 30 days with their public key and SSH config."""
        self.logger.info("Cleaning up old SSH keys")
        result = CleanupResult()

        for entry in self._entries(self.ssh_dir):
            if not entry.name.startswith(SSH_KEY_PREFIX) or entry.name.endswith('.pub'):
                continue
            try:
                if not (force or self._age(entry) > SSH_KEY_AGE):
                    continue
                entry.unlink()
                result.cleaned += 1
                self.logger.debug(f"Cleaned SSH key: {entry.name}")

                key_hash = entry.name[len(SSH_KEY_PREFIX):]
                for associated in (entry.with_name(f"{entry.name}.pub"), self.ssh_dir / f"config-{key_hash}"):
                    if associated.exists():
                        associated.unlink()
                        result.cleaned += 1
            except OSError as e:
                self.logger.error(f"Failed to clean SSH key {entry.name}: {e}")
                result.errors.append(f"{entry.name}: {e}")

        return result

    def perform_cleanup(self, clean_temp: bool = True, clean_repos: bool = True,
                        clean_ssh_keys: bool = True, force: bool = False) -> Dict[str, Any]:
        """
        Run the selected cleanup passes.

        Args:
            clean_temp: Remove old scratch entries
            clean_repos: Remove old working copies
            clean_ssh_keys: Remove old SSH key material
            force: Ignore retention windows

        Returns:
            Per-category results and the total bytes freed
        """
        self.logger.info("Starting cleanup operation")

        temp = self.cleanup_temp_files(force) if clean_temp else CleanupResult()
        repos = self.cleanup_old_repositories(force) if clean_repos else CleanupResult()
        keys = self.cleanup_old_ssh_keys(force) if clean_ssh_keys else CleanupResult()

        results = {
            'temp_files': temp.to_dict(),
            'old_repos': repos.to_dict(),
            'ssh_keys': keys.to_dict(),
            'total_freed': temp.freed + repos.freed,
            'success': not (temp.errors or repos.errors or keys.errors),
        }
        self.logger.info(
            f"Cleanup completed: {temp.cleaned + repos.cleaned + keys.cleaned} entries, "
            f"{format_size(results['total_freed'])} freed"
        )
        return results

    def stats(self) -> Dict[str, Any]:
        stats = {
            'repos_dir': {'path': str(self.repos_dir), 'size': 0, 'file_count': 0, 'old_file_count': 0},
            'ssh_dir': {'path': str(self.ssh_dir), 'key_count': 0, 'old_key_count': 0},
            'total_size': 0,
        }

        for entry in self._entries(self.repos_dir):
            try:
                age = self._age(entry)
            except OSError:
                continue
            stats['repos_dir']['size'] += directory_size(entry)
            stats['repos_dir']['file_count'] += 1
            if age > TEMP_FILE_AGE:
                stats['repos_dir']['old_file_count'] += 1

        for entry in self._entries(self.ssh_dir):
            if not entry.name.startswith(SSH_KEY_PREFIX) or entry.name.endswith('.pub'):
                continue
            stats['ssh_dir']['key_count'] += 1
            try:
                if self._age(entry) > SSH_KEY_AGE:
                    stats['ssh_dir']['old_key_count'] += 1
            except OSError:
                continue

        stats['total_size'] = stats['repos_dir']['size']
        return stats

    def is_cleanup_needed(self, stats: Optional[Dict[str, Any]] = None) -> bool:
        stats = stats or self.stats()
        return (
            stats['total_size'] > MAX_TEMP_SIZE
            or stats['repos_dir']['old_file_count'] > MAX_OLD_ENTRIES
            or stats['ssh_dir']['old_key_count'] > MAX_OLD_KEYS
        )
