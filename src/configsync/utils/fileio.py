#!/usr/bin/env python3
"""
File helpers for configsync.

Configuration documents are read by the surrounding application while the
engine writes them, so every write goes to a temporary file in the same
directory and is moved into place with ``os.replace``.
"""

import os
import json
import shutil
import asyncio
import tempfile
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from .logger import get_logger

logger = get_logger(__name__)

READ_MAX_RETRIES = 3
READ_RETRY_DELAY = 0.5  # seconds, multiplied by the attempt number
MAX_BACKUPS = 3
BACKUP_MARKER = '.backup-'


def dump_json(data: Any) -> str:
    """Serialize a document the way it is stored on disk."""
    return json.dumps(data, indent=2, ensure_ascii=False) + '\n'


def atomic_write_text(path: Union[str, Path], content: str):
    """Write text atomically: temp file in the target dir, fsync, replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: Union[str, Path], data: Any):
    atomic_write_text(path, dump_json(data))


def read_json(path: Union[str, Path], default: Any = None) -> Any:
    """Read a JSON document, returning ``default`` when the file is absent."""
    try:
        with open(path, 'r', encoding='utf-8') as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default


async def read_text_with_retry(
    path: Union[str, Path],
    max_retries: int = READ_MAX_RETRIES,
    retry_delay: float = READ_RETRY_DELAY
) -> Optional[str]:
    """Read a file that may be mid-write by another operation.

    Returns None when the file does not exist. Transient errors are retried
    with a linear backoff; the last error is raised once retries run out.

    Args:
        path: File to read
        max_retries: Total number of attempts
        retry_delay: Base delay in seconds, multiplied by the attempt number

    Returns:
        File content, or None if the file is missing
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_retries + 1):
        try:
            with open(path, 'r', encoding='utf-8') as fh:
                return fh.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            last_error = e
            if attempt < max_retries:
                logger.warning(f"Retry {attempt}/{max_retries} reading {path}: {e}")
                await asyncio.sleep(retry_delay * attempt)

    raise last_error


def backup_timestamp(now: Optional[datetime] = None) -> str:
    """ISO timestamp safe for file names (':' and '.' become '-')."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
    return stamp.replace(':', '-').replace('.', '-')


def create_backup(path: Union[str, Path], now: Optional[datetime] = None) -> Optional[Path]:
    """Copy ``path`` next to itself with a timestamped suffix."""
    path = Path(path)
    if not path.exists():
        return None

    backup_path = path.with_name(f"{path.name}{BACKUP_MARKER}{backup_timestamp(now)}")
    shutil.copy2(path, backup_path)
    logger.info(f"Created backup: {backup_path}")
    return backup_path


def prune_backups(directory: Union[str, Path], max_backups: int = MAX_BACKUPS) -> List[Path]:
    """Keep only the newest ``max_backups`` backups per original file."""
    directory = Path(directory)
    groups = {}
    for entry in directory.iterdir():
        if BACKUP_MARKER in entry.name:
            base_name = entry.name.split(BACKUP_MARKER)[0]
            groups.setdefault(base_name, []).append(entry)

    removed = []
    for backups in groups.values():
        # Timestamps sort lexically; newest first
        backups.sort(key=lambda p: p.name, reverse=True)
        for stale in backups[max_backups:]:
            try:
                stale.unlink()
                removed.append(stale)
                logger.debug(f"Deleted old backup: {stale.name}")
            except OSError as e:
                logger.debug(f"Could not delete old backup {stale.name}: {e}")

    return removed
