#!/usr/bin/env python3
"""
Platform detection and OS-specific locations for configsync.

This module resolves where settings, workspace documents and working copies
live on each operating system, and where a Git executable can be found.
"""

import os
import shutil
import platform
from pathlib import Path
from typing import List, Optional
from enum import Enum

APP_NAME = 'configsync'

# Checked in order after PATH lookup fails
COMMON_GIT_PATHS = [
    '/usr/bin/git',
    '/usr/local/bin/git',
    '/opt/homebrew/bin/git',  # Apple Silicon Macs
    '/opt/local/bin/git',  # MacPorts
    'C:\\Program Files\\Git\\cmd\\git.exe',
    'C:\\Program Files (x86)\\Git\\cmd\\git.exe',
]


class OSType(Enum):
    """Supported operating system types."""
    LINUX = "linux"
    MACOS = "darwin"
    WINDOWS = "windows"
    UNKNOWN = "unknown"


def detect_os() -> OSType:
    """Detect the current operating system."""
    system = platform.system().lower()

    if system == "linux":
        return OSType.LINUX
    elif system == "darwin":
        return OSType.MACOS
    elif system == "windows":
        return OSType.WINDOWS
    else:
        return OSType.UNKNOWN


def _user_config_root(os_type: OSType) -> Path:
    home = Path.home()

    if os_type == OSType.MACOS:
        return home / 'Library' / 'Application Support'
    if os_type == OSType.WINDOWS:
        return Path(os.environ.get('APPDATA', str(home / 'AppData' / 'Roaming')))
    return Path(os.environ.get('XDG_CONFIG_HOME', str(home / '.config')))


def get_config_dir(os_type: Optional[OSType] = None) -> Path:
    """Directory holding settings and logs."""
    return _user_config_root(os_type or detect_os()) / APP_NAME


def get_data_dir(os_type: Optional[OSType] = None) -> Path:
    """Directory holding per-workspace documents, working copies and keys.

    Linux follows XDG and keeps data apart from configuration; the other
    platforms keep everything under the application support folder.
    """
    os_type = os_type or detect_os()
    if os_type == OSType.LINUX:
        data_home = os.environ.get('XDG_DATA_HOME', str(Path.home() / '.local' / 'share'))
        return Path(data_home) / APP_NAME
    return get_config_dir(os_type)


def find_git_executable(extra_paths: Optional[List[str]] = None) -> Optional[str]:
    """Locate a git binary on PATH or in the usual install locations."""
    on_path = shutil.which('git')
    if on_path:
        return on_path

    for candidate in list(extra_paths or []) + COMMON_GIT_PATHS:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate

    return None
