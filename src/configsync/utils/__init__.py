"""
Utility modules for configsync.

Logging, platform directories and atomic file I/O used throughout the
package.
"""

from .logger import get_logger, setup_logging
from .platform import detect_os, find_git_executable, get_config_dir, get_data_dir

__all__ = [
    'get_logger',
    'setup_logging',
    'detect_os',
    'find_git_executable',
    'get_config_dir',
    'get_data_dir',
]
