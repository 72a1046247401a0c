"""
configsync - Git-backed configuration synchronization

This package keeps a local workspace's configuration documents consistent
with a shared Git repository: it resolves divergence, merges remote
configuration without losing local secrets, and schedules syncs.
"""

__version__ = "1.0.0"
__author__ = "configsync developers"
__description__ = "Git-backed configuration synchronization engine"

from .core.errors import ConfigSyncError, ErrorKind, classify_error
from .core.models import ConfigDocument, SyncResult, SyncState, SyncStatus, Workspace
from .core.settings import EngineSettings, load_settings
from .core.sync import GitSyncService
from .core.scheduler import SyncScheduler
from .utils.logger import get_logger

# Version info
VERSION = __version__
VERSION_INFO = tuple(map(int, __version__.split('.')))

__all__ = [
    'ConfigSyncError',
    'ErrorKind',
    'classify_error',
    'ConfigDocument',
    'SyncResult',
    'SyncState',
    'SyncStatus',
    'Workspace',
    'EngineSettings',
    'load_settings',
    'GitSyncService',
    'SyncScheduler',
    'get_logger',
    'VERSION',
    'VERSION_INFO',
]
