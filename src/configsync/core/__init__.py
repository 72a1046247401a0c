"""
Core modules for configsync.

This package contains the command runner, authentication, repository
operations, sync status and conflict handling, configuration merging
and the scheduler.
"""

from .auth import AuthHandle, AuthProvider
from .cleanup import CleanupManager
from .conflict import ConflictResolver
from .connection import ConnectionTester, ConnectionTestResult
from .documents import WorkspaceStore
from .errors import ClassifiedError, ConfigSyncError, ErrorKind, GitCommandError, classify_error
from .events import EventBus, NetworkState
from .merger import ConfigMerger, EnvironmentMergeMode, MergeReport
from .models import ConfigDocument, SyncResult, SyncState, SyncStatus, Workspace
from .progress import ProgressSink, StepStatus
from .repository import RepositoryOperations
from .runner import CommandRunner, CommandResult
from .scheduler import SyncScheduler
from .settings import EngineSettings, load_settings
from .sparse import SparseCheckoutManager
from .status import SyncStatusResolver
from .sync import GitSyncService

__all__ = [
    'AuthHandle',
    'AuthProvider',
    'CleanupManager',
    'ConflictResolver',
    'ConnectionTester',
    'ConnectionTestResult',
    'WorkspaceStore',
    'ClassifiedError',
    'ConfigSyncError',
    'ErrorKind',
    'GitCommandError',
    'classify_error',
    'EventBus',
    'NetworkState',
    'ConfigMerger',
    'EnvironmentMergeMode',
    'MergeReport',
    'ConfigDocument',
    'SyncResult',
    'SyncState',
    'SyncStatus',
    'Workspace',
    'ProgressSink',
    'StepStatus',
    'RepositoryOperations',
    'CommandRunner',
    'CommandResult',
    'SyncScheduler',
    'EngineSettings',
    'load_settings',
    'SparseCheckoutManager',
    'SyncStatusResolver',
    'GitSyncService',
]
