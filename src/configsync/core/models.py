#!/usr/bin/env python3
"""
Data model for configsync.

Workspaces come from the surrounding application (camelCase JSON) or from
the settings file (snake_case YAML/TOML); both spellings are accepted.
"""

from enum import Enum
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .errors import ClassifiedError

SYNCABLE_KINDS = ('git', 'team')


class SyncStatus(Enum):
    """Relationship between local HEAD and the remote branch."""
    UP_TO_DATE = "up_to_date"
    NEEDS_PULL = "needs_pull"
    NEEDS_PUSH = "needs_push"
    CONFLICT = "conflict"
    ERROR = "error"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class Workspace:
    """A workspace descriptor; only ``auto_sync`` is ever changed by the engine."""
    id: str
    name: str
    kind: str = 'personal'
    repository_url: Optional[str] = None
    branch: str = 'main'
    config_path: str = 'config/'
    auth_type: str = 'none'
    auth_data: Dict[str, Any] = field(default_factory=dict)
    auto_sync: bool = True

    @property
    def is_syncable(self) -> bool:
        return self.kind in SYNCABLE_KINDS and bool(self.repository_url)

    @property
    def schedules_auto_sync(self) -> bool:
        return self.kind in SYNCABLE_KINDS and self.auto_sync is not False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_branch: str = 'main',
                  default_config_path: str = 'config/') -> 'Workspace':
        return cls(
            id=str(data['id']),
            name=_pick(data, 'name', default=str(data['id'])),
            kind=_pick(data, 'kind', 'type', default='personal'),
            repository_url=_pick(data, 'repository_url', 'gitUrl', 'url'),
            branch=_pick(data, 'branch', 'gitBranch', default=default_branch),
            config_path=_pick(data, 'config_path', 'gitPath', default=default_config_path),
            auth_type=_pick(data, 'auth_type', 'authType', default='none'),
            auth_data=dict(_pick(data, 'auth_data', 'authData', default={})),
            auto_sync=_pick(data, 'auto_sync', 'autoSync', default=True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncState:
    """Result of the last status resolution for a workspace."""
    status: SyncStatus
    local_commit: Optional[str] = None
    remote_commit: Optional[str] = None
    ahead: int = 0
    behind: int = 0
    last_sync: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncState':
        return cls(
            status=SyncStatus(data.get('status', SyncStatus.ERROR.value)),
            local_commit=data.get('local_commit'),
            remote_commit=data.get('remote_commit'),
            ahead=int(data.get('ahead') or 0),
            behind=int(data.get('behind') or 0),
            last_sync=data.get('last_sync'),
            last_error=data.get('last_error'),
        )


@dataclass
class ConfigDocument:
    """Configuration snapshot read from a repository or local storage."""
    sources: List[Dict[str, Any]] = field(default_factory=list)
    rules: Dict[str, Any] = field(default_factory=dict)
    proxy_rules: List[Dict[str, Any]] = field(default_factory=list)
    environment_schema: Optional[Dict[str, Any]] = None
    environments: Optional[Dict[str, Any]] = None

    @property
    def has_environment_data(self) -> bool:
        return bool(self.environments) or bool((self.environment_schema or {}).get('environments'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfigDocument':
        return cls(
            sources=list(data.get('sources') or []),
            rules=dict(data.get('rules') or {}),
            proxy_rules=list(data.get('proxyRules') or []),
            environment_schema=data.get('environmentSchema'),
            environments=data.get('environments'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'sources': self.sources,
            'rules': self.rules,
            'proxyRules': self.proxy_rules,
        }
        if self.environment_schema is not None:
            data['environmentSchema'] = self.environment_schema
        if self.environments is not None:
            data['environments'] = self.environments
        return data


@dataclass
class CommitInfo:
    hash: str
    author: str
    email: str
    date: Optional[datetime]
    message: str


@dataclass
class RepositoryStatus:
    """Working-copy status as reported by ``RepositoryOperations.status``."""
    branch: str
    changes: Dict[str, List[str]]
    last_commit: Optional[CommitInfo] = None

    @property
    def has_changes(self) -> bool:
        return any(self.changes.values())


@dataclass
class SyncResult:
    """Outcome of one sync attempt."""
    success: bool
    status: SyncStatus
    message: str = ''
    changes: bool = False
    pulled: int = 0
    pushed: int = 0
    resolved: bool = False
    requires_manual_resolution: bool = False
    local_changes_committed: bool = False
    data: Optional[ConfigDocument] = None
    config_errors: List[str] = field(default_factory=list)
    state: Optional[SyncState] = None
    error: Optional[ClassifiedError] = None
    commit_hash: Optional[str] = None
