#!/usr/bin/env python3
"""
Local configuration storage for configsync.

Each workspace owns a directory of JSON documents that the surrounding
application reads at any time:

    <data_dir>/workspaces/<id>/
        sources.json
        rules.json
        proxy-rules.json
        environments.json
        workspace.json

All writes are atomic, so a reader never sees a partial document.
"""

import json
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import SyncState, Workspace, utc_now_iso
from ..utils.fileio import (
    READ_MAX_RETRIES, READ_RETRY_DELAY, atomic_write_json, read_json, read_text_with_retry,
)
from ..utils.logger import get_logger

SOURCES_FILE = 'sources.json'
RULES_FILE = 'rules.json'
PROXY_RULES_FILE = 'proxy-rules.json'
ENVIRONMENTS_FILE = 'environments.json'
WORKSPACE_FILE = 'workspace.json'

RULES_VERSION = '3.0.0'


def count_rules(rules: Dict[str, Any]) -> int:
    return sum(len(items) for items in rules.values() if isinstance(items, list))


class WorkspaceStore:
    """Reads and atomically writes the per-workspace documents."""

    def __init__(self, data_dir, read_retries: int = READ_MAX_RETRIES,
                 read_retry_delay: float = READ_RETRY_DELAY):
        self.logger = get_logger(f"{__name__}.WorkspaceStore")
        self.data_dir = Path(data_dir)
        self.read_retries = read_retries
        self.read_retry_delay = read_retry_delay

    def workspace_dir(self, workspace_id: str) -> Path:
        return self.data_dir / 'workspaces' / str(workspace_id)

    def path(self, workspace_id: str, filename: str) -> Path:
        return self.workspace_dir(workspace_id) / filename

    def _read_document(self, workspace_id: str, filename: str, expected: type):
        path = self.path(workspace_id, filename)
        stored = read_json(path)
        if stored is not None and not isinstance(stored, expected):
            raise ValueError(f"{path} must contain a JSON {'object' if expected is dict else 'array'}")
        return stored

    # Sources

    def read_sources(self, workspace_id: str) -> Optional[List[Dict[str, Any]]]:
        return self._read_document(workspace_id, SOURCES_FILE, list)

    def write_sources(self, workspace_id: str, sources: List[Dict[str, Any]]):
        atomic_write_json(self.path(workspace_id, SOURCES_FILE), sources)

    # Rules

    def read_rules(self, workspace_id: str) -> Optional[Dict[str, Any]]:
        """The stored rules mapping (without the storage envelope)."""
        stored = self._read_document(workspace_id, RULES_FILE, dict)
        if stored is None:
            return None
        return stored.get('rules', {})

    def write_rules(self, workspace_id: str, rules: Dict[str, Any]):
        storage = {
            'version': RULES_VERSION,
            'rules': rules,
            'metadata': {
                'lastUpdated': utc_now_iso(),
                'totalRules': count_rules(rules),
            },
        }
        atomic_write_json(self.path(workspace_id, RULES_FILE), storage)

    # Proxy rules

    def read_proxy_rules(self, workspace_id: str) -> Optional[List[Dict[str, Any]]]:
        return self._read_document(workspace_id, PROXY_RULES_FILE, list)

    def write_proxy_rules(self, workspace_id: str, proxy_rules: List[Dict[str, Any]]):
        atomic_write_json(self.path(workspace_id, PROXY_RULES_FILE), proxy_rules)

    # Environments

    async def read_environments(self, workspace_id: str) -> Optional[Dict[str, Any]]:
        """
        Read environments.json, retrying transient I/O errors.

        Returns:
            The stored document, or None if the file does not exist

        Raises:
            OSError: When every attempt failed
            ValueError: When the file is not valid JSON
        """
        content = await read_text_with_retry(
            self.path(workspace_id, ENVIRONMENTS_FILE),
            max_retries=self.read_retries,
            retry_delay=self.read_retry_delay,
        )
        if content is None:
            return None
        return json.loads(content)

    def write_environments(self, workspace_id: str, environments: Dict[str, Any], active: str):
        document = {'environments': environments, 'activeEnvironment': active}
        atomic_write_json(self.path(workspace_id, ENVIRONMENTS_FILE), document)

    # Workspace metadata and sync state

    def read_metadata(self, workspace_id: str) -> Dict[str, Any]:
        return read_json(self.path(workspace_id, WORKSPACE_FILE), default={})

    def save_sync_state(self, workspace: Workspace, state: SyncState):
        """Persist the workspace descriptor (without credentials) and its last state."""
        descriptor = workspace.to_dict()
        descriptor.pop('auth_data', None)
        metadata = {'workspace': descriptor, 'syncState': state.to_dict()}
        atomic_write_json(self.path(workspace.id, WORKSPACE_FILE), metadata)

    def load_sync_state(self, workspace_id: str) -> Optional[SyncState]:
        data = self.read_metadata(workspace_id).get('syncState')
        if not data:
            return None
        return SyncState.from_dict(data)

    def delete(self, workspace_id: str):
        directory = self.workspace_dir(workspace_id)
        if directory.exists():
            shutil.rmtree(directory)
            self.logger.info(f"Removed local documents for workspace {workspace_id}")
