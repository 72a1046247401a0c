#!/usr/bin/env python3
"""
Tests for local document storage and file helpers.
"""

import json
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from configsync.core.documents import WorkspaceStore, RULES_VERSION
from configsync.core.models import SyncState, SyncStatus
from configsync.utils.fileio import (
    BACKUP_MARKER,
    atomic_write_json,
    create_backup,
    prune_backups,
    read_text_with_retry,
)


class TestAtomicWrites:
    """Test file helpers."""

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        """Test that only the target file remains after a write."""
        target = tmp_path / 'nested' / 'doc.json'
        atomic_write_json(target, {'a': 1})
        assert json.loads(target.read_text()) == {'a': 1}
        assert [p.name for p in target.parent.iterdir()] == ['doc.json']

    def test_create_backup(self, tmp_path):
        """Test that backups copy the file next to the original."""
        target = tmp_path / 'environments.json'
        target.write_text('{}')
        backup = create_backup(target)
        assert backup.parent == tmp_path
        assert BACKUP_MARKER in backup.name
        assert backup.read_text() == '{}'

    def test_create_backup_missing_file(self, tmp_path):
        """Test that a missing file produces no backup."""
        assert create_backup(tmp_path / 'missing.json') is None

    def test_prune_backups_keeps_newest(self, tmp_path):
        """Test that only the newest backups per file are kept."""
        target = tmp_path / 'environments.json'
        target.write_text('{}')
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        backups = [create_backup(target, start + timedelta(minutes=i)) for i in range(5)]

        removed = prune_backups(tmp_path, max_backups=3)

        assert sorted(removed) == sorted(backups[:2])
        assert all(b.exists() for b in backups[2:])
        assert target.exists()


class TestReadWithRetry:
    """Test retrying reads."""

    @pytest.mark.asyncio
    async def test_missing_file_returns_none(self, tmp_path):
        """Test that a missing file is not an error."""
        assert await read_text_with_retry(tmp_path / 'none.json', retry_delay=0) is None

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, tmp_path):
        """Test that a transient OSError is retried."""
        target = tmp_path / 'doc.json'
        target.write_text('content')
        real_open = open
        attempts = []

        def flaky_open(*args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError('resource busy')
            return real_open(*args, **kwargs)

        with patch('builtins.open', side_effect=flaky_open):
            content = await read_text_with_retry(target, max_retries=3, retry_delay=0)

        assert content == 'content'
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_persistent_error_is_raised(self, tmp_path):
        """Test that the last error is raised when retries run out."""
        with patch('builtins.open', side_effect=OSError('busy')):
            with pytest.raises(OSError):
                await read_text_with_retry(tmp_path / 'doc.json', max_retries=2, retry_delay=0)


class TestWorkspaceStore:
    """Test per-workspace documents."""

    def test_sources_round_trip(self, store):
        """Test writing and reading sources."""
        assert store.read_sources('ws1') is None
        store.write_sources('ws1', [{'id': 's1', 'sourceName': 'API'}])
        assert store.read_sources('ws1') == [{'id': 's1', 'sourceName': 'API'}]

    def test_rules_envelope(self, store):
        """Test that rules are stored with version and metadata."""
        store.write_rules('ws1', {'header': [{'id': 'r1'}, {'id': 'r2'}], 'payload': []})
        raw = json.loads(store.path('ws1', 'rules.json').read_text())
        assert raw['version'] == RULES_VERSION
        assert raw['metadata']['totalRules'] == 2
        assert store.read_rules('ws1') == {'header': [{'id': 'r1'}, {'id': 'r2'}], 'payload': []}

    @pytest.mark.parametrize("filename,content,reader", [
        ('rules.json', [], 'read_rules'),
        ('sources.json', {'sourceId': 1}, 'read_sources'),
        ('proxy-rules.json', {'id': 'p1'}, 'read_proxy_rules'),
    ])
    def test_wrong_top_level_rejected(self, store, filename, content, reader):
        """Test that a stored document of the wrong shape raises ValueError."""
        path = store.path('ws1', filename)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps(content))

        with pytest.raises(ValueError, match='must contain a JSON'):
            getattr(store, reader)('ws1')

    def test_environments(self, store):
        """Test environments document with active environment."""
        store.write_environments('ws1', {'Default': {}}, 'Default')
        document = asyncio.run(store.read_environments('ws1'))
        assert document == {'environments': {'Default': {}}, 'activeEnvironment': 'Default'}

    def test_sync_state_excludes_credentials(self, store, git_workspace):
        """Test that persisted metadata never contains auth data."""
        git_workspace.auth_data = {'token': 'secret'}
        store.save_sync_state(git_workspace, SyncState(status=SyncStatus.UP_TO_DATE, local_commit='abc'))

        raw = store.path('ws1', 'workspace.json').read_text()
        assert 'secret' not in raw
        state = store.load_sync_state('ws1')
        assert state.status == SyncStatus.UP_TO_DATE
        assert state.local_commit == 'abc'

    def test_delete(self, store):
        """Test removing a workspace's documents."""
        store.write_sources('ws1', [])
        store.delete('ws1')
        assert not store.workspace_dir('ws1').exists()
        assert store.load_sync_state('ws1') is None
