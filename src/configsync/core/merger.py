#!/usr/bin/env python3
"""
Configuration merging for configsync.

This module integrates a configuration snapshot pulled from the repository
into local storage. Sources keep their local runtime state, rules and proxy
rules are replaced, and environment variables are merged under a data-loss
guard: remote blanks never erase local values, a snapshot that would leave
no values at all is refused, and heavy losses are preceded by a backup.
"""

import copy
from enum import Enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .documents import ENVIRONMENTS_FILE, WorkspaceStore
from .models import ConfigDocument
from ..utils.fileio import MAX_BACKUPS, create_backup, prune_backups
from ..utils.logger import get_logger

BLOCK_LOSS_PERCENTAGE = 100
BACKUP_LOSS_PERCENTAGE = 50

# Source fields owned by the local runtime, never taken from the remote
PRESERVED_SOURCE_DEFAULTS = {
    'sourceContent': '',
    'originalResponse': '{}',
    'missingDependencies': [],
}


class EnvironmentMergeMode(Enum):
    """How remote environment values are applied."""
    MERGE = "merge"
    REPLACE = "replace"


@dataclass
class WriteValidation:
    safe: bool
    loss_percentage: int
    should_backup: bool
    should_block: bool


@dataclass
class MergeReport:
    """What one merge wrote, skipped or refused."""
    sources_written: bool = False
    rules_written: bool = False
    proxy_rules_written: bool = False
    environments_written: bool = False
    environments_blocked: bool = False
    environments_skipped: bool = False
    environment_structure_changed: bool = False
    loss_percentage: int = 0
    backup_path: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return sum([
            self.sources_written,
            self.rules_written,
            self.proxy_rules_written,
            self.environments_written,
        ])


def is_empty_value(value: Any) -> bool:
    return value is None or value == ''


def extract_var(var_data: Any) -> Tuple[Any, bool]:
    """Value and secret flag from either ``"value"`` or ``{"value", "isSecret"}``."""
    if isinstance(var_data, dict):
        return var_data.get('value', ''), bool(var_data.get('isSecret', False))
    if var_data is None:
        return '', False
    return var_data, False


def count_non_empty(environments: Optional[Dict[str, Any]]) -> int:
    """Number of variables with a non-empty value across all environments."""
    count = 0
    if not isinstance(environments, dict):
        return 0
    for variables in environments.values():
        if not isinstance(variables, dict):
            continue
        for var_data in variables.values():
            value, _ = extract_var(var_data)
            if not is_empty_value(value):
                count += 1
    return count


def validate_environment_write(existing_count: int, new_count: int) -> WriteValidation:
    """
    Judge a pending environments write by how many values it would lose.

    Args:
        existing_count: Non-empty values on disk
        new_count: Non-empty values after the write

    Returns:
        WriteValidation; a write leaving zero values is blocked
    """
    if existing_count == 0:
        return WriteValidation(True, 0, False, False)

    if new_count == 0:
        return WriteValidation(False, BLOCK_LOSS_PERCENTAGE, True, True)

    loss = existing_count - new_count
    # Half-up, so 50.5% counts as 51%
    loss_percentage = (loss * 200 + existing_count) // (2 * existing_count) if loss > 0 else 0
    return WriteValidation(
        safe=loss_percentage < BACKUP_LOSS_PERCENTAGE,
        loss_percentage=loss_percentage,
        should_backup=loss_percentage > BACKUP_LOSS_PERCENTAGE,
        should_block=False,
    )


def normalize_source(source: Dict[str, Any]) -> Dict[str, Any]:
    """Structural fields of a source; runtime state is ignored."""
    refresh = source.get('refreshOptions')
    if not isinstance(refresh, dict):
        refresh = {}
    return {
        'sourceId': source.get('sourceId'),
        'sourceType': source.get('sourceType'),
        'sourcePath': source.get('sourcePath'),
        'sourceMethod': source.get('sourceMethod'),
        'sourceTag': source.get('sourceTag'),
        'requestOptions': source.get('requestOptions'),
        'jsonFilter': source.get('jsonFilter'),
        'refreshOptions': {
            'enabled': refresh.get('enabled'),
            'type': refresh.get('type'),
            'interval': refresh.get('interval'),
        },
    }


def merge_sources(remote: List[Dict[str, Any]], existing: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Remote sources carrying over the local runtime fields of matching ids."""
    by_id = {s['sourceId']: s for s in existing if isinstance(s, dict) and s.get('sourceId')}
    merged = []

    for remote_source in remote:
        # New sources get the runtime defaults so a re-import is a no-op
        local = by_id.get(remote_source.get('sourceId')) or {}

        source = dict(remote_source)
        for key, default in PRESERVED_SOURCE_DEFAULTS.items():
            source[key] = local.get(key) or copy.deepcopy(default)
        source['isFiltered'] = local.get('isFiltered')
        source['filteredWith'] = local.get('filteredWith')
        source['activationState'] = local.get('activationState') or remote_source.get('activationState')

        refresh = dict(remote_source.get('refreshOptions') or {})
        local_refresh = local.get('refreshOptions') or {}
        refresh['lastRefresh'] = local_refresh.get('lastRefresh')
        refresh['nextRefresh'] = local_refresh.get('nextRefresh')
        source['refreshOptions'] = refresh

        source['createdAt'] = local.get('createdAt') or remote_source.get('createdAt')
        source['updatedAt'] = local.get('updatedAt') or remote_source.get('updatedAt')
        merged.append(source)

    return merged


def environment_structure(environments: Optional[Dict[str, Any]]) -> Dict[str, List[str]]:
    """Environment name -> sorted variable names."""
    return {
        name: sorted((variables or {}).keys())
        for name, variables in (environments or {}).items()
        if isinstance(variables, dict) or variables is None
    }


def schema_structure(schema: Optional[Dict[str, Any]]) -> Dict[str, List[str]]:
    structure = {}
    for name, env_schema in ((schema or {}).get('environments') or {}).items():
        variables = (env_schema or {}).get('variables') or []
        structure[name] = sorted(v['name'] for v in variables if isinstance(v, dict) and v.get('name'))
    return structure


def _apply_values(result: Dict[str, Any], values: Dict[str, Any], mode: EnvironmentMergeMode):
    for env_name, variables in values.items():
        target = result.setdefault(env_name, {})
        if not isinstance(variables, dict):
            continue
        for var_name, var_data in variables.items():
            value, is_secret = extract_var(var_data)
            if not is_empty_value(value):
                target[var_name] = var_data if isinstance(var_data, dict) else {'value': value, 'isSecret': False}
            elif mode is EnvironmentMergeMode.REPLACE or target.get(var_name) in (None, ''):
                target[var_name] = {'value': '', 'isSecret': is_secret}


def _apply_schema(result: Dict[str, Any], schema: Dict[str, Any]):
    for env_name, env_schema in (schema.get('environments') or {}).items():
        target = result.setdefault(env_name, {})
        for var_def in (env_schema or {}).get('variables') or []:
            name = var_def.get('name') if isinstance(var_def, dict) else None
            if not name:
                continue
            if name not in target or target[name] is None or target[name] == '':
                target[name] = {'value': '', 'isSecret': bool(var_def.get('isSecret', False))}
                continue

            value, is_secret = extract_var(target[name])
            if 'isSecret' in var_def:
                is_secret = bool(var_def['isSecret'])
            target[name] = {'value': value, 'isSecret': is_secret}


def merge_environments(existing: Dict[str, Any], document: ConfigDocument,
                       mode: EnvironmentMergeMode = EnvironmentMergeMode.MERGE) -> Dict[str, Any]:
    """
    Merge remote environment data into a copy of the local environments.

    New schema variables are added empty, local-only variables are kept, and
    in MERGE mode an empty remote value never replaces a local one.
    """
    result = copy.deepcopy(existing or {})
    if document.environment_schema and (document.environment_schema.get('environments')):
        _apply_schema(result, document.environment_schema)
    if isinstance(document.environments, dict):
        _apply_values(result, document.environments, mode)
    return result


class ConfigMerger:
    """Writes a remote ConfigDocument into a WorkspaceStore."""

    def __init__(self, store: WorkspaceStore, max_backups: int = MAX_BACKUPS):
        self.logger = get_logger(f"{__name__}.ConfigMerger")
        self.store = store
        self.max_backups = max_backups

    def _existing_sources(self, workspace_id: str) -> Optional[List[Dict[str, Any]]]:
        try:
            return self.store.read_sources(workspace_id)
        except ValueError as e:
            self.logger.warning(f"Ignoring unreadable sources for workspace {workspace_id}: {e}")
            return None

    async def detect_changes(self, workspace_id: str, document: ConfigDocument) -> bool:
        """
        Whether ``document`` differs structurally from local storage.

        Runtime state (fetched content, refresh timestamps) and variable
        values are ignored; a missing or unreadable local file is a change.
        """
        try:
            existing_sources = self.store.read_sources(workspace_id)
            if existing_sources is None or \
                    [normalize_source(s) for s in existing_sources] != [normalize_source(s) for s in document.sources]:
                self.logger.info('Sources have changed')
                return True

            if self.store.read_rules(workspace_id) != document.rules:
                self.logger.info('Rules have changed')
                return True

            if self.store.read_proxy_rules(workspace_id) != document.proxy_rules:
                self.logger.info('Proxy rules have changed')
                return True

            if document.has_environment_data:
                stored = await self.store.read_environments(workspace_id)
                if stored is None:
                    return True
                existing = environment_structure(stored.get('environments'))
                if document.environments:
                    incoming = environment_structure(document.environments)
                else:
                    incoming = schema_structure(document.environment_schema)
                if existing != incoming:
                    self.logger.info('Environment structure has changed')
                    return True
        except (OSError, ValueError) as e:
            self.logger.error(f"Error checking for data changes: {e}")
            return True

        return False

    async def apply(
        self,
        workspace_id: str,
        document: ConfigDocument,
        mode: EnvironmentMergeMode = EnvironmentMergeMode.MERGE,
        force: bool = False,
    ) -> MergeReport:
        """
        Merge ``document`` into the workspace's local documents.

        Args:
            workspace_id: Target workspace
            document: Remote configuration snapshot
            mode: Environment merge mode
            force: Write environments even when the loss guard blocks it

        Returns:
            MergeReport; files whose merged content equals what is on disk
            are not rewritten
        """
        report = MergeReport()

        existing_sources = self._existing_sources(workspace_id)
        merged_sources = merge_sources(document.sources, existing_sources or [])
        if existing_sources is None or merged_sources != existing_sources:
            self.store.write_sources(workspace_id, merged_sources)
            report.sources_written = True
            self.logger.info(f"Imported {len(merged_sources)} sources for workspace {workspace_id}")

        if self.store.read_rules(workspace_id) != document.rules:
            self.store.write_rules(workspace_id, document.rules)
            report.rules_written = True
            self.logger.info(f"Imported rules for workspace {workspace_id}")

        if self.store.read_proxy_rules(workspace_id) != document.proxy_rules:
            self.store.write_proxy_rules(workspace_id, document.proxy_rules)
            report.proxy_rules_written = True
            self.logger.info(f"Imported {len(document.proxy_rules)} proxy rules for workspace {workspace_id}")

        if document.has_environment_data:
            await self._apply_environments(workspace_id, document, mode, force, report)

        return report

    async def _apply_environments(self, workspace_id: str, document: ConfigDocument,
                                  mode: EnvironmentMergeMode, force: bool, report: MergeReport):
        try:
            stored = await self.store.read_environments(workspace_id)
        except (OSError, ValueError) as e:
            message = f"Skipping environment merge, could not read local environments: {e}"
            self.logger.warning(message)
            report.environments_skipped = True
            report.warnings.append(message)
            return

        stored = stored or {}
        existing = stored.get('environments') or {}
        existing_active = stored.get('activeEnvironment')

        candidate = merge_environments(existing, document, mode)
        active = existing_active or next(iter(candidate), None) or 'Default'

        if stored and candidate == existing and active == existing_active:
            self.logger.debug('Environments unchanged')
            return

        validation = validate_environment_write(
            count_non_empty(existing),
            count_non_empty(candidate),
        )
        report.loss_percentage = validation.loss_percentage
        path = self.store.path(workspace_id, ENVIRONMENTS_FILE)

        if validation.should_block and not force:
            message = (
                f"Blocked environment update for workspace {workspace_id}: "
                f"it would remove all {count_non_empty(existing)} variable values"
            )
            self.logger.warning(message)
            report.environments_blocked = True
            report.warnings.append(message)
            return

        if validation.should_backup:
            try:
                report.backup_path = create_backup(path)
                prune_backups(path.parent, self.max_backups)
            except OSError as e:
                self.logger.warning(f"Failed to create backup of {path}: {e}")
            message = f"Environment update removes {validation.loss_percentage}% of variable values"
            self.logger.warning(message)
            report.warnings.append(message)

        self.store.write_environments(workspace_id, candidate, active)
        report.environments_written = True
        report.environment_structure_changed = environment_structure(existing) != environment_structure(candidate)
        self.logger.info(f"Imported {len(candidate)} environments for workspace {workspace_id}")
