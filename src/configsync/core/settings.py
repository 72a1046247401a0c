#!/usr/bin/env python3
"""
Engine settings for configsync.

Settings live in a YAML (``.yaml``/``.yml``) or TOML (``.toml``) file in
the user configuration directory. A missing file means defaults; a file
that cannot be parsed is an error rather than a silent reset.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml
import yaml

from .errors import SettingsError
from .models import Workspace
from ..utils.logger import get_logger
from ..utils.platform import get_config_dir, get_data_dir

DEFAULT_SETTINGS_FILE = 'settings.yaml'

DEFAULT_SYNC_INTERVAL = 60 * 60
DEFAULT_CLONE_DEPTH = 10
DEFAULT_NETWORK_STABILIZATION_DELAY = 3.0
DEFAULT_NEW_BRANCH_PROPAGATION_DELAY = 5.0

logger = get_logger(__name__)


def default_settings_path() -> Path:
    return get_config_dir() / DEFAULT_SETTINGS_FILE


@dataclass
class EngineSettings:
    """Directories, timing and workspaces known to the engine."""
    data_dir: Path = field(default_factory=get_data_dir)
    repos_dir: Optional[Path] = None
    ssh_dir: Optional[Path] = None
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    default_branch: str = 'main'
    default_config_path: str = 'config/'
    clone_depth: int = DEFAULT_CLONE_DEPTH
    network_stabilization_delay: float = DEFAULT_NETWORK_STABILIZATION_DELAY
    new_branch_propagation_delay: float = DEFAULT_NEW_BRANCH_PROPAGATION_DELAY
    log_level: str = 'INFO'
    workspaces: List[Workspace] = field(default_factory=list)
    path: Optional[Path] = None

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()
        self.repos_dir = Path(self.repos_dir).expanduser() if self.repos_dir else self.data_dir / 'repos'
        self.ssh_dir = Path(self.ssh_dir).expanduser() if self.ssh_dir else self.data_dir / 'ssh'

    def workspace(self, workspace_id: str) -> Optional[Workspace]:
        for workspace in self.workspaces:
            if workspace.id == str(workspace_id):
                return workspace
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[Path] = None) -> 'EngineSettings':
        data = dict(data or {})
        default_branch = data.get('default_branch', 'main')
        default_config_path = data.get('default_config_path', 'config/')

        raw_workspaces = data.pop('workspaces', None) or []
        if not isinstance(raw_workspaces, list):
            raise SettingsError("'workspaces' must be a list")

        known = set(cls.__dataclass_fields__) - {'workspaces', 'path'}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(unknown)}")

        try:
            workspaces = [
                Workspace.from_dict(item, default_branch, default_config_path)
                for item in raw_workspaces
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise SettingsError(f"Invalid workspace entry: {e}") from e

        kwargs = {key: value for key, value in data.items() if key in known}
        return cls(workspaces=workspaces, path=path, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data_dir': str(self.data_dir),
            'repos_dir': str(self.repos_dir),
            'ssh_dir': str(self.ssh_dir),
            'sync_interval': self.sync_interval,
            'default_branch': self.default_branch,
            'default_config_path': self.default_config_path,
            'clone_depth': self.clone_depth,
            'network_stabilization_delay': self.network_stabilization_delay,
            'new_branch_propagation_delay': self.new_branch_propagation_delay,
            'log_level': self.log_level,
            'workspaces': [workspace.to_dict() for workspace in self.workspaces],
        }

    def save(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Write the settings back in the format implied by the file extension."""
        target = Path(path) if path else (self.path or default_settings_path())
        target.parent.mkdir(parents=True, exist_ok=True)

        with open(target, 'w', encoding='utf-8') as f:
            if target.suffix == '.toml':
                toml.dump(self.to_dict(), f)
            else:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

        self.path = target
        logger.debug(f"Saved settings to {target}")
        return target


def load_settings(path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """
    Load settings from ``path`` or the default location.

    Raises:
        SettingsError: If the file exists but cannot be parsed
    """
    target = Path(path).expanduser() if path else default_settings_path()
    if not target.exists():
        logger.debug(f"No settings file at {target}, using defaults")
        return EngineSettings(path=target)

    try:
        with open(target, 'r', encoding='utf-8') as f:
            if target.suffix == '.toml':
                data = toml.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, toml.TomlDecodeError) as e:
        raise SettingsError(f"Failed to parse settings file {target}: {e}") from e
    except OSError as e:
        raise SettingsError(f"Failed to read settings file {target}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SettingsError(f"Settings file {target} must contain a mapping")

    logger.debug(f"Loaded settings from {target}")
    return EngineSettings.from_dict(data, path=target)
