#!/usr/bin/env python3
"""
Shared fixtures for configsync tests.
"""

from typing import Any, Callable, Dict, List, Sequence, Tuple, Union

import pytest

from configsync.core.errors import GitCommandError
from configsync.core.runner import CommandResult, GitStatus
from configsync.core.settings import EngineSettings
from configsync.core.documents import WorkspaceStore
from configsync.core.models import Workspace

Response = Union[str, CommandResult, BaseException, Callable[[List[str]], Any]]


def git_failure(stderr: str, args: Sequence[str] = ()) -> GitCommandError:
    """Build the error CommandRunner raises for a non-zero exit."""
    return GitCommandError(
        f"Command failed: git {' '.join(args)}\n{stderr}",
        command=list(args),
        exit_code=128,
        stderr=stderr,
    )


class FakeRunner:
    """
    Stand-in for CommandRunner.

    Responses are matched against the argument list by prefix; the longest
    matching prefix wins. A list of responses is consumed in order, with the
    last one repeating.
    """

    def __init__(self, responses: Dict[Tuple[str, ...], Any] = None, installed: bool = True):
        self.responses: Dict[Tuple[str, ...], Any] = dict(responses or {})
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.installed = installed

    def on(self, *prefix: str, response: Any = ''):
        self.responses[tuple(prefix)] = response
        return self

    def _lookup(self, argv: List[str]) -> Any:
        best = None
        for prefix in self.responses:
            if tuple(argv[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return ''
        response = self.responses[best]
        if isinstance(response, list):
            return response.pop(0) if len(response) > 1 else response[0]
        return response

    async def run(self, args, cwd=None, env=None, timeout=None, max_output_bytes=None) -> CommandResult:
        argv = [str(a) for a in (args.split() if isinstance(args, str) else args)]
        if argv and argv[0] == 'git':
            argv = argv[1:]
        self.calls.append(argv)
        self.envs.append(dict(env or {}))

        response = self._lookup(argv)
        if callable(response) and not isinstance(response, BaseException):
            response = response(argv)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, CommandResult):
            return response
        return CommandResult(stdout=str(response or ''))

    async def git_status(self) -> GitStatus:
        if not self.installed:
            return GitStatus(is_installed=False)
        return GitStatus(is_installed=True, path='git', version='git version 2.43.0')

    def commands(self, name: str) -> List[List[str]]:
        """Calls whose first argument is ``name``."""
        return [call for call in self.calls if call and call[0] == name]

    def called(self, *prefix: str) -> bool:
        return any(tuple(call[:len(prefix)]) == prefix for call in self.calls)


@pytest.fixture
def runner():
    """Create a FakeRunner with no canned responses."""
    return FakeRunner()


@pytest.fixture
def settings(tmp_path):
    """Create engine settings rooted in a temporary directory."""
    return EngineSettings(
        data_dir=tmp_path / 'data',
        network_stabilization_delay=0,
        new_branch_propagation_delay=0,
    )


@pytest.fixture
def store(tmp_path):
    """Create a WorkspaceStore in a temporary directory."""
    return WorkspaceStore(tmp_path / 'data', read_retry_delay=0)


@pytest.fixture
def git_workspace():
    """Create a Git workspace descriptor."""
    return Workspace(
        id='ws1',
        name='Team Config',
        kind='git',
        repository_url='https://github.com/acme/config.git',
        branch='main',
        config_path='config/',
    )
