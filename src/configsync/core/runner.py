#!/usr/bin/env python3
"""
Git command runner for configsync.

This module executes git as a subprocess for every other component. Each
invocation is forced non-interactive (no credential helpers, no askpass, no
terminal prompts) so an unattended sync can never hang on a password prompt.
Execution goes through GitPython's ``Git.execute`` on a worker thread, which
gives us a C locale for matchable stderr and kill-after-timeout semantics.
"""

import os
import shlex
import asyncio
import functools
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

from git.cmd import Git
from git.exc import GitCommandNotFound
from git.util import remove_password_if_present

from .errors import GitCommandError
from ..utils.logger import get_logger
from ..utils.platform import find_git_executable

# Timeouts in seconds
SHORT_TIMEOUT = 15
MEDIUM_TIMEOUT = 30
LONG_TIMEOUT = 60

CLONE_TIMEOUT = 300
PUSH_TIMEOUT = 120
PULL_TIMEOUT = 60
FETCH_TIMEOUT = 30
LS_REMOTE_TIMEOUT = 15

MAX_OUTPUT_BYTES = 10 * 1024 * 1024
CLONE_MAX_OUTPUT_BYTES = 50 * 1024 * 1024

NON_INTERACTIVE_CONFIG = [
    '-c', 'credential.helper=',
    '-c', 'core.askpass=',
    '-c', 'credential.interactive=false',
]

DEFAULT_SSH_COMMAND = 'ssh -o BatchMode=yes -o StrictHostKeyChecking=no'

# stderr substring -> quick kind tag
QUICK_KINDS = [
    ('Permission denied', 'auth'),
    ('Could not resolve host', 'network'),
    ('Repository not found', 'not_found'),
    ("couldn't find remote ref", 'branch_not_found'),
]


@dataclass
class CommandResult:
    """Captured output of a successful git invocation."""
    stdout: str
    stderr: str = ''


@dataclass
class GitStatus:
    """Whether git is usable on this machine."""
    is_installed: bool
    path: Optional[str] = None
    version: Optional[str] = None


def quick_kind(stderr: str) -> Optional[str]:
    for needle, kind in QUICK_KINDS:
        if needle in stderr:
            return kind
    return None


class CommandRunner:
    """Runs git commands with prompt suppression, timeouts and error tagging."""

    def __init__(self, git_executable: Optional[str] = None, default_timeout: float = MEDIUM_TIMEOUT):
        """
        Initialize the runner.

        Args:
            git_executable: Path to git; discovered on PATH when omitted
            default_timeout: Timeout in seconds for calls that don't set one
        """
        self.logger = get_logger(f"{__name__}.CommandRunner")
        self.git_executable = git_executable or find_git_executable() or 'git'
        self.default_timeout = default_timeout

    @staticmethod
    def _normalize_args(args: Union[str, Sequence[str]]) -> List[str]:
        if isinstance(args, str):
            argv = shlex.split(args)
        else:
            argv = [str(a) for a in args]
        if argv and argv[0] == 'git':
            argv = argv[1:]
        return argv

    @staticmethod
    def _build_env(env: Optional[Dict[str, str]]) -> Dict[str, str]:
        env = dict(env or {})
        ssh_command = env.get('GIT_SSH_COMMAND') or os.environ.get('GIT_SSH_COMMAND') or DEFAULT_SSH_COMMAND
        env.update({
            'GIT_TERMINAL_PROMPT': '0',
            'GIT_ASKPASS': '',
            'SSH_ASKPASS': '',
            'GIT_SSH_COMMAND': ssh_command,
        })
        return env

    def _execute(self, command: List[str], cwd: Optional[str], env: Dict[str, str], timeout: float):
        """Blocking call into GitPython; runs on the default executor."""
        return Git(cwd).execute(
            command,
            with_extended_output=True,
            with_exceptions=False,
            kill_after_timeout=timeout,
            env=env,
            strip_newline_in_stdout=False,
        )

    async def run(
        self,
        args: Union[str, Sequence[str]],
        cwd: Optional[Union[str, os.PathLike]] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_output_bytes: Optional[int] = None,
    ) -> CommandResult:
        """
        Run a git command.

        Args:
            args: Git arguments (list or a single command line, ``git`` optional)
            cwd: Working directory
            env: Extra environment variables
            timeout: Seconds before the process is killed
            max_output_bytes: Ceiling for stdout and stderr

        Returns:
            CommandResult with stdout and stderr

        Raises:
            GitCommandError: On non-zero exit, timeout, overflow or missing git
        """
        argv = self._normalize_args(args)
        command = [self.git_executable] + NON_INTERACTIVE_CONFIG + argv
        timeout = timeout or self.default_timeout
        limit = max_output_bytes or MAX_OUTPUT_BYTES
        workdir = str(cwd) if cwd is not None else None

        safe_command = remove_password_if_present(command)
        display = ' '.join(['git'] + remove_password_if_present(argv))
        self.logger.debug(f"Executing: {' '.join(safe_command)} (cwd: {workdir or os.getcwd()})")

        loop = asyncio.get_running_loop()
        call = functools.partial(self._execute, command, workdir, self._build_env(env), timeout)
        try:
            status, stdout, stderr = await loop.run_in_executor(None, call)
        except GitCommandNotFound as e:
            raise GitCommandError(
                f"Command failed: {display}\ngit executable not found: {self.git_executable}",
                command=safe_command,
                stderr=str(e),
            ) from e

        stdout = stdout or ''
        stderr = stderr or ''

        for stream in (stdout, stderr):
            if len(stream.encode('utf-8', errors='replace')) > limit:
                raise GitCommandError(
                    f"Command failed: {display}\nOutput exceeded maxBuffer of {limit} bytes",
                    command=safe_command,
                    exit_code=status,
                    stdout=stdout[:1024],
                    stderr=stderr[:1024],
                )

        if status != 0:
            killed = stderr.startswith('Timeout:') or (status is not None and status < 0)
            signal = -status if status is not None and status < 0 else None
            error = GitCommandError(
                f"Command failed: {display}\n{stderr.strip()}",
                command=safe_command,
                exit_code=status,
                signal=signal,
                killed=killed,
                stdout=stdout,
                stderr=stderr,
                kind=quick_kind(stderr),
            )
            self.logger.debug(f"git exited with {status}: {stderr.strip()}")
            raise error

        return CommandResult(stdout=stdout, stderr=stderr)

    async def git_status(self) -> GitStatus:
        """Report whether git can be executed and which version it is."""
        try:
            result = await self.run(['--version'], timeout=SHORT_TIMEOUT)
        except GitCommandError as e:
            self.logger.warning(f"Git is not available: {e}")
            return GitStatus(is_installed=False)

        return GitStatus(
            is_installed=True,
            path=self.git_executable,
            version=result.stdout.strip(),
        )
