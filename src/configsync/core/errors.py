#!/usr/bin/env python3
"""
Error types and classification for configsync.

Every layer raises subclasses of ConfigSyncError. Raw failures (git
subprocess errors, OS errors, timeouts) are turned into a ClassifiedError by
``classify_error``, which carries a friendly message, recovery suggestions
and the retry/user-action hints the scheduler and the CLI rely on.
"""

import re
import errno
import asyncio
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple


class ConfigSyncError(Exception):
    """Base class for all configsync errors."""
    pass


class GitCommandError(ConfigSyncError):
    """A git subprocess failed, timed out or produced too much output."""

    def __init__(
        self,
        message: str,
        command: Sequence[str] = (),
        exit_code: Optional[int] = None,
        signal: Optional[int] = None,
        killed: bool = False,
        stdout: str = '',
        stderr: str = '',
        kind: Optional[str] = None,
    ):
        super().__init__(message)
        self.command = list(command)
        self.exit_code = exit_code
        self.signal = signal
        self.killed = killed
        self.stdout = stdout
        self.stderr = stderr
        self.kind = kind


class AuthError(ConfigSyncError):
    """Credentials were missing, malformed or could not be prepared."""
    pass


class RepositoryError(ConfigSyncError):
    """A working-copy precondition was not met."""
    pass


class SettingsError(ConfigSyncError):
    """Engine settings could not be loaded or saved."""
    pass


class ErrorKind(Enum):
    """Stable error categories."""
    AUTH = "AUTH_ERROR"
    NETWORK = "NETWORK_ERROR"
    REPOSITORY = "REPOSITORY_ERROR"
    BRANCH = "BRANCH_ERROR"
    CONFLICT = "CONFLICT_ERROR"
    PERMISSION = "PERMISSION_ERROR"
    TIMEOUT = "TIMEOUT_ERROR"
    INVALID_URL = "INVALID_URL"
    GIT_NOT_FOUND = "GIT_NOT_FOUND"
    UNKNOWN = "UNKNOWN_ERROR"


def _compile(*patterns: str) -> List[Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Checked in order; the first matching kind wins.
ERROR_PATTERNS: List[Tuple[ErrorKind, List[Pattern]]] = [
    (ErrorKind.AUTH, _compile(
        r'authentication\s+failed',
        r'permission\s+denied.*publickey',
        r'invalid\s+username\s+or\s+password',
        r'could\s+not\s+read\s+from\s+remote\s+repository',
        r'unauthorized',
        r'403\s+forbidden',
        r'401\s+unauthorized',
    )),
    (ErrorKind.NETWORK, _compile(
        r'could\s+not\s+resolve\s+host',
        r'network\s+is\s+unreachable',
        r'connection\s+refused',
        r'connection\s+timed\s+out',
        r'operation\s+timed\s+out',
        r'no\s+route\s+to\s+host',
        r'ssl\s+certificate\s+problem',
    )),
    (ErrorKind.REPOSITORY, _compile(
        r'repository\s+not\s+found',
        r'does\s+not\s+exist',
        r'not\s+a\s+git\s+repository',
        r'remote\s+origin\s+already\s+exists',
        r'fatal:\s+bad\s+object',
        r'corrupted',
    )),
    (ErrorKind.BRANCH, _compile(
        r"couldn't\s+find\s+remote\s+ref",
        r'branch.*not\s+found',
        r'did\s+not\s+match\s+any\s+file',
        r'pathspec.*did\s+not\s+match',
        r'refspec.*does\s+not\s+match',
        r'invalid\s+branch\s+name',
    )),
    (ErrorKind.CONFLICT, _compile(
        r'merge\s+conflict',
        r'automatic\s+merge\s+failed',
        r'conflict.*automatic\s+merge',
        r'unmerged\s+files',
        r'you\s+have\s+unmerged\s+paths',
        r'fix\s+conflicts\s+and\s+then\s+commit',
    )),
    (ErrorKind.PERMISSION, _compile(
        r'permission\s+denied',
        r'access\s+denied',
        r'cannot\s+create\s+directory',
        r'unable\s+to\s+create\s+file',
        r'insufficient\s+permission',
        r'operation\s+not\s+permitted',
    )),
    (ErrorKind.TIMEOUT, _compile(
        r'timeout',
        r'timed\s+out',
    )),
    (ErrorKind.INVALID_URL, _compile(
        r'invalid\s+url',
        r'malformed\s+url',
        r'url.*invalid',
        r'not\s+a\s+valid.*url',
    )),
    (ErrorKind.GIT_NOT_FOUND, _compile(
        r'git.*not\s+found',
        r'git.*not\s+recognized',
        r'command\s+not\s+found.*git',
        r"'git'\s+is\s+not\s+recognized",
    )),
]

FRIENDLY_MESSAGES = {
    ErrorKind.AUTH: 'Authentication failed. Please check your credentials and repository permissions.',
    ErrorKind.NETWORK: 'Network connection failed. Please check your internet connection and try again.',
    ErrorKind.REPOSITORY: 'Repository not found or inaccessible. Please verify the URL is correct.',
    ErrorKind.BRANCH: "Branch '{branch}' not found in the repository.",
    ErrorKind.CONFLICT: 'Git merge conflict detected. Manual resolution required.',
    ErrorKind.PERMISSION: 'Permission denied. Please check file permissions and try again.',
    ErrorKind.TIMEOUT: 'Operation timed out. This might be due to a slow network or large repository.',
    ErrorKind.INVALID_URL: 'Invalid repository URL. Please check the URL format.',
    ErrorKind.GIT_NOT_FOUND: 'Git is not installed or not found in PATH. Please install Git first.',
    ErrorKind.UNKNOWN: 'An unexpected error occurred: {error}',
}

RECOVERY_SUGGESTIONS = {
    ErrorKind.AUTH: [
        'Verify your access token or SSH key is correct',
        'Check if you have permission to access the repository',
        'For private repositories, ensure proper authentication is configured',
        'Try regenerating your access token with appropriate permissions',
    ],
    ErrorKind.NETWORK: [
        'Check your internet connection',
        'Verify the repository URL is accessible',
        "Check if you're behind a proxy or firewall",
        'Try again in a few moments',
    ],
    ErrorKind.REPOSITORY: [
        'Verify the repository URL is correct',
        'Check if the repository exists and is accessible',
        'Ensure you have the correct permissions',
        'Try cloning the repository manually to verify access',
    ],
    ErrorKind.BRANCH: [
        "Create the branch '{branch}' first",
        'Use a different branch that exists',
        'Check available branches in the repository',
        'Use the default branch (main/master)',
    ],
    ErrorKind.CONFLICT: [
        'Pull the latest changes from remote',
        'Resolve conflicts manually in affected files',
        'Consider using a merge tool',
        'Commit resolved changes before proceeding',
    ],
    ErrorKind.PERMISSION: [
        'Run the application with appropriate permissions',
        'Check file and directory permissions',
        'Ensure the workspace directory is writable',
    ],
    ErrorKind.TIMEOUT: [
        'Check your network connection speed',
        'Try with a smaller repository or shallow clone',
        'Retry the operation',
    ],
    ErrorKind.INVALID_URL: [
        'Check the repository URL format',
        'Ensure the URL includes the protocol (https:// or git@)',
        'Remove any extra spaces or characters',
    ],
    ErrorKind.GIT_NOT_FOUND: [
        'Install Git from https://git-scm.com',
        'Add Git to your system PATH',
        'Verify Git installation by running "git --version"',
    ],
    ErrorKind.UNKNOWN: [
        'Check the error message for specific details',
        'Try the operation again',
        'Check application logs for more information',
    ],
}

RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT})

USER_ACTION_KINDS = frozenset({
    ErrorKind.AUTH,
    ErrorKind.CONFLICT,
    ErrorKind.PERMISSION,
    ErrorKind.GIT_NOT_FOUND,
    ErrorKind.INVALID_URL,
})


@dataclass(frozen=True)
class ClassifiedError:
    """An error mapped onto the taxonomy."""
    kind: ErrorKind
    message: str
    original_message: str
    recovery: List[str] = field(default_factory=list)
    retryable: bool = False
    requires_user_action: bool = False
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.kind.value,
            'message': self.message,
            'originalMessage': self.original_message,
            'recovery': list(self.recovery),
            'retryable': self.retryable,
            'requiresUserAction': self.requires_user_action,
        }


def error_text(error: BaseException) -> str:
    """Text used for pattern matching: message plus captured stderr."""
    text = str(error)
    stderr = getattr(error, 'stderr', '') or ''
    if stderr and stderr not in text:
        text = f"{text}\n{stderr}"
    return text


def classify_kind(error: BaseException) -> ErrorKind:
    """Map an exception onto an ErrorKind."""
    text = error_text(error)

    for kind, patterns in ERROR_PATTERNS:
        if any(pattern.search(text) for pattern in patterns):
            return kind

    # Process metadata when the text gave nothing away
    if isinstance(error, FileNotFoundError) or getattr(error, 'errno', None) == errno.ENOENT:
        if 'git' in text.lower() or getattr(error, 'filename', None) == 'git':
            return ErrorKind.GIT_NOT_FOUND

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)) or getattr(error, 'killed', False):
        return ErrorKind.TIMEOUT

    return ErrorKind.UNKNOWN


def classify_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
    """Classify an error and attach the user-facing guidance.

    Args:
        error: The raised exception
        context: Extra details (``branch`` is used in messages)

    Returns:
        ClassifiedError describing the failure
    """
    context = dict(context or {})
    kind = classify_kind(error)
    original = str(error) or error.__class__.__name__
    branch = context.get('branch') or 'specified'

    message = FRIENDLY_MESSAGES[kind].format(branch=branch, error=original)
    recovery = [s.format(branch=branch) for s in RECOVERY_SUGGESTIONS[kind]]

    return ClassifiedError(
        kind=kind,
        message=message,
        original_message=original,
        recovery=recovery,
        retryable=kind in RETRYABLE_KINDS,
        requires_user_action=kind in USER_ACTION_KINDS,
        context=context,
    )


def format_error(classified: ClassifiedError) -> str:
    """Render a classified error for terminal output."""
    lines = [classified.message]

    if classified.recovery:
        lines.append('')
        lines.append('Suggestions:')
        for index, suggestion in enumerate(classified.recovery, 1):
            lines.append(f"  {index}. {suggestion}")

    if classified.retryable:
        lines.append('')
        lines.append('This error may be temporary. You can try again.')

    return '\n'.join(lines)
