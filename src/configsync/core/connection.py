#!/usr/bin/env python3
"""
Connection testing for configsync.

``ConnectionTester.test`` walks through the checks a user needs before a
workspace can sync: credentials, provider token validity, repository
access and branch existence. Every step is reported to a ProgressSink and
the outcome is returned as a ConnectionTestResult; the test never raises.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .auth import AUTH_NONE, AUTH_TOKEN, AuthHandle, AuthProvider, display_url
from .errors import ClassifiedError, ConfigSyncError, GitCommandError, classify_error
from .progress import ProgressEvent, ProgressSink, StepStatus
from .repository import parse_heads
from .runner import CommandRunner, LS_REMOTE_TIMEOUT, MEDIUM_TIMEOUT
from ..utils.logger import get_logger

GITHUB_API_URL = 'https://api.github.com'
GITHUB_API_TIMEOUT = 10.0
USER_AGENT = 'configsync'

DEFAULT_BRANCH_CANDIDATES = ('main', 'master', 'develop', 'development')
MAX_BRANCH_ALTERNATIVES = 5

GITHUB_URL_PATTERNS = [
    re.compile(r'^https?://(?:[^@/]+@)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$'),
    re.compile(r'^(?:ssh://)?git@github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?$'),
    re.compile(r'github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?$'),
]

AUTH_FAILURE_MARKERS = (
    'Authentication failed',
    'Invalid username or password',
)


@dataclass
class GitHubCheck:
    ok: bool
    error: Optional[str] = None


@dataclass
class ConnectionTestResult:
    """Outcome of a connection test."""
    success: bool
    accessible: bool = False
    authenticated: bool = False
    url: str = ''
    default_branch: Optional[str] = None
    is_private: Optional[bool] = None
    branch: Optional[str] = None
    branch_exists: bool = False
    alternatives: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    classified: Optional[ClassifiedError] = None
    steps: List[ProgressEvent] = field(default_factory=list)


def parse_github_url(url: str) -> Optional[Dict[str, str]]:
    """Owner and repository of a GitHub URL (https, ssh or scp-like)."""
    for pattern in GITHUB_URL_PATTERNS:
        match = pattern.search(url.strip())
        if match:
            return {'owner': match.group(1), 'repo': match.group(2)}
    return None


def detect_default_branch(branches: List[str]) -> str:
    for candidate in DEFAULT_BRANCH_CANDIDATES:
        if candidate in branches:
            return candidate
    return branches[0] if branches else 'main'


def suggest_alternative_branches(requested: str, available: List[str]) -> List[str]:
    """Branches that look like ``requested``, then main/master; at most five."""
    alternatives: List[str] = []
    wanted = requested.lower()

    for branch in available:
        lowered = branch.lower()
        if lowered == wanted:
            alternatives.insert(0, branch)
        elif wanted in lowered or lowered in wanted:
            alternatives.append(branch)

    for default in ('main', 'master'):
        if default in available and default not in alternatives:
            alternatives.append(default)

    return alternatives[:MAX_BRANCH_ALTERNATIVES]


class ConnectionTester:
    """Checks that a repository can be reached with the given credentials."""

    def __init__(self, runner: CommandRunner, auth: AuthProvider,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 api_url: str = GITHUB_API_URL):
        """
        Initialize the tester.

        Args:
            runner: Git command runner
            auth: Auth provider
            transport: httpx transport for the GitHub API (tests pass a mock)
            api_url: GitHub API base URL
        """
        self.logger = get_logger(f"{__name__}.ConnectionTester")
        self.runner = runner
        self.auth = auth
        self.transport = transport
        self.api_url = api_url.rstrip('/')

    def _client(self, token: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=GITHUB_API_TIMEOUT,
            transport=self.transport,
            headers={
                'Authorization': f"token {token}",
                'Accept': 'application/vnd.github.v3+json',
                'User-Agent': USER_AGENT,
            },
        )

    async def validate_github_token(self, token: str) -> GitHubCheck:
        """Query ``GET /user``; network trouble leaves the verdict to git."""
        try:
            async with self._client(token) as client:
                response = await client.get('/user')
        except httpx.HTTPError as e:
            self.logger.warning(f"GitHub token validation skipped: {e}")
            return GitHubCheck(True)

        if response.status_code == 200:
            return GitHubCheck(True)
        if response.status_code == 401:
            return GitHubCheck(False, 'Invalid GitHub access token. Please check your token is correct and not expired.')
        if response.status_code == 403:
            return GitHubCheck(False, 'GitHub API rate limit exceeded or token lacks required permissions.')
        return GitHubCheck(False, f"GitHub API returned unexpected status: {response.status_code}")

    async def check_github_write_access(self, token: str, owner: str, repo: str) -> GitHubCheck:
        """Query ``GET /repos/<owner>/<repo>`` for push or admin permission."""
        try:
            async with self._client(token) as client:
                response = await client.get(f"/repos/{owner}/{repo}")
        except httpx.TimeoutException:
            return GitHubCheck(False, 'Timeout while checking repository permissions')
        except httpx.HTTPError as e:
            self.logger.error(f"Failed to check GitHub write access: {e}")
            return GitHubCheck(False, 'Network error while checking repository permissions')

        if response.status_code == 404:
            return GitHubCheck(False, f"Repository {owner}/{repo} not found or you don't have access to it.")
        if response.status_code == 403:
            return GitHubCheck(False, 'Access denied. Token may lack required permissions or rate limit exceeded.')
        if response.status_code != 200:
            return GitHubCheck(False, f"Failed to check repository access: HTTP {response.status_code}")

        try:
            permissions = response.json().get('permissions')
        except ValueError:
            return GitHubCheck(False, 'Failed to verify repository permissions')

        if not permissions:
            return GitHubCheck(
                False,
                'Token only has read access to the repository. '
                'Write permissions are required to create and manage workspaces.'
            )
        if permissions.get('push') is True or permissions.get('admin') is True:
            return GitHubCheck(True)
        return GitHubCheck(
            False,
            'Token does not have write permissions to the repository. Please ensure the token has "repo" scope.'
        )

    async def _ls_remote(self, url: str, env: Optional[Dict[str, str]], branch: Optional[str] = None,
                         timeout: float = MEDIUM_TIMEOUT) -> List[str]:
        command = ['ls-remote', '--heads', url]
        if branch:
            command.append(branch)
        result = await self.runner.run(command, env=env, timeout=timeout)
        return parse_heads(result.stdout)

    async def repository_access(self, handle: AuthHandle, original_url: str) -> Dict[str, Any]:
        """List remote branches, falling back to anonymous access for public repositories."""
        try:
            branches = await self._ls_remote(handle.effective_url, handle.env)
            return {'accessible': True, 'branches': branches, 'is_private': handle.auth_type != AUTH_NONE}
        except GitCommandError as e:
            text = f"{e}\n{e.stderr}"
            auth_failed = any(marker in text for marker in AUTH_FAILURE_MARKERS)
            github_token = 'github.com' in original_url and handle.auth_type == AUTH_TOKEN

            if auth_failed and github_token:
                return {'accessible': False,
                        'error': 'Invalid GitHub access token. Please check your token has the required permissions.'}

            if auth_failed:
                try:
                    branches = await self._ls_remote(display_url(original_url), None)
                except GitCommandError:
                    return {'accessible': False, 'error': 'Repository requires authentication'}
                return {'accessible': True, 'branches': branches, 'is_private': False}

            return {'accessible': False, 'error': str(e), 'exception': e}

    async def check_branch(self, handle: AuthHandle, branch: str) -> Dict[str, Any]:
        try:
            found = await self._ls_remote(handle.effective_url, handle.env, branch, timeout=LS_REMOTE_TIMEOUT)
            if branch in found:
                return {'exists': True, 'alternatives': []}
            available = await self._ls_remote(handle.effective_url, handle.env, timeout=LS_REMOTE_TIMEOUT)
            return {'exists': False, 'alternatives': suggest_alternative_branches(branch, available)}
        except GitCommandError as e:
            self.logger.error(f"Failed to check branch: {e}")
            return {'exists': False, 'alternatives': [], 'error': str(e)}

    async def test(
        self,
        url: str,
        branch: str = 'main',
        auth_type: str = AUTH_NONE,
        auth_data: Optional[Mapping[str, Any]] = None,
        config_path: Optional[str] = None,
        check_write_access: bool = False,
        is_invite: bool = False,
        progress: Optional[ProgressSink] = None,
    ) -> ConnectionTestResult:
        """
        Test a repository connection end to end.

        Args:
            url: Repository URL
            branch: Branch the workspace will track
            auth_type: Authentication type
            auth_data: Authentication data
            config_path: Configuration path inside the repository
            check_write_access: Also require write permission (new team workspaces)
            is_invite: Joining an existing workspace; the branch must exist
            progress: Sink for step events; a private one is used when omitted

        Returns:
            ConnectionTestResult with the step summary
        """
        progress = progress or ProgressSink()
        auth_data = auth_data or {}
        result = ConnectionTestResult(success=False, url=display_url(url), branch=branch,
                                      authenticated=auth_type not in (None, AUTH_NONE))

        self.logger.info(f"Testing connection to: {display_url(url)}")
        progress.report('Starting connection test')
        progress.success('Starting connection test', 'Connection test initialized')

        try:
            progress.report('Validating authentication', details=f"Method: {auth_type}")
            validation = self.auth.validate(auth_type, auth_data)
            if not validation.valid:
                raise ConfigSyncError(f"Authentication validation failed: {validation.error}")
            progress.success('Validating authentication', 'Authentication data validated')

            progress.report('Setting up authentication')
            with self.auth.session(url, auth_type, auth_data) as handle:
                progress.success('Setting up authentication', 'Authentication configured')
                await self._run_checks(url, branch, auth_type, auth_data, config_path,
                                       check_write_access, is_invite, handle, progress, result)
        except Exception as e:
            self.logger.error(f"Connection test failed: {e}")
            last = progress.events[-1] if progress.events else None
            if last is None or last.status != StepStatus.ERROR:
                progress.error('Connection test failed', str(e))
            result.success = False
            result.accessible = False
            result.error = str(e)
            result.classified = classify_error(getattr(e, '__cause__', None) or e, {'branch': branch})
            result.steps = progress.summarize()
            return result

        progress.success('Connection test complete', 'All checks passed')
        result.success = True
        result.steps = progress.summarize()
        return result

    async def _run_checks(self, url, branch, auth_type, auth_data, config_path,
                          check_write_access, is_invite, handle, progress, result):
        token = auth_data.get('token') if auth_type == AUTH_TOKEN else None
        if 'github.com' in url and token:
            progress.report('Validating GitHub token', details='Checking token validity')
            check = await self.validate_github_token(token)
            if not check.ok:
                progress.error('Validating GitHub token', check.error)
                raise ConfigSyncError(check.error)
            progress.success('Validating GitHub token', 'Token is valid')

            if check_write_access:
                progress.report('Checking write permissions', details='Verifying repository write access')
                repo_info = parse_github_url(url)
                if repo_info:
                    check = await self.check_github_write_access(token, repo_info['owner'], repo_info['repo'])
                    if not check.ok:
                        progress.error('Checking write permissions', check.error)
                        raise ConfigSyncError(check.error)
                progress.success('Checking write permissions', 'Write access confirmed')

        progress.report('Testing repository access', details='Checking repository availability')
        access = await self.repository_access(handle, url)
        if not access['accessible']:
            message = access.get('error') or 'Repository not accessible'
            cause = access.get('exception')
            if cause is not None:
                raise ConfigSyncError(message) from cause
            raise ConfigSyncError(message)
        progress.success('Testing repository access', 'Repository is accessible')

        result.accessible = True
        result.is_private = access['is_private']
        result.default_branch = detect_default_branch(access['branches'])
        if access['is_private'] is False and result.authenticated:
            result.warnings.append('This is a public repository - no authentication required')

        progress.report('Branch validation', details=f"Checking branch '{branch}'")
        branch_check = await self.check_branch(handle, branch)
        result.branch_exists = branch_check['exists']
        result.alternatives = branch_check['alternatives']
        if branch_check['exists']:
            progress.success('Branch validation', f"Branch '{branch}' found")
        elif is_invite:
            progress.error('Branch validation', f"Branch '{branch}' not found - required for joining workspace")
            raise ConfigSyncError(
                f"Branch '{branch}' does not exist in the repository. Please contact the workspace administrator."
            )
        else:
            note = ' (will be created automatically)' if check_write_access else ''
            progress.warning('Branch validation', f"Branch '{branch}' not found{note}")
            result.warnings.append(f"Branch '{branch}' does not exist")
            if result.alternatives:
                result.warnings.append(f"Available branches: {', '.join(result.alternatives)}")

        path = config_path or 'config/'
        progress.report('Directory path validation', details=f"Checking path '{path}'")
        if is_invite:
            progress.success('Directory path validation', f"Path '{path}' must exist with configuration files")
        elif check_write_access:
            progress.success('Directory path validation', f"Path '{path}' will be created if it doesn't exist")
        else:
            progress.success('Directory path validation', f"Path '{path}' will be checked after cloning")

        progress.report('Configuration validation', details='Checking for configuration files')
        if is_invite:
            progress.success('Configuration validation', 'Configuration files will be validated after joining')
        elif check_write_access:
            progress.success('Configuration validation', 'Configuration will be created in the repository')
        else:
            progress.success('Configuration validation', 'Configuration check requires cloning')
        result.warnings.append('Configuration files will be verified after cloning')
