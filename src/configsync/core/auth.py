#!/usr/bin/env python3
"""
Repository authentication for configsync.

This module turns a workspace's auth type and auth data into the URL and
environment git should use. Strategies cover anonymous access, basic
credentials, provider tokens and SSH keys. SSH key material is written to
disk only for the duration of one session; ``AuthProvider.session`` removes
it again on every exit path.
"""

import os
import hashlib
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from .errors import AuthError
from ..utils.logger import get_logger

AUTH_NONE = 'none'
AUTH_BASIC = 'basic'
AUTH_TOKEN = 'token'
AUTH_SSH_KEY = 'ssh-key'


def _get(data: Mapping[str, Any], key: str, alt: Optional[str] = None, default: Any = None) -> Any:
    """Read an auth field given in snake_case or the application's camelCase."""
    if data.get(key) not in (None, ''):
        return data[key]
    if alt and data.get(alt) not in (None, ''):
        return data[alt]
    return default


def display_url(url: str) -> str:
    """Return ``url`` with any embedded credentials removed."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or '@' not in parts.netloc:
        return url
    host = parts.netloc.rsplit('@', 1)[1]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def describe_url(url: str, auth_type: str) -> str:
    """Display URL annotated with the auth method, for logs and UI."""
    suffix = {
        AUTH_TOKEN: ' (with token authentication)',
        AUTH_BASIC: ' (with username/password)',
        AUTH_SSH_KEY: ' (with SSH key)',
    }.get(auth_type, '')
    return f"{display_url(url)}{suffix}"


def embed_credentials(url: str, username: str, password: str) -> str:
    """Put percent-encoded credentials into the authority of an HTTP(S) URL."""
    parts = urlsplit(url)
    if parts.scheme not in ('http', 'https') or not parts.hostname:
        raise AuthError(f"Credentials can only be embedded in an HTTP(S) URL: {display_url(url)}")

    host = parts.netloc.rsplit('@', 1)[-1]
    netloc = f"{quote(username, safe='')}:{quote(password, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


@dataclass
class ValidationResult:
    """Outcome of checking auth data before any network call."""
    valid: bool
    error: Optional[str] = None


@dataclass
class AuthHandle:
    """Effective URL and environment for one authenticated session.

    The handle is a context manager; leaving the ``with`` block releases any
    temporary credential material.
    """
    effective_url: str
    env: Dict[str, str] = field(default_factory=dict)
    auth_type: str = AUTH_NONE
    _release: Optional[Callable[[], None]] = field(default=None, repr=False)

    def cleanup(self):
        """Release temporary material. Safe to call more than once."""
        release, self._release = self._release, None
        if release is not None:
            release()

    def __enter__(self) -> 'AuthHandle':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False


class NoAuthStrategy:
    """Anonymous access: the URL is used as given."""

    def validate(self, data: Mapping[str, Any]) -> ValidationResult:
        return ValidationResult(True)

    def setup(self, url: str, data: Mapping[str, Any]) -> AuthHandle:
        return AuthHandle(effective_url=url, auth_type=AUTH_NONE)


class BasicAuthStrategy:
    """Username and password embedded in the URL."""

    def validate(self, data: Mapping[str, Any]) -> ValidationResult:
        if not _get(data, 'username'):
            return ValidationResult(False, 'Username is required')
        if not _get(data, 'password'):
            return ValidationResult(False, 'Password is required')
        return ValidationResult(True)

    def setup(self, url: str, data: Mapping[str, Any]) -> AuthHandle:
        effective = embed_credentials(url, _get(data, 'username'), _get(data, 'password'))
        return AuthHandle(effective_url=effective, auth_type=AUTH_BASIC)


class TokenAuthStrategy:
    """Personal access tokens mapped to each provider's username/password slot."""

    # provider -> (username, password); None marks the token's position
    PROVIDER_CREDENTIALS = {
        'github': (None, 'x-oauth-basic'),
        'gitlab': ('oauth2', None),
        'bitbucket': ('x-token-auth', None),
        'azure': ('token', None),
        'generic': ('token', None),
    }

    @staticmethod
    def detect_provider(hostname: str) -> str:
        hostname = (hostname or '').lower()
        if 'github' in hostname:
            return 'github'
        if 'gitlab' in hostname:
            return 'gitlab'
        if 'bitbucket' in hostname:
            return 'bitbucket'
        if 'azure' in hostname or 'visualstudio' in hostname:
            return 'azure'
        return 'generic'

    def validate(self, data: Mapping[str, Any]) -> ValidationResult:
        if not _get(data, 'token'):
            return ValidationResult(False, 'Access token is required')
        return ValidationResult(True)

    def credentials_for(self, url: str, token: str, token_type: str = 'auto'):
        if token_type in (None, '', 'auto'):
            token_type = self.detect_provider(urlsplit(url).hostname)
        username, password = self.PROVIDER_CREDENTIALS.get(token_type, self.PROVIDER_CREDENTIALS['generic'])
        return (username or token, password or token)

    def setup(self, url: str, data: Mapping[str, Any]) -> AuthHandle:
        token = _get(data, 'token')
        token_type = _get(data, 'token_type', 'tokenType', 'auto')
        username, password = self.credentials_for(url, token, token_type)
        return AuthHandle(
            effective_url=embed_credentials(url, username, password),
            auth_type=AUTH_TOKEN,
        )


class SSHKeyAuthStrategy:
    """Private key written to a scoped location with a pinned SSH config."""

    def __init__(self, ssh_dir: Path):
        self.logger = get_logger(f"{__name__}.SSHKeyAuthStrategy")
        self.ssh_dir = Path(ssh_dir)
        # key hash -> number of open sessions using the files
        self._refs: Dict[str, int] = {}
        self._lock = threading.Lock()

    def validate(self, data: Mapping[str, Any]) -> ValidationResult:
        key = _get(data, 'private_key', 'privateKey')
        if not key:
            return ValidationResult(False, 'SSH private key is required')
        key = key.strip()
        if '-----BEGIN' not in key or '-----END' not in key:
            return ValidationResult(False, 'Invalid SSH key format')
        return ValidationResult(True)

    @staticmethod
    def key_hash(private_key: str) -> str:
        return hashlib.md5(private_key.encode('utf-8')).hexdigest()

    def paths_for(self, key_hash: str) -> Dict[str, Path]:
        key_path = self.ssh_dir / f"git-ssh-key-{key_hash}"
        return {
            'key': key_path,
            'pub': key_path.with_name(f"{key_path.name}.pub"),
            'config': self.ssh_dir / f"config-{key_hash}",
        }

    @staticmethod
    def extract_hostname(url: str) -> str:
        if url.startswith('git@'):
            return url.split(':', 1)[0][len('git@'):]
        hostname = urlsplit(url).hostname
        if not hostname:
            raise AuthError(f"Failed to extract hostname from URL: {display_url(url)}")
        return hostname

    @staticmethod
    def to_alias_url(url: str, key_hash: str) -> str:
        """Rewrite the repository URL to go through the pinned host alias."""
        alias = f"git@{key_hash}.git:"
        if url.startswith('git@'):
            return alias + url.split(':', 1)[1]

        path_parts = [p for p in urlsplit(url).path.split('/') if p]
        if len(path_parts) < 2:
            raise AuthError(f"Failed to convert URL to SSH format: {display_url(url)}")
        owner = path_parts[0]
        repo = path_parts[1]
        if repo.endswith('.git'):
            repo = repo[:-4]
        return f"{alias}{owner}/{repo}.git"

    @staticmethod
    def _write(path: Path, content: str, mode: int):
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, 'w', encoding='utf-8') as fh:
            fh.write(content)
        os.chmod(path, mode)

    def setup(self, url: str, data: Mapping[str, Any]) -> AuthHandle:
        private_key = _get(data, 'private_key', 'privateKey')
        public_key = _get(data, 'public_key', 'publicKey')
        if _get(data, 'passphrase'):
            self.logger.warning("Passphrase-protected SSH keys cannot be unlocked in batch mode")

        hostname = self.extract_hostname(url)
        key_hash = self.key_hash(private_key)
        paths = self.paths_for(key_hash)
        alias_url = self.to_alias_url(url, key_hash)

        key_content = private_key if private_key.endswith('\n') else private_key + '\n'
        ssh_config = (
            f"Host {key_hash}.git\n"
            f"  HostName {hostname}\n"
            f"  User git\n"
            f"  IdentityFile {paths['key']}\n"
            f"  StrictHostKeyChecking no\n"
            f"  UserKnownHostsFile /dev/null\n"
        )

        with self._lock:
            self.ssh_dir.mkdir(parents=True, exist_ok=True)
            try:
                self._write(paths['key'], key_content, 0o600)
                if public_key:
                    self._write(paths['pub'], public_key, 0o644)
                self._write(paths['config'], ssh_config, 0o600)
            except OSError as e:
                self._remove_files(paths)
                raise AuthError(f"Failed to write SSH key material: {e}") from e
            self._refs[key_hash] = self._refs.get(key_hash, 0) + 1

        return AuthHandle(
            effective_url=alias_url,
            env={'GIT_SSH_COMMAND': f"ssh -F {paths['config']} -o BatchMode=yes"},
            auth_type=AUTH_SSH_KEY,
            _release=lambda: self._release(key_hash),
        )

    def _release(self, key_hash: str):
        with self._lock:
            remaining = self._refs.get(key_hash, 1) - 1
            if remaining > 0:
                self._refs[key_hash] = remaining
                return
            self._refs.pop(key_hash, None)
            self._remove_files(self.paths_for(key_hash))

    def _remove_files(self, paths: Dict[str, Path]):
        for path in paths.values():
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.error(f"Failed to remove SSH material {path.name}: {e}")


class AuthProvider:
    """Resolves an auth type and data into an AuthHandle."""

    def __init__(self, ssh_dir: Path):
        """
        Initialize the provider.

        Args:
            ssh_dir: Directory for temporary SSH key material
        """
        self.logger = get_logger(f"{__name__}.AuthProvider")
        self.strategies = {
            AUTH_NONE: NoAuthStrategy(),
            AUTH_BASIC: BasicAuthStrategy(),
            AUTH_TOKEN: TokenAuthStrategy(),
            AUTH_SSH_KEY: SSHKeyAuthStrategy(ssh_dir),
        }

    def _strategy(self, auth_type: Optional[str]):
        strategy = self.strategies.get(auth_type or AUTH_NONE)
        if strategy is None:
            raise AuthError(f"Unknown authentication type: {auth_type}")
        return strategy

    def validate(self, auth_type: Optional[str], data: Optional[Mapping[str, Any]]) -> ValidationResult:
        """Check auth data without touching the network or the disk."""
        try:
            strategy = self._strategy(auth_type)
        except AuthError as e:
            return ValidationResult(False, str(e))
        return strategy.validate(data or {})

    def setup(self, url: str, auth_type: Optional[str] = AUTH_NONE,
              data: Optional[Mapping[str, Any]] = None) -> AuthHandle:
        """
        Prepare credentials for ``url``.

        Args:
            url: Repository URL as configured
            auth_type: One of none, basic, token, ssh-key
            data: Strategy-specific fields

        Returns:
            AuthHandle; the caller owns its cleanup

        Raises:
            AuthError: If the type is unknown or the data is invalid
        """
        strategy = self._strategy(auth_type)
        data = data or {}

        validation = strategy.validate(data)
        if not validation.valid:
            raise AuthError(f"{auth_type} authentication setup failed: {validation.error}")

        self.logger.debug(f"Setting up {auth_type or AUTH_NONE} authentication for {display_url(url)}")
        return strategy.setup(url, data)

    @contextmanager
    def session(self, url: str, auth_type: Optional[str] = AUTH_NONE,
                data: Optional[Mapping[str, Any]] = None) -> Iterator[AuthHandle]:
        """Yield an AuthHandle whose cleanup runs however the block exits."""
        handle = self.setup(url, auth_type, data)
        try:
            yield handle
        finally:
            handle.cleanup()
