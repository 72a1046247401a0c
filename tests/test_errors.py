#!/usr/bin/env python3
"""
Tests for error classification.
"""

import asyncio

import pytest

from configsync.core.errors import (
    ErrorKind,
    GitCommandError,
    classify_error,
    classify_kind,
    format_error,
)


class TestClassifyKind:
    """Test mapping of failures onto error kinds."""

    @pytest.mark.parametrize('message,kind', [
        ('fatal: Authentication failed for https://github.com/acme/config.git', ErrorKind.AUTH),
        ('git@github.com: Permission denied (publickey).', ErrorKind.AUTH),
        ('fatal: Could not resolve host: github.com', ErrorKind.NETWORK),
        ('ERROR: Repository not found.', ErrorKind.REPOSITORY),
        ("fatal: couldn't find remote ref feature-x", ErrorKind.BRANCH),
        ('CONFLICT (content): Automatic merge failed; fix conflicts and then commit', ErrorKind.CONFLICT),
        ('error: cannot create directory at /readonly', ErrorKind.PERMISSION),
        ('Operation exceeded timeout', ErrorKind.TIMEOUT),
        ('fatal: invalid url: ht!tp://nope', ErrorKind.INVALID_URL),
        ('something completely different', ErrorKind.UNKNOWN),
    ])
    def test_message_patterns(self, message, kind):
        """Test that error text selects the expected kind."""
        assert classify_kind(Exception(message)) == kind

    def test_first_matching_kind_wins(self):
        """Test that auth patterns take precedence over later kinds."""
        error = Exception('Permission denied (publickey). Could not read from remote repository.')
        assert classify_kind(error) == ErrorKind.AUTH

    def test_stderr_is_inspected(self):
        """Test that captured stderr is matched, not just the message."""
        error = GitCommandError('Command failed: git fetch', stderr='fatal: Could not resolve host: example.com')
        assert classify_kind(error) == ErrorKind.NETWORK

    def test_killed_process_is_timeout(self):
        """Test that a killed git process classifies as a timeout."""
        error = GitCommandError('Command failed: git clone', killed=True)
        assert classify_kind(error) == ErrorKind.TIMEOUT

    def test_asyncio_timeout(self):
        """Test that asyncio timeouts classify as timeouts."""
        assert classify_kind(asyncio.TimeoutError()) == ErrorKind.TIMEOUT

    def test_missing_git_executable(self):
        """Test that a missing git binary is reported as such."""
        error = FileNotFoundError(2, 'No such file or directory', 'git')
        assert classify_kind(error) == ErrorKind.GIT_NOT_FOUND


class TestClassifyError:
    """Test classified error details."""

    def test_network_errors_are_retryable(self):
        """Test that network failures are retryable and need no user action."""
        classified = classify_error(Exception('Connection refused'))
        assert classified.kind == ErrorKind.NETWORK
        assert classified.retryable is True
        assert classified.requires_user_action is False
        assert classified.recovery

    def test_auth_errors_require_user_action(self):
        """Test that auth failures are not retryable."""
        classified = classify_error(Exception('401 Unauthorized'))
        assert classified.kind == ErrorKind.AUTH
        assert classified.retryable is False
        assert classified.requires_user_action is True

    def test_branch_context_in_message(self):
        """Test that the branch name is substituted into message and recovery."""
        classified = classify_error(Exception("couldn't find remote ref dev"), {'branch': 'dev'})
        assert "'dev'" in classified.message
        assert any('dev' in suggestion for suggestion in classified.recovery)

    def test_unknown_keeps_original_message(self):
        """Test that unknown errors carry the raw message."""
        classified = classify_error(ValueError('boom'))
        assert classified.kind == ErrorKind.UNKNOWN
        assert 'boom' in classified.message
        assert classified.original_message == 'boom'

    def test_to_dict(self):
        """Test the serialized form."""
        data = classify_error(Exception('timed out')).to_dict()
        assert data['type'] == 'TIMEOUT_ERROR'
        assert data['retryable'] is True
        assert 'originalMessage' in data

    def test_format_error(self):
        """Test terminal rendering of a classified error."""
        text = format_error(classify_error(Exception('Could not resolve host: x')))
        assert 'Suggestions:' in text
        assert '1. ' in text
        assert 'may be temporary' in text
