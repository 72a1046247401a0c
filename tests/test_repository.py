#!/usr/bin/env python3
"""
Tests for repository operations.
"""

import pytest

from configsync.core.auth import AUTH_TOKEN, AuthHandle, AuthProvider
from configsync.core.errors import RepositoryError
from configsync.core.repository import (
    RepositoryOperations,
    parse_commit_line,
    parse_heads,
    parse_status_output,
)
from tests.conftest import git_failure

HEADS = 'a1\trefs/heads/main\nb2\trefs/heads/dev\n'


@pytest.fixture
def repository(runner, tmp_path):
    """Create RepositoryOperations over a FakeRunner."""
    return RepositoryOperations(runner, AuthProvider(tmp_path / 'ssh'), new_branch_delay=0)


class TestParsers:
    """Test git output parsing."""

    def test_parse_status_output(self):
        """Test porcelain status grouping."""
        changes = parse_status_output(' M a.json\n?? b.json\nA  c.json\n D d.json\n')
        assert changes['modified'] == ['a.json']
        assert changes['untracked'] == ['b.json']
        assert changes['added'] == ['c.json']
        assert changes['deleted'] == ['d.json']

    def test_parse_heads(self):
        """Test ls-remote head parsing."""
        assert parse_heads(HEADS) == ['main', 'dev']
        assert parse_heads('') == []

    def test_parse_commit_line_with_pipe_in_subject(self):
        """Test that the subject may contain separators."""
        commit = parse_commit_line('abc|Ann|ann@x.io|1700000000|fix: a|b')
        assert commit.hash == 'abc'
        assert commit.message == 'fix: a|b'
        assert commit.date.year == 2023


class TestClone:
    """Test cloning."""

    @pytest.mark.asyncio
    async def test_clone_with_depth_and_branch(self, repository, runner, tmp_path):
        """Test the clone command and credential removal afterwards."""
        target = tmp_path / 'repo'
        branch = await repository.clone(
            'https://github.com/acme/config.git', target, branch='main',
            auth_type=AUTH_TOKEN, auth_data={'token': 'tok'}, depth=10,
        )

        assert branch == 'main'
        clone = runner.commands('clone')[0]
        assert clone[:4] == ['clone', '--progress', '--depth', '10']
        assert 'tok:x-oauth-basic@github.com' in clone[-2]
        assert runner.calls[-1] == ['remote', 'set-url', 'origin', 'https://github.com/acme/config.git']

    @pytest.mark.asyncio
    async def test_clone_with_sparse_patterns(self, repository, runner, tmp_path):
        """Test that sparse clones skip checkout until patterns are set."""
        await repository.clone('https://example.com/a/b.git', tmp_path / 'repo', branch='main',
                               sparse_patterns=['/*', '/config/'])

        clone = runner.commands('clone')[0]
        assert '--no-checkout' in clone
        assert '--filter=blob:none' in clone
        assert runner.called('sparse-checkout', 'init', '--cone')
        assert runner.called('sparse-checkout', 'set', 'config')
        assert runner.called('checkout')

    @pytest.mark.asyncio
    async def test_clone_failure_removes_directory(self, repository, runner, tmp_path):
        """Test that a failed clone leaves nothing behind."""
        runner.on('clone', response=git_failure('fatal: repository not found'))
        target = tmp_path / 'repo'

        with pytest.raises(Exception):
            await repository.clone('https://example.com/a/b.git', target)

        assert not target.exists()

    @pytest.mark.asyncio
    async def test_clone_into_non_empty_directory(self, repository, tmp_path):
        """Test that existing content is never overwritten."""
        target = tmp_path / 'repo'
        target.mkdir()
        (target / 'file').write_text('x')

        with pytest.raises(RepositoryError):
            await repository.clone('https://example.com/a/b.git', target)
        assert (target / 'file').exists()

    @pytest.mark.asyncio
    async def test_clone_default_branch(self, repository, runner, tmp_path):
        """Test that the checked-out branch is reported when none was given."""
        runner.on('rev-parse', '--abbrev-ref', 'HEAD', response='master\n')
        assert await repository.clone('https://example.com/a/b.git', tmp_path / 'repo') == 'master'


class TestPullPush:
    """Test pull and push."""

    @pytest.mark.asyncio
    async def test_pull_counts_commits(self, repository, runner):
        """Test pulling reports the number of new commits."""
        runner.on('ls-remote', response=HEADS)
        runner.on('rev-list', response='3\n')

        result = await repository.pull('/repo', 'main')

        assert result == {'changes': True, 'commits': 3, 'message': 'Pulled 3 new commits'}
        assert runner.called('pull', 'origin', 'main')

    @pytest.mark.asyncio
    async def test_pull_up_to_date(self, repository, runner):
        """Test that nothing is pulled when not behind."""
        runner.on('ls-remote', response=HEADS)
        runner.on('rev-list', response='0\n')

        result = await repository.pull('/repo', 'main')

        assert result['changes'] is False
        assert not runner.called('pull')

    @pytest.mark.asyncio
    async def test_pull_missing_branch_in_empty_repository(self, repository, runner):
        """Test that a branch is created locally in an empty remote."""
        result = await repository.pull('/repo', 'feature')
        assert result['message'] == 'Created new branch in empty repository'
        assert runner.called('checkout', '-b', 'feature')

    @pytest.mark.asyncio
    async def test_pull_missing_branch_from_default(self, repository, runner):
        """Test that a missing branch is created from the default branch."""
        runner.on('ls-remote', response=HEADS)
        runner.on('symbolic-ref', response='refs/remotes/origin/main\n')

        result = await repository.pull('/repo', 'feature')

        assert result['changes'] is True
        assert runner.called('checkout', '-b', 'feature', 'origin/main')

    @pytest.mark.asyncio
    async def test_push_counts_commits(self, repository, runner):
        """Test pushing reports the number of local commits."""
        runner.on('rev-list', response='2\n')
        result = await repository.push('/repo', 'main')
        assert result == {'pushed': True, 'commits': 2, 'message': 'Pushed 2 commits'}
        assert runner.calls[-1] == ['push', 'origin', 'main']

    @pytest.mark.asyncio
    async def test_push_nothing(self, repository, runner):
        """Test that nothing is pushed when not ahead."""
        runner.on('rev-list', response='0\n')
        result = await repository.push('/repo', 'main')
        assert result['pushed'] is False
        assert not runner.called('push')

    @pytest.mark.asyncio
    async def test_push_new_branch_waits(self, runner, tmp_path):
        """Test that the first push of a branch waits for propagation."""
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        repository = RepositoryOperations(runner, AuthProvider(tmp_path / 'ssh'), new_branch_delay=5, sleep=fake_sleep)
        runner.on('rev-list', 'HEAD', '--count', response='4\n')

        result = await repository.push('/repo', 'feature', set_upstream=True)

        assert result['commits'] == 4
        assert runner.calls[-1] == ['push', 'origin', '--set-upstream', 'feature']
        assert slept == [5]


class TestRemoteSession:
    """Test temporary remote URLs."""

    @pytest.mark.asyncio
    async def test_url_swapped_and_restored(self, repository, runner):
        """Test that credentials are only on origin inside the session."""
        runner.on('config', '--get', 'remote.origin.url', response='https://github.com/a/b.git\n')
        handle = AuthHandle(effective_url='https://t:x@github.com/a/b.git')

        async with repository.remote_session('/repo', handle):
            async with repository.remote_session('/repo', handle):
                pass

        set_urls = runner.commands('remote')
        assert set_urls == [
            ['remote', 'set-url', 'origin', 'https://t:x@github.com/a/b.git'],
            ['remote', 'set-url', 'origin', 'https://github.com/a/b.git'],
        ]

    @pytest.mark.asyncio
    async def test_url_restored_on_error(self, repository, runner):
        """Test that the plain URL comes back when the block raises."""
        runner.on('config', '--get', 'remote.origin.url', response='https://github.com/a/b.git\n')
        handle = AuthHandle(effective_url='https://t:x@github.com/a/b.git')

        with pytest.raises(RuntimeError):
            async with repository.remote_session('/repo', handle):
                raise RuntimeError('push failed')

        assert runner.calls[-1] == ['remote', 'set-url', 'origin', 'https://github.com/a/b.git']


class TestCommits:
    """Test committing."""

    @pytest.mark.asyncio
    async def test_auto_commit_clean(self, repository, runner):
        """Test that a clean working copy is not committed."""
        assert await repository.auto_commit('/repo', 'msg') is None
        assert not runner.called('commit')

    @pytest.mark.asyncio
    async def test_auto_commit_stages_everything(self, repository, runner):
        """Test that untracked and tracked changes are committed."""
        runner.on('status', response=' M a.json\n?? new.json\n')
        runner.on('config', 'user.name', response='Ann\n')
        runner.on('config', 'user.email', response='ann@x.io\n')
        runner.on('rev-parse', 'HEAD', response='deadbeef\n')

        commit_hash = await repository.auto_commit('/repo', 'Auto-sync')

        assert commit_hash == 'deadbeef'
        assert runner.called('add', '--', 'new.json')
        assert runner.called('add', '-u')
        assert runner.called('commit', '-m', 'Auto-sync')

    @pytest.mark.asyncio
    async def test_commit_files_writes_content(self, repository, runner, tmp_path):
        """Test that files are written and staged."""
        runner.on('rev-parse', 'HEAD', response='cafe\n')
        repo_dir = tmp_path / 'repo'
        repo_dir.mkdir()

        commit_hash = await repository.commit_files(repo_dir, {'config/sources.json': '[]'}, 'Publish')

        assert commit_hash == 'cafe'
        assert (repo_dir / 'config' / 'sources.json').read_text() == '[]'
        assert runner.called('add', '--', 'config/sources.json')
        assert runner.called('config', 'user.name', 'ConfigSync User')
