"""
Shared pytest fixtures for catalogsync tests.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from preoccupied.catalogsync import orchestrator
from preoccupied.catalogsync.config import EngineSettings
from preoccupied.catalogsync.repository import RepositoryStatus
from preoccupied.catalogsync.store import ConfigStore, RepositoryConfig


REMOTE_URL = 'https://github.com/acme/catalog'
TOKEN = 'ghp_S3cretT0ken'


requires_git = pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')


def git(*args, cwd=None):
    """
    Run git synchronously for test setup, with a fixed identity.
    """

    result = subprocess.run(
        ['git', '-c', 'user.name=Tester', '-c', 'user.email=tester@example.com',
         '-c', 'init.defaultBranch=main', *args],
        cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def fake_repository(path, is_repository=True, remote_url=REMOTE_URL, status=None):
    """
    A stand-in GitRepository whose operations are all AsyncMocks.
    """

    repo = MagicMock()
    repo.path = Path(path)
    repo.is_repository = AsyncMock(return_value=is_repository)
    repo.get_remote_url = AsyncMock(return_value=remote_url)
    repo.status = AsyncMock(return_value=status or RepositoryStatus())
    repo.current_branch = AsyncMock(return_value='main')
    repo.commit = AsyncMock(return_value='abc123')
    repo.head = AsyncMock(return_value='abc123')
    repo.check_installation = AsyncMock(return_value='2.43.0')
    repo.remove_stale_locks = MagicMock(return_value=[])

    for name in ('clone', 'fetch', 'push', 'pull', 'reset_hard', 'set_remote_url', 'add_remote'):
        setattr(repo, name, AsyncMock(return_value=None))

    return repo


def dirty_status(behind=0, modified=('products.json',), added=()):
    files = {'modified': list(modified), 'untracked': list(added)}
    return RepositoryStatus(
        is_clean=False,
        counts={'modified': len(modified), 'untracked': len(added)},
        files=files,
        current_branch='main',
        upstream='origin/main',
        behind=behind,
    )


@pytest.fixture
def temp_dir():
    """
    Create a temporary directory for tests.
    """

    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(autouse=True)
def clear_active_runs():
    """
    Make sure no run leaks between tests.
    """

    orchestrator._active_runs.clear()
    yield
    orchestrator._active_runs.clear()


@pytest.fixture
def mock_env_vars(monkeypatch):
    """
    Clear CATALOGSYNC_* environment variables for testing.
    """

    for var in list(os.environ):
        if var.startswith('CATALOGSYNC_'):
            monkeypatch.delenv(var, raising=False)

    return monkeypatch


@pytest.fixture
def settings(temp_dir):
    return EngineSettings(config_path=os.path.join(temp_dir, 'config', 'config.json'))


@pytest.fixture
def store(settings):
    return ConfigStore(settings.config_path)


@pytest.fixture
def project_path(temp_dir):
    return os.path.join(temp_dir, 'project')


@pytest.fixture
def sample_config(project_path):
    """
    Connection settings for a catalog on github.com, with a token.
    """

    return RepositoryConfig(
        remote_url=REMOTE_URL,
        username='octocat',
        project_path=project_path,
        token=SecretStr(TOKEN),
    )


@pytest.fixture
def bare_remote(temp_dir):
    """
    A local bare repository on branch main holding products.json, usable
    as a remote by real git operations.
    """

    if shutil.which('git') is None:
        pytest.skip('git is not installed')

    bare = os.path.join(temp_dir, 'remote.git')
    seed = os.path.join(temp_dir, 'seed')

    git('init', '--bare', bare)
    git('symbolic-ref', 'HEAD', 'refs/heads/main', cwd=bare)
    git('clone', bare, seed)

    Path(seed, 'products.json').write_text('[]\n')
    git('symbolic-ref', 'HEAD', 'refs/heads/main', cwd=seed)
    git('add', '-A', cwd=seed)
    git('commit', '-m', 'Initial catalog', cwd=seed)
    git('push', 'origin', 'main', cwd=seed)

    return bare


# The end.
