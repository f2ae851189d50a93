"""
Pytest fixtures for Git Plugin Loader tests.
"""

import pytest
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, Mock
from typing import Any, Dict

# Add src to path
project_root = Path(__file__).parent.parent
src_path = project_root / 'src'
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from git_plugin_loader.crypto import TokenCipher
from git_plugin_loader.git import GitRunner
from git_plugin_loader.github_api import GitHubClient
from git_plugin_loader.manager import PluginManager
from git_plugin_loader.models import ManagedPlugin
from git_plugin_loader.plugin_host import WordPressPluginHost
from git_plugin_loader.settings import SettingsRepository
from git_plugin_loader.state import JsonStateStore, PluginRepository

LOCAL_SHA = 'a' * 40
REMOTE_SHA = 'b' * 40

PLUGIN_HEADER = """<?php
/**
 * Plugin Name: Acme Widget
 * Version: 1.2.0
 */
"""


@pytest.fixture
def plugins_dir(tmp_path) -> Path:
    """An empty plugins root."""
    path = tmp_path / 'plugins'
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path) -> JsonStateStore:
    return JsonStateStore(tmp_path / 'data' / 'state.json')


@pytest.fixture
def plugin_repo(store) -> PluginRepository:
    return PluginRepository(store)


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher('test-secret')


@pytest.fixture
def settings_repo(store, cipher) -> SettingsRepository:
    return SettingsRepository(store, cipher)


@pytest.fixture
def host(plugins_dir, store) -> WordPressPluginHost:
    return WordPressPluginHost(plugins_dir, store)


def run_git(cwd: Path, *args: str) -> None:
    """Run a git command with a fixed identity, for building test repositories."""
    subprocess.run(
        ['git', '-c', 'user.name=Test', '-c', 'user.email=test@example.com',
         '-c', 'init.defaultBranch=main', '-c', 'commit.gpgsign=false'] + list(args),
        cwd=str(cwd), check=True, capture_output=True,
    )


def write_plugin_tree(plugins_dir: Path, slug: str = 'widget', header: str = PLUGIN_HEADER) -> Path:
    """Create a working tree that looks like a cloned plugin."""
    plugin_path = plugins_dir / slug
    plugin_path.mkdir(parents=True, exist_ok=True)
    (plugin_path / f'{slug}.php').write_text(header)
    return plugin_path


@pytest.fixture
def mock_git(plugins_dir) -> Any:
    """Create a mock GitRunner whose clone produces a plugin tree."""
    mock = MagicMock(spec=GitRunner)
    mock.plugins_dir = plugins_dir

    def mock_clone(url, dest_slug, branch=None, token=None):
        return write_plugin_tree(plugins_dir, dest_slug)

    mock.clone = Mock(side_effect=mock_clone)
    mock.get_current_commit = Mock(return_value=LOCAL_SHA)
    mock.get_current_branch = Mock(return_value='main')
    mock.get_commit_info = Mock(return_value={
        'hash': LOCAL_SHA,
        'short_hash': LOCAL_SHA[:7],
        'author': 'Jane Doe',
        'email': 'jane@example.com',
        'timestamp': 1700000000,
        'message': 'Initial commit',
    })
    mock.get_status = Mock(return_value={'clean': True, 'changes': []})
    mock.check_requirements = Mock(return_value={'ready': True})
    return mock


@pytest.fixture
def mock_github_api() -> Any:
    """Create a mock GitHubClient for a public repository."""
    mock = MagicMock(spec=GitHubClient)
    mock.get_repo = Mock(return_value={'private': False, 'default_branch': 'main'})
    mock.get_latest_commit = Mock(return_value={
        'sha': LOCAL_SHA,
        'message': 'Initial commit',
        'author_name': 'Jane Doe',
        'author_email': 'jane@example.com',
        'date': '2023-11-14T22:13:20Z',
        'unix_timestamp': 1700000000,
    })
    mock.get_branches = Mock(return_value=[{'name': 'main', 'commit_sha': LOCAL_SHA}])
    mock.get_tags = Mock(return_value=[{'name': 'v2.0', 'commit_sha': REMOTE_SHA}])
    return mock


@pytest.fixture
def manager(mock_git, mock_github_api, plugin_repo, settings_repo, host) -> PluginManager:
    return PluginManager(mock_git, mock_github_api, plugin_repo, settings_repo, host)


def make_plugin(**overrides: Any) -> ManagedPlugin:
    """A stored record for the acme/widget repository."""
    values: Dict[str, Any] = {
        'slug': 'widget',
        'repo_url': 'https://github.com/acme/widget.git',
        'owner': 'acme',
        'repo': 'widget',
        'branch': 'main',
        'local_commit': LOCAL_SHA,
        'remote_commit': LOCAL_SHA,
        'last_sync': 1700000000,
        'wp_plugin_name': 'Acme Widget',
        'wp_plugin_version': '1.2.0',
        'wp_plugin_file': 'widget/widget.php',
        'status': 'up_to_date',
    }
    values.update(overrides)
    return ManagedPlugin(**values)


@pytest.fixture
def managed_widget(plugins_dir, plugin_repo) -> ManagedPlugin:
    """A managed plugin with its working tree on disk."""
    write_plugin_tree(plugins_dir, 'widget')
    plugin = make_plugin()
    plugin_repo.add(plugin)
    return plugin
