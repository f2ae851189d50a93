"""
Tests for PluginManager.

Git and the GitHub API are mocked; the state store, settings and plugin
host are real and backed by tmp_path.
"""

import shutil
import subprocess
import pytest
from unittest.mock import patch

from git_plugin_loader.errors import (
    CheckoutFailed,
    CommandFailed,
    NotFound,
    RateLimited,
    ToolUnavailable,
)
from git_plugin_loader.git import GitRunner
from git_plugin_loader.manager import PluginManager

from conftest import LOCAL_SHA, REMOTE_SHA, make_plugin, run_git, write_plugin_tree

GIT_AVAILABLE = shutil.which('git') is not None


class TestAddPlugin:
    """Test cloning a repository into a managed plugin."""

    def test_add_public_repository(self, manager, mock_git, plugin_repo):
        result = manager.add_plugin('https://github.com/acme/widget', 'main')

        assert result['success'] is True
        stored = plugin_repo.get('widget')
        assert stored.slug == 'widget'
        assert stored.branch == 'main'
        assert stored.status == 'up_to_date'
        assert stored.is_private is False
        assert stored.local_commit == LOCAL_SHA
        assert stored.remote_commit == LOCAL_SHA
        assert stored.wp_plugin_name == 'Acme Widget'
        assert stored.wp_plugin_version == '1.2.0'
        assert stored.wp_plugin_file == 'widget/widget.php'
        assert stored.repo_url == 'https://github.com/acme/widget.git'
        mock_git.clone.assert_called_once_with('https://github.com/acme/widget', 'widget', 'main', token=None)

    def test_add_with_custom_slug(self, manager, plugin_repo):
        result = manager.add_plugin('git@github.com:acme/widget.git', 'main', 'my-widget')

        assert result['success'] is True
        assert plugin_repo.exists('my-widget')
        assert not plugin_repo.exists('widget')

    def test_add_duplicate_slug_conflicts(self, manager, plugin_repo):
        assert manager.add_plugin('https://github.com/acme/widget')['success'] is True

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['success'] is False
        assert result['code'] == 'plugin_exists'
        assert plugin_repo.slugs() == ['widget']

    def test_add_existing_directory_conflicts(self, manager, plugins_dir, mock_git):
        (plugins_dir / 'widget').mkdir()

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['code'] == 'directory_exists'
        mock_git.clone.assert_not_called()

    def test_add_invalid_url(self, manager, mock_github_api):
        result = manager.add_plugin('https://gitlab.com/acme/widget')

        assert result['success'] is False
        assert result['code'] == 'invalid_url'
        mock_github_api.get_repo.assert_not_called()

    def test_add_invalid_branch(self, manager, mock_git):
        result = manager.add_plugin('https://github.com/acme/widget', '--upload-pack=evil')

        assert result['code'] == 'invalid_input'
        mock_git.clone.assert_not_called()

    def test_private_repository_requires_token(self, manager, mock_git, mock_github_api, plugin_repo):
        mock_github_api.get_repo.return_value = {'private': True}

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['code'] == 'token_required'
        mock_git.clone.assert_not_called()
        assert plugin_repo.slugs() == []

    def test_private_repository_clones_with_token(self, manager, mock_git, mock_github_api,
                                                  settings_repo, plugin_repo):
        mock_github_api.get_repo.return_value = {'private': True}
        settings_repo.set_token('ghp_secret')

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['success'] is True
        assert plugin_repo.get('widget').is_private is True
        assert mock_git.clone.call_args.kwargs['token'] == 'ghp_secret'

    def test_missing_repository_hints_at_token(self, manager, mock_github_api):
        mock_github_api.get_repo.side_effect = NotFound('Not Found')

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['code'] == 'not_found'
        assert 'token' in result['error']

    def test_clone_auth_failure_on_public_repo(self, manager, mock_git):
        mock_git.clone.side_effect = CommandFailed(
            'fatal: could not read Username for https://github.com', output='fatal: could not read Username')

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['code'] == 'auth_required'

    def test_clone_auth_failure_on_private_repo(self, manager, mock_git, mock_github_api, settings_repo):
        mock_github_api.get_repo.return_value = {'private': True}
        settings_repo.set_token('ghp_expired')
        mock_git.clone.side_effect = CommandFailed(
            'Authentication failed', output='remote: Invalid username or password.\nAuthentication failed')

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['code'] == 'auth_failed'

    def test_failure_after_clone_leaves_nothing_behind(self, manager, mock_git, plugins_dir, plugin_repo):
        mock_git.get_current_commit.side_effect = CommandFailed('fatal: bad HEAD')

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['success'] is False
        assert not (plugins_dir / 'widget').exists()
        assert plugin_repo.slugs() == []

    def test_refused_without_git(self, manager, mock_git):
        mock_git.require_tool.side_effect = ToolUnavailable('Git is not installed on this server.')

        result = manager.add_plugin('https://github.com/acme/widget')

        assert result['code'] == 'tool_unavailable'
        mock_git.clone.assert_not_called()


class TestSyncPlugin:
    """Test fast-forward sync of a working tree."""

    def test_sync_moves_to_upstream_tip(self, manager, mock_git, plugins_dir, plugin_repo, managed_widget):
        mock_git.get_current_commit.return_value = REMOTE_SHA

        result = manager.sync_plugin('widget')

        assert result['success'] is True
        stored = plugin_repo.get('widget')
        assert stored.local_commit == REMOTE_SHA
        assert stored.remote_commit == REMOTE_SHA
        assert stored.status == 'up_to_date'
        plugin_path = plugins_dir / 'widget'
        mock_git.fetch.assert_called_once_with(plugin_path, all_remotes=True, tags=True)
        mock_git.reset.assert_called_once_with(plugin_path, 'HEAD', hard=True)
        mock_git.pull.assert_called_once_with(plugin_path)

    def test_checkout_failure_is_tolerated(self, manager, mock_git, managed_widget):
        mock_git.checkout.side_effect = CheckoutFailed('already on main')

        assert manager.sync_plugin('widget')['success'] is True

    def test_pull_failure_sets_error_status(self, manager, mock_git, plugin_repo, managed_widget):
        mock_git.pull.side_effect = CommandFailed('fatal: unable to access')

        result = manager.sync_plugin('widget')

        assert result['success'] is False
        assert result['code'] == 'command_failed'
        assert plugin_repo.get('widget').status == 'error'

    def test_unexpected_failure_sets_error_status(self, manager, host, plugin_repo, managed_widget):
        with patch.object(host, 'get_plugin_info', side_effect=PermissionError('denied')):
            result = manager.sync_plugin('widget')

        assert result['success'] is False
        assert result['error'] == 'denied'
        assert plugin_repo.get('widget').status == 'error'

    def test_error_status_recovers_on_next_sync(self, manager, mock_git, plugin_repo, managed_widget):
        mock_git.pull.side_effect = CommandFailed('fatal: unable to access')
        manager.sync_plugin('widget')
        mock_git.pull.side_effect = None

        assert manager.sync_plugin('widget')['success'] is True
        assert plugin_repo.get('widget').status == 'up_to_date'

    def test_tag_is_reset_instead_of_pulled(self, manager, mock_git, plugins_dir, plugin_repo):
        write_plugin_tree(plugins_dir, 'widget')
        plugin_repo.add(make_plugin(branch='v2.0'))
        mock_git.get_current_branch.return_value = 'HEAD'

        result = manager.sync_plugin('widget')

        assert result['success'] is True
        mock_git.reset.assert_called_once_with(plugins_dir / 'widget', 'v2.0', hard=True)
        mock_git.pull.assert_not_called()

    def test_missing_directory(self, manager, plugin_repo):
        plugin_repo.add(make_plugin())

        result = manager.sync_plugin('widget')

        assert result['code'] == 'directory_not_found'

    def test_unknown_plugin(self, manager):
        assert manager.sync_plugin('nope')['code'] == 'not_found'


class TestCheckUpdates:
    """Test comparing the working tree with GitHub."""

    def test_update_available(self, manager, mock_git, mock_github_api, plugin_repo, managed_widget):
        mock_github_api.get_latest_commit.return_value = {'sha': REMOTE_SHA, 'message': 'New feature'}

        result = manager.check_updates('widget')

        assert result['success'] is True
        assert result['has_update'] is True
        assert result['local_commit'] == LOCAL_SHA
        assert result['remote_commit'] == REMOTE_SHA
        stored = plugin_repo.get('widget')
        assert stored.status == 'update_available'
        assert stored.remote_commit == REMOTE_SHA
        mock_github_api.get_latest_commit.assert_called_once_with('acme', 'widget', 'main')
        # The working tree is never touched
        mock_git.fetch.assert_not_called()
        mock_git.reset.assert_not_called()
        mock_git.pull.assert_not_called()
        mock_git.checkout.assert_not_called()

    def test_up_to_date(self, manager, plugin_repo, managed_widget):
        result = manager.check_updates('widget')

        assert result['has_update'] is False
        assert result['status'] == 'up_to_date'

    def test_rate_limit_is_reported_and_status_kept(self, manager, mock_github_api, plugin_repo, managed_widget):
        mock_github_api.get_latest_commit.side_effect = RateLimited('rate limit exceeded', reset_at=1700003600)

        result = manager.check_updates('widget')

        assert result['code'] == 'rate_limited'
        assert result['reset_at'] == 1700003600
        assert plugin_repo.get('widget').status == 'up_to_date'

    def test_missing_tree_sets_error(self, manager, plugin_repo):
        plugin_repo.add(make_plugin())

        result = manager.check_updates('widget')

        assert result['success'] is False
        assert plugin_repo.get('widget').status == 'error'

    def test_check_all_isolates_failures(self, manager, mock_github_api, plugins_dir, plugin_repo, managed_widget):
        plugin_repo.add(make_plugin(slug='gadget', repo='gadget', wp_plugin_file='gadget/gadget.php'))
        mock_github_api.get_latest_commit.return_value = {'sha': REMOTE_SHA}

        result = manager.check_all_updates()

        assert result['success'] is True
        assert result['results']['widget']['has_update'] is True
        assert result['results']['gadget']['success'] is False
        assert result['failed'] == ['gadget']
        assert plugin_repo.get('widget').status == 'update_available'

    def test_sync_auto_enabled_only_syncs_flagged(self, manager, mock_git, plugins_dir, plugin_repo, managed_widget):
        write_plugin_tree(plugins_dir, 'gadget')
        plugin_repo.add(make_plugin(slug='gadget', repo='gadget', auto_sync=True))

        result = manager.sync_auto_enabled()

        assert list(result['results']) == ['gadget']
        mock_git.pull.assert_called_once_with(plugins_dir / 'gadget')


class TestBranchesAndFlags:
    """Test branch switching, auto-sync flags and ref listing."""

    def test_change_branch_to_tag(self, manager, mock_git, plugins_dir, plugin_repo, managed_widget):
        mock_git.get_current_branch.return_value = 'HEAD'
        mock_git.get_current_commit.return_value = REMOTE_SHA

        result = manager.change_branch('widget', 'v2.0')

        assert result['success'] is True
        stored = plugin_repo.get('widget')
        assert stored.branch == 'v2.0'
        assert stored.local_commit == REMOTE_SHA
        assert stored.status == 'up_to_date'
        mock_git.checkout.assert_any_call(plugins_dir / 'widget', 'v2.0')

    def test_failed_checkout_leaves_state_unchanged(self, manager, mock_git, plugin_repo, managed_widget):
        mock_git.checkout.side_effect = CheckoutFailed("error: pathspec 'nope' did not match")

        result = manager.change_branch('widget', 'nope')

        assert result['code'] == 'checkout_failed'
        assert plugin_repo.get('widget').branch == 'main'

    def test_change_branch_rejects_option_like_ref(self, manager, mock_git, managed_widget):
        result = manager.change_branch('widget', '--orphan')

        assert result['code'] == 'invalid_input'
        mock_git.checkout.assert_not_called()

    def test_toggle_auto_sync(self, manager, plugin_repo, managed_widget):
        assert manager.toggle_auto_sync('widget', True)['auto_sync'] is True
        assert plugin_repo.get('widget').auto_sync is True

        manager.toggle_auto_sync('widget', False)
        assert plugin_repo.get('widget').auto_sync is False

    def test_toggle_auto_sync_unknown_plugin(self, manager):
        assert manager.toggle_auto_sync('nope', True)['code'] == 'not_found'

    def test_get_refs(self, manager, managed_widget):
        result = manager.get_refs('widget')

        assert result['branches'] == [{'name': 'main', 'commit_sha': LOCAL_SHA}]
        assert result['tags'] == [{'name': 'v2.0', 'commit_sha': REMOTE_SHA}]
        assert result['current_branch'] == 'main'

    def test_get_refs_for_url(self, manager, mock_github_api):
        result = manager.get_refs_for_url('https://github.com/acme/gadget')

        assert result['success'] is True
        mock_github_api.get_branches.assert_called_once_with('acme', 'gadget')

    def test_validate_repo(self, manager, mock_github_api):
        mock_github_api.get_repo.return_value = {'private': True, 'default_branch': 'develop'}

        result = manager.validate_repo('git@github.com:acme/widget.git')

        assert result == {
            'success': True,
            'owner': 'acme',
            'repo': 'widget',
            'is_private': True,
            'default_branch': 'develop',
        }

    def test_remote_diff(self, manager, mock_git, managed_widget):
        mock_git.get_remote_diff.return_value = {'ahead': 0, 'behind': 3}

        result = manager.get_remote_diff('widget')

        assert result == {'success': True, 'ahead': 0, 'behind': 3}


class TestRemoveAndRead:
    """Test removal and read-only projections."""

    def test_remove_deactivates_and_keeps_files(self, manager, host, plugins_dir, plugin_repo, managed_widget):
        host.activate('widget/widget.php')

        result = manager.remove_plugin('widget')

        assert result['success'] is True
        assert result['files_deleted'] is False
        assert not host.is_active('widget/widget.php')
        assert (plugins_dir / 'widget').exists()
        assert not plugin_repo.exists('widget')

    def test_remove_with_files(self, manager, plugins_dir, plugin_repo, managed_widget):
        (plugins_dir / 'widget' / '.git' / 'objects').mkdir(parents=True)

        result = manager.remove_plugin('widget', delete_files=True)

        assert result['files_deleted'] is True
        assert not (plugins_dir / 'widget').exists()
        assert plugins_dir.exists()

    def test_remove_unknown_plugin(self, manager):
        assert manager.remove_plugin('nope')['code'] == 'not_found'

    def test_get_plugin_details(self, manager, mock_git, host, managed_widget):
        host.activate('widget/widget.php')
        mock_git.get_status.return_value = {'clean': False, 'changes': [' M widget.php']}

        result = manager.get_plugin('widget')

        plugin = result['plugin']
        assert plugin['is_active'] is True
        assert plugin['has_changes'] is True
        assert plugin['commit_info']['hash'] == LOCAL_SHA

    def test_missing_tree_reported_without_touching_record(self, manager, plugin_repo):
        plugin_repo.add(make_plugin())

        result = manager.get_all_plugins()

        assert result['plugins']['widget']['status'] == 'error'
        assert result['plugins']['widget']['error'] == 'Plugin directory not found.'
        assert plugin_repo.get('widget').status == 'up_to_date'

    def test_unexpected_error_becomes_result(self, manager, mock_git, managed_widget):
        mock_git.get_current_commit.side_effect = RuntimeError('boom')

        result = manager.check_updates('widget')

        assert result == {'success': False, 'error': 'boom', 'code': 'error'}


def head_of(path):
    return subprocess.run(['git', 'rev-parse', 'HEAD'], cwd=str(path),
                          capture_output=True, text=True, check=True).stdout.strip()


def commit_version(seed, version):
    (seed / 'widget.php').write_text(f"<?php\n/**\n * Plugin Name: Acme Widget\n * Version: {version}\n */\n")
    run_git(seed, 'add', 'widget.php')
    run_git(seed, 'commit', '-m', f'Release {version}')
    return head_of(seed)


@pytest.fixture
def upstream(tmp_path, plugins_dir, plugin_repo):
    """
    A local bare origin with a managed clone under the plugins root.

    After the clone, upstream gains a ``v2.0`` tag and a newer commit on
    ``main``, so the working tree is behind on both.
    """
    seed = tmp_path / 'seed'
    seed.mkdir()
    run_git(seed, 'init')
    initial = commit_version(seed, '1.0.0')
    origin = tmp_path / 'origin.git'
    run_git(tmp_path, 'clone', '--bare', str(seed), str(origin))
    run_git(plugins_dir, 'clone', str(origin), 'widget')
    plugin_repo.add(make_plugin(local_commit=initial, remote_commit=initial, wp_plugin_version='1.0.0'))

    tagged = commit_version(seed, '2.0.0')
    run_git(seed, 'tag', 'v2.0')
    tip = commit_version(seed, '2.1.0')
    run_git(seed, 'push', str(origin), 'main', '--tags')
    return {'initial': initial, 'tagged': tagged, 'tip': tip}


@pytest.fixture
def real_manager(plugins_dir, mock_github_api, plugin_repo, settings_repo, host):
    return PluginManager(GitRunner(plugins_dir), mock_github_api, plugin_repo, settings_repo, host)


@pytest.mark.skipif(not GIT_AVAILABLE, reason="git is not installed")
class TestRealUpstream:
    """Test sync and branch switching against a real local origin."""

    def test_sync_fast_forwards_to_tip(self, real_manager, plugin_repo, plugins_dir, upstream):
        result = real_manager.sync_plugin('widget')

        assert result['success'] is True, result
        stored = plugin_repo.get('widget')
        assert stored.local_commit == upstream['tip']
        assert stored.wp_plugin_version == '2.1.0'
        assert stored.status == 'up_to_date'
        assert head_of(plugins_dir / 'widget') == upstream['tip']

    def test_sync_discards_local_edits(self, real_manager, plugins_dir, upstream):
        (plugins_dir / 'widget' / 'widget.php').write_text('<?php // local edit\n')

        assert real_manager.sync_plugin('widget')['success'] is True
        assert 'Version: 2.1.0' in (plugins_dir / 'widget' / 'widget.php').read_text()

    def test_change_branch_to_tag(self, real_manager, plugin_repo, plugins_dir, upstream):
        result = real_manager.change_branch('widget', 'v2.0')

        assert result['success'] is True, result
        stored = plugin_repo.get('widget')
        assert stored.branch == 'v2.0'
        assert stored.local_commit == upstream['tagged']
        assert stored.wp_plugin_version == '2.0.0'
        assert real_manager.git.get_current_branch(plugins_dir / 'widget') == 'HEAD'

        # Syncing a tag resets to it rather than pulling
        assert real_manager.sync_plugin('widget')['success'] is True
        assert head_of(plugins_dir / 'widget') == upstream['tagged']

    def test_change_to_unknown_branch_keeps_record(self, real_manager, plugin_repo, upstream):
        result = real_manager.change_branch('widget', 'no-such-branch')

        assert result['code'] == 'checkout_failed'
        assert plugin_repo.get('widget').branch == 'main'
