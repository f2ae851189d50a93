"""
Plugin Manager for Git Plugin Loader

Owns the collection of managed plugins and implements their lifecycle:
adding (clone), syncing (fetch + hard reset + pull), update checks against
GitHub, branch/tag switching, auto-sync flags and removal.

Each plugin moves between ``up_to_date`` and ``update_available``, passes
through ``syncing`` while a sync runs, and lands in ``error`` when an
operation fails; re-running the operation recovers it.

Every public method returns a dict with a ``success`` flag. Failures carry
``error`` (human-readable) and ``code``.
"""

import logging
import os
import re
import shutil
import stat
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import (
    AuthFailed,
    AuthRequired,
    CheckoutFailed,
    CommandFailed,
    DirectoryExists,
    DirectoryNotFound,
    InvalidInput,
    NotFound,
    PathViolation,
    PluginExists,
    PluginLoaderError,
    TokenRequired,
    returns_result,
)
from .git import GitRunner, parse_repo_url, sanitize_repo_url, validate_ref
from .github_api import GitHubClient
from .models import (
    STATUS_ERROR,
    STATUS_SYNCING,
    STATUS_UP_TO_DATE,
    STATUS_UPDATE_AVAILABLE,
    ManagedPlugin,
)
from .plugin_host import WordPressPluginHost
from .settings import SettingsRepository
from .state import PluginRepository

_SLUG_INVALID_CHARS = re.compile(r'[^A-Za-z0-9._-]+')

AUTH_FAILURE_MARKERS = (
    'authentication failed',
    'could not read username',
    'invalid username or password',
    'terminal prompts disabled',
)


def sanitize_slug(value: str) -> str:
    """
    Turn a repository name or user input into a safe directory name.

    Raises:
        InvalidInput: if nothing usable remains
    """
    slug = _SLUG_INVALID_CHARS.sub('-', (value or '').strip())
    slug = re.sub(r'-{2,}', '-', slug).strip('.-_')
    if not slug:
        raise InvalidInput('Invalid plugin slug.')
    return slug


class PluginManager:
    """
    Manages repository-backed plugins under the plugins root.

    All collaborators are injected: the git wrapper for working-tree
    operations, the GitHub client for remote truth, the plugin and settings
    repositories for persisted state and the plugin host for header
    metadata and activation.
    """

    def __init__(self, git: GitRunner, github_api: GitHubClient, plugins: PluginRepository,
                 settings: SettingsRepository, host: WordPressPluginHost):
        self.git = git
        self.github_api = github_api
        self.plugins = plugins
        self.settings = settings
        self.host = host
        self.plugins_dir = Path(git.plugins_dir)
        self.logger = logging.getLogger(__name__)

    def _plugin_path(self, slug: str) -> Path:
        return self.plugins_dir / slug

    def _require_tree(self, slug: str) -> Path:
        plugin_path = self._plugin_path(slug)
        if not plugin_path.is_dir():
            raise DirectoryNotFound('Plugin directory not found.')
        return plugin_path

    def _set_status(self, slug: str, status: str) -> None:
        def _apply(plugin):
            plugin.status = status
        try:
            self.plugins.update(slug, _apply)
        except NotFound:
            self.logger.debug(f"Plugin {slug} disappeared before its status could be set to {status}")

    # ------------------------------------------------------------------
    # Add / remove
    # ------------------------------------------------------------------

    @returns_result
    def validate_repo(self, url: str) -> Dict[str, Any]:
        """Check that ``url`` names a readable GitHub repository and describe it."""
        repo_info = parse_repo_url(url)
        repo_data = self._fetch_repo(repo_info['owner'], repo_info['repo'])
        return {
            'success': True,
            'owner': repo_info['owner'],
            'repo': repo_info['repo'],
            'is_private': bool(repo_data.get('private')),
            'default_branch': repo_data.get('default_branch') or 'main',
        }

    def _fetch_repo(self, owner: str, repo: str) -> Dict[str, Any]:
        try:
            repo_data = self.github_api.get_repo(owner, repo)
        except NotFound:
            message = 'Repository not found or not accessible.'
            if not self.settings.has_token():
                message += ' If this is a private repository, please add your GitHub token in Settings.'
            raise NotFound(message)
        return repo_data or {}

    @returns_result
    def add_plugin(self, url: str, branch: str = 'main', slug: Optional[str] = None) -> Dict[str, Any]:
        """
        Clone a GitHub repository into the plugins root and start managing it.

        Args:
            url: GitHub repository URL (HTTPS or SSH form)
            branch: Branch or tag to check out
            slug: Optional directory name; defaults to the repository name

        Returns:
            Dict with success flag and the stored plugin record
        """
        self.git.require_tool()

        repo_info = parse_repo_url(url)
        branch = validate_ref(branch or 'main')
        owner, repo = repo_info['owner'], repo_info['repo']

        repo_data = self._fetch_repo(owner, repo)

        slug = sanitize_slug(slug or repo)
        if self.plugins.exists(slug):
            raise PluginExists('This plugin is already managed by Git Plugin Loader.')

        plugin_path = self._plugin_path(slug)
        if plugin_path.exists() or plugin_path.is_symlink():
            raise DirectoryExists('A plugin with this slug already exists.')

        is_private = bool(repo_data.get('private'))
        token = self.settings.get_token()
        if is_private and not token:
            raise TokenRequired('A GitHub token is required to clone private repositories. '
                                'Please add your token in Settings.')

        self.logger.info(f"Adding plugin {slug} from {owner}/{repo} (branch: {branch})")
        try:
            self.git.clone(url, slug, branch, token=token or None)
        except CommandFailed as e:
            raise self._clone_failure(e, is_private)

        try:
            commit = self.git.get_current_commit(plugin_path)
            plugin_info = self.host.get_plugin_info(plugin_path)
            plugin = ManagedPlugin(
                slug=slug,
                repo_url=sanitize_repo_url(url),
                owner=owner,
                repo=repo,
                branch=branch,
                is_private=is_private,
            )
            plugin.mark_synced(commit, plugin_info)
            self.plugins.add(plugin)
        except PluginLoaderError:
            # Nothing is persisted for a failed add, so the clone goes too
            self._delete_directory(plugin_path)
            raise

        self.logger.info(f"Successfully added plugin {slug} at {commit[:7]}")
        return {
            'success': True,
            'message': f"Plugin {plugin.wp_plugin_name or slug} added successfully.",
            'plugin': plugin.to_dict(),
        }

    @staticmethod
    def _clone_failure(error: CommandFailed, is_private: bool) -> PluginLoaderError:
        output = (error.output or error.message).lower()
        if any(marker in output for marker in AUTH_FAILURE_MARKERS):
            if is_private:
                return AuthFailed('Authentication failed. Please check your GitHub token in Settings.')
            return AuthRequired('Repository not accessible. If this is a private repository, '
                                'please add your GitHub token in Settings.')
        if 'remote branch' in output and 'not found' in output:
            return InvalidInput(f"Branch or tag not found: {error.output}")
        return CommandFailed(f"Clone failed: {error.message}", command=error.command,
                             output=error.output, returncode=error.returncode)

    @returns_result
    def remove_plugin(self, slug: str, delete_files: bool = False) -> Dict[str, Any]:
        """
        Stop managing a plugin, deactivating it first if it is active.

        Args:
            slug: Plugin slug
            delete_files: Also delete the working tree

        Returns:
            Dict with success flag
        """
        plugin = self.plugins.require(slug)

        if plugin.wp_plugin_file and self.host.is_active(plugin.wp_plugin_file):
            self.host.deactivate(plugin.wp_plugin_file)

        files_deleted = False
        if delete_files:
            plugin_path = self._plugin_path(slug)
            if plugin_path.exists() or plugin_path.is_symlink():
                self.logger.info(f"Deleting files of plugin {slug}")
                self._delete_directory(plugin_path)
                files_deleted = True

        self.plugins.remove(slug)
        self.logger.info(f"Removed plugin {slug}")
        return {
            'success': True,
            'message': 'Plugin removed successfully.',
            'slug': slug,
            'files_deleted': files_deleted,
        }

    def _delete_directory(self, path: Path) -> None:
        """
        Delete a working tree, refusing anything outside the plugins root.

        A symlink is unlinked, never followed. Removal is attempted in two
        stages:
        1. Normal shutil.rmtree()
        2. Fix permissions via os.chmod() then retry (git pack files are read-only)

        Raises:
            PathViolation: if ``path`` is not strictly inside the plugins root
        """
        root = self.plugins_dir.resolve()
        if path.is_symlink():
            if path.parent.resolve() != root:
                raise PathViolation('Path is outside the plugins directory.')
            path.unlink()
            return

        if not path.exists():
            return
        resolved = path.resolve()
        if resolved == root or root not in resolved.parents:
            raise PathViolation('Path is outside the plugins directory.')

        # Stage 1: Try normal removal
        try:
            shutil.rmtree(resolved)
            return
        except OSError:
            self.logger.warning(f"Permission error removing {resolved}, attempting chmod fix...")

        # Stage 2: Try chmod + retry
        for dir_root, _dirs, files in os.walk(resolved):
            dir_path = Path(dir_root)
            try:
                os.chmod(dir_path, stat.S_IRWXU)
            except OSError:
                pass
            for file in files:
                try:
                    os.chmod(dir_path / file, stat.S_IRWXU)
                except OSError:
                    pass
        shutil.rmtree(resolved)
        self.logger.info(f"Removed {resolved} after fixing permissions")

    # ------------------------------------------------------------------
    # Sync and update checks
    # ------------------------------------------------------------------

    @returns_result
    def sync_plugin(self, slug: str) -> Dict[str, Any]:
        """
        Bring a plugin's working tree to the tip of its tracked branch.

        Local modifications are discarded (hard reset). When the plugin
        tracks a tag the tree is reset to the tag instead of pulled.

        Returns:
            Dict with success flag, the updated record and HEAD commit info
        """
        self.git.require_tool()
        plugin = self.plugins.require(slug)
        plugin_path = self._require_tree(slug)

        # Persist the transition right away so other readers see it
        self._set_status(slug, STATUS_SYNCING)
        self.logger.info(f"Syncing plugin {slug} (branch: {plugin.branch})")

        try:
            self.git.fetch(plugin_path, all_remotes=True, tags=True)

            try:
                self.git.checkout(plugin_path, plugin.branch)
            except CheckoutFailed as e:
                # The tree may already be on the branch
                self.logger.debug(f"Checkout of {plugin.branch} for {slug} failed: {e}")

            if self.git.get_current_branch(plugin_path) == 'HEAD':
                # Detached HEAD: tracking a tag, nothing to pull
                self.git.reset(plugin_path, plugin.branch, hard=True)
            else:
                self.git.reset(plugin_path, 'HEAD', hard=True)
                self.git.pull(plugin_path)

            commit = self.git.get_current_commit(plugin_path)
            commit_info = self.git.get_commit_info(plugin_path)
            plugin_info = self.host.get_plugin_info(plugin_path)
        except Exception as e:
            self.logger.error(f"Sync failed for {slug}: {e}")
            self._set_status(slug, STATUS_ERROR)
            raise

        updated = self.plugins.update(slug, lambda p: p.mark_synced(commit, plugin_info))
        self.logger.info(f"Plugin {slug} synced to {commit[:7]}")
        return {
            'success': True,
            'message': 'Plugin synced successfully.',
            'plugin': updated.to_dict(),
            'commit_info': commit_info,
        }

    @returns_result
    def check_updates(self, slug: str) -> Dict[str, Any]:
        """
        Compare the working tree's HEAD with the live tip of the tracked
        branch on GitHub. The working tree is never touched.

        Returns:
            Dict with ``has_update``, both commits, remote commit info and
            the new status
        """
        plugin = self.plugins.require(slug)

        try:
            plugin_path = self._require_tree(slug)
            local_commit = self.git.get_current_commit(plugin_path)
        except PluginLoaderError:
            self._set_status(slug, STATUS_ERROR)
            raise

        remote = self.github_api.get_latest_commit(plugin.owner, plugin.repo, plugin.branch)
        has_update = local_commit != remote['sha']
        status = STATUS_UPDATE_AVAILABLE if has_update else STATUS_UP_TO_DATE

        def _apply(p):
            p.local_commit = local_commit
            p.remote_commit = remote['sha']
            p.status = status

        self.plugins.update(slug, _apply)
        if has_update:
            self.logger.info(f"Update available for {slug}: {local_commit[:7]} -> {remote['sha'][:7]}")

        return {
            'success': True,
            'has_update': has_update,
            'local_commit': local_commit,
            'remote_commit': remote['sha'],
            'commit_info': remote,
            'status': status,
        }

    @returns_result
    def check_all_updates(self) -> Dict[str, Any]:
        """Run check_updates for every managed plugin; failures stay per plugin."""
        results = {slug: self.check_updates(slug) for slug in self.plugins.slugs()}
        return self._batch_result(results)

    @returns_result
    def sync_auto_enabled(self) -> Dict[str, Any]:
        """Sync every plugin that has auto-sync enabled; failures stay per plugin."""
        results = {}
        for slug, plugin in self.plugins.all().items():
            if plugin.auto_sync:
                results[slug] = self.sync_plugin(slug)
        return self._batch_result(results)

    def _batch_result(self, results: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        failed = [slug for slug, result in results.items() if not result.get('success')]
        if failed:
            self.logger.warning(f"{len(failed)} of {len(results)} plugins failed: {', '.join(failed)}")
        return {
            'success': True,
            'results': results,
            'processed': len(results),
            'failed': failed,
        }

    @returns_result
    def get_remote_diff(self, slug: str) -> Dict[str, Any]:
        """Commits ahead/behind ``origin/<branch>`` according to local git."""
        plugin = self.plugins.require(slug)
        plugin_path = self._require_tree(slug)
        diff = self.git.get_remote_diff(plugin_path, plugin.branch)
        return {'success': True, **diff}

    # ------------------------------------------------------------------
    # Settings per plugin
    # ------------------------------------------------------------------

    @returns_result
    def toggle_auto_sync(self, slug: str, enabled: bool) -> Dict[str, Any]:
        def _apply(plugin):
            plugin.auto_sync = bool(enabled)

        self.plugins.update(slug, _apply)
        self.logger.info(f"Auto-sync {'enabled' if enabled else 'disabled'} for {slug}")
        return {
            'success': True,
            'slug': slug,
            'auto_sync': bool(enabled),
        }

    @returns_result
    def change_branch(self, slug: str, branch: str) -> Dict[str, Any]:
        """
        Switch a plugin to another branch or tag, then sync it.

        A failed checkout leaves the stored record unchanged.
        """
        self.git.require_tool()
        branch = validate_ref(branch)
        self.plugins.require(slug)
        plugin_path = self._require_tree(slug)

        self.git.fetch(plugin_path, all_remotes=True, tags=True)
        self.git.checkout(plugin_path, branch)

        def _apply(plugin):
            plugin.branch = branch

        self.plugins.update(slug, _apply)
        self.logger.info(f"Plugin {slug} switched to {branch}")
        return self.sync_plugin(slug)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @returns_result
    def get_refs(self, slug: str) -> Dict[str, Any]:
        """Branches and tags on GitHub plus the branch the plugin tracks."""
        plugin = self.plugins.require(slug)
        return {
            'success': True,
            'branches': self.github_api.get_branches(plugin.owner, plugin.repo),
            'tags': self.github_api.get_tags(plugin.owner, plugin.repo),
            'current_branch': plugin.branch,
        }

    @returns_result
    def get_refs_for_url(self, url: str) -> Dict[str, Any]:
        """Branches and tags of a repository that is not managed yet."""
        repo_info = parse_repo_url(url)
        return {
            'success': True,
            'branches': self.github_api.get_branches(repo_info['owner'], repo_info['repo']),
            'tags': self.github_api.get_tags(repo_info['owner'], repo_info['repo']),
        }

    @returns_result
    def get_plugin(self, slug: str) -> Dict[str, Any]:
        """Stored record enriched with HEAD commit info, dirty flag and activation state."""
        plugin = self.plugins.require(slug)
        data = plugin.to_dict()
        data['commit_info'] = None
        data['has_changes'] = False

        plugin_path = self._plugin_path(slug)
        if not plugin_path.is_dir():
            data['status'] = STATUS_ERROR
            data['error'] = 'Plugin directory not found.'
        else:
            try:
                data['commit_info'] = self.git.get_commit_info(plugin_path)
                data['has_changes'] = not self.git.get_status(plugin_path)['clean']
            except PluginLoaderError as e:
                self.logger.debug(f"Could not read git details for {slug}: {e}")

        data['is_active'] = self.host.is_active(plugin.wp_plugin_file)
        return {'success': True, 'plugin': data}

    @returns_result
    def get_all_plugins(self) -> Dict[str, Any]:
        """All stored records with activation state; missing trees show as errors."""
        result = {}
        for slug, plugin in self.plugins.all().items():
            data = plugin.to_dict()
            if not self._plugin_path(slug).is_dir():
                data['status'] = STATUS_ERROR
                data['error'] = 'Plugin directory not found.'
            data['is_active'] = self.host.is_active(plugin.wp_plugin_file)
            result[slug] = data
        return {'success': True, 'plugins': result}
