"""
Service wiring for Git Plugin Loader.

Every component receives its collaborators through its constructor;
``build_services`` is the one place that decides which concrete objects
are used.
"""

import logging
from dataclasses import dataclass

from .config import AppConfig
from .crypto import TokenCipher
from .export import ExportManager
from .git import GitRunner
from .github_api import GitHubClient
from .manager import PluginManager
from .plugin_host import WordPressPluginHost
from .scheduler import ScheduledTasks
from .settings import SettingsRepository, SettingsService
from .state import JsonStateStore, PluginRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The wired component graph for one process."""

    config: AppConfig
    store: JsonStateStore
    settings: SettingsRepository
    settings_service: SettingsService
    git: GitRunner
    github_api: GitHubClient
    host: WordPressPluginHost
    manager: PluginManager
    exporter: ExportManager
    scheduler: ScheduledTasks


def build_services(config: AppConfig) -> Services:
    """
    Build every component for ``config``.

    Creates the plugins directory when missing; the export directory is
    created on first export.
    """
    config.plugins_dir.mkdir(parents=True, exist_ok=True)

    store = JsonStateStore(config.state_file)
    settings = SettingsRepository(store, TokenCipher(config.secret_key))
    plugins = PluginRepository(store)

    git = GitRunner(config.plugins_dir, git_binary=config.git_binary, timeout=config.git_timeout)
    github_api = GitHubClient(
        settings,
        api_url=config.api_url,
        timeout=config.request_timeout,
        token_timeout=config.token_timeout,
    )
    host = WordPressPluginHost(config.plugins_dir, store)

    manager = PluginManager(git, github_api, plugins, settings, host)
    exporter = ExportManager(plugins, settings, config.plugins_dir, config.export_dir,
                             base_url=config.export_base_url)
    scheduler = ScheduledTasks(manager, exporter, settings, git, store)

    logger.debug(f"Services built for plugins dir {config.plugins_dir}")
    return Services(
        config=config,
        store=store,
        settings=settings,
        settings_service=SettingsService(settings, github_api),
        git=git,
        github_api=github_api,
        host=host,
        manager=manager,
        exporter=exporter,
        scheduler=scheduler,
    )
