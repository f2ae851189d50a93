"""
Application configuration.

Static process configuration (paths, secret, timeouts) is loaded from an
optional JSON file and then overridden by ``GPL_*`` environment variables.
Runtime settings edited by administrators (token, sync interval, export
exclusions) live in the state store instead; see ``settings.py``.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path('config') / 'config.json'

# Environment variable -> AppConfig field
ENV_OVERRIDES = {
    'GPL_PLUGINS_DIR': 'plugins_dir',
    'GPL_EXPORT_DIR': 'export_dir',
    'GPL_EXPORT_BASE_URL': 'export_base_url',
    'GPL_STATE_FILE': 'state_file',
    'GPL_AUTH_KEY': 'secret_key',
    'GPL_GIT_BINARY': 'git_binary',
    'GPL_API_URL': 'api_url',
    'GPL_LOG_LEVEL': 'log_level',
    'GPL_LOG_FILE': 'log_file',
}


@dataclass
class AppConfig:
    """Process-wide configuration, built once and passed to every service."""

    plugins_dir: Path = field(default_factory=lambda: Path('wp-content') / 'plugins')
    export_dir: Path = field(default_factory=lambda: Path('wp-content') / 'uploads' / 'gpl-exports')
    export_base_url: str = '/wp-content/uploads/gpl-exports'
    state_file: Path = field(default_factory=lambda: Path('data') / 'gpl_state.json')
    secret_key: str = ''
    git_binary: str = 'git'
    api_url: str = 'https://api.github.com'
    request_timeout: int = 30
    token_timeout: int = 15
    git_timeout: int = 300
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    def __post_init__(self):
        self.plugins_dir = Path(self.plugins_dir)
        self.export_dir = Path(self.export_dir)
        self.state_file = Path(self.state_file)
        self.export_base_url = self.export_base_url.rstrip('/')
        self.request_timeout = int(self.request_timeout)
        self.token_timeout = int(self.token_timeout)
        self.git_timeout = int(self.git_timeout)


def load_config(path: Optional[Union[str, Path]] = None,
                environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """
    Build an AppConfig from a JSON file plus environment overrides.

    Args:
        path: Config file path. Defaults to config/config.json; a missing
              file is not an error.
        environ: Environment mapping (defaults to os.environ)

    Returns:
        AppConfig instance
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path) if path else Path(environ.get('GPL_CONFIG', DEFAULT_CONFIG_PATH))

    values: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                values = json.load(f)
            logger.debug(f"Loaded configuration from {config_path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read config file {config_path}: {e}")
            values = {}

    known = {f.name for f in fields(AppConfig)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
    values = {k: v for k, v in values.items() if k in known}

    for env_name, field_name in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[field_name] = environ[env_name]

    return AppConfig(**values)
