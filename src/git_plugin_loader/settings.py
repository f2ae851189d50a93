"""
Runtime settings for Git Plugin Loader.

Settings are stored as one record in the state store and validated against
a JSON schema before every write. The GitHub token is kept encrypted.
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from jsonschema import Draft7Validator

from .crypto import TokenCipher
from .errors import AuthFailed, InvalidInput, PluginLoaderError
from .state import JsonStateStore

SETTINGS_KEY = 'gpl_settings'

SYNC_INTERVALS = {
    'hourly': 3600,
    'twicedaily': 43200,
    'daily': 86400,
}

TOKEN_PLACEHOLDER = '********'

DEFAULT_EXPORT_EXCLUSIONS = [
    '.git',
    '.gitignore',
    '.gitattributes',
    'node_modules',
    'tests',
    'test',
    '.github',
    '*.md',
    'README.md',
    'CHANGELOG.md',
    'phpunit.xml',
    'phpunit.xml.dist',
    '.travis.yml',
    '.editorconfig',
    'composer.json',
    'composer.lock',
    'package.json',
    'package-lock.json',
    'Gruntfile.js',
    'Gulpfile.js',
    'webpack.config.js',
]

DEFAULT_SETTINGS: Dict[str, Any] = {
    'github_token': '',
    'auto_sync_interval': 'hourly',
    'export_exclusions': DEFAULT_EXPORT_EXCLUSIONS,
    'cleanup_exports_after': 24,
}

SETTINGS_SCHEMA = {
    'type': 'object',
    'properties': {
        'github_token': {'type': 'string'},
        'auto_sync_interval': {'type': 'string', 'enum': list(SYNC_INTERVALS)},
        'export_exclusions': {
            'type': 'array',
            'items': {'type': 'string', 'minLength': 1},
        },
        'cleanup_exports_after': {'type': 'integer', 'minimum': 1, 'maximum': 168},
    },
    'required': list(DEFAULT_SETTINGS),
}

_validator = Draft7Validator(SETTINGS_SCHEMA)


def validate_settings(settings: Dict[str, Any]) -> List[str]:
    """Return schema violations as ``path: message`` strings (empty if valid)."""
    errors = []
    for error in _validator.iter_errors(settings):
        error_path = '.'.join(str(p) for p in error.path) or '(root)'
        errors.append(f"{error_path}: {error.message}")
    return errors


def parse_exclusions(value: Union[str, Iterable[str]]) -> List[str]:
    """Accept a newline separated string or a list; trim and drop blanks."""
    if isinstance(value, str):
        value = value.splitlines()
    return [line.strip() for line in value if line and line.strip()]


class SettingsRepository:
    """Reads and writes the settings record."""

    def __init__(self, store: JsonStateStore, cipher: TokenCipher):
        self.store = store
        self.cipher = cipher
        self.logger = logging.getLogger(__name__)

    def get(self, key: Optional[str] = None) -> Any:
        """Return all settings merged over the defaults, or a single value."""
        settings = copy.deepcopy(DEFAULT_SETTINGS)
        stored = self.store.get(SETTINGS_KEY, {})
        if isinstance(stored, dict):
            settings.update(stored)
        if key is not None:
            return settings.get(key)
        return settings

    def update(self, new_settings: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge ``new_settings`` into the stored record.

        Raises:
            InvalidInput: if the merged settings violate the schema
        """
        def _merge(current):
            merged = copy.deepcopy(DEFAULT_SETTINGS)
            if isinstance(current, dict):
                merged.update(current)
            merged.update(new_settings)
            errors = validate_settings(merged)
            if errors:
                raise InvalidInput(f"Invalid settings: {'; '.join(errors)}")
            return merged

        return self.store.update(SETTINGS_KEY, _merge, default={})

    def has_token(self) -> bool:
        return bool(self.get('github_token'))

    def get_token(self) -> str:
        """Return the decrypted token, or an empty string when none is set."""
        return self.cipher.decrypt(self.get('github_token') or '')

    def set_token(self, token: str) -> None:
        self.update({'github_token': self.cipher.encrypt(token)})

    def clear_token(self) -> None:
        self.update({'github_token': ''})

    def public_view(self) -> Dict[str, Any]:
        """Settings safe to show to callers (token masked)."""
        settings = self.get()
        settings['github_token'] = TOKEN_PLACEHOLDER if settings.get('github_token') else ''
        settings['has_token'] = bool(settings.get('github_token'))
        return settings


class SettingsService:
    """Applies administrator edits to the settings record."""

    def __init__(self, settings: SettingsRepository, github_api):
        self.settings = settings
        self.github_api = github_api
        self.logger = logging.getLogger(__name__)

    def save_settings(self, github_token: Optional[str] = None, clear_token: bool = False,
                      auto_sync_interval: Optional[str] = None,
                      export_exclusions: Optional[Union[str, List[str]]] = None,
                      cleanup_exports_after: Optional[Union[int, str]] = None) -> Dict[str, Any]:
        """
        Save settings edited by an administrator.

        A new token is verified against the GitHub API before it is stored.
        Unknown intervals and out-of-range cleanup hours are ignored, leaving
        the previous value in place.

        Returns:
            Dict with success flag and the masked settings, or an error
        """
        try:
            changes: Dict[str, Any] = {}

            if clear_token:
                changes['github_token'] = ''
            elif github_token and github_token.strip() and github_token != TOKEN_PLACEHOLDER:
                token = github_token.strip()
                if not self.github_api.verify_token(token):
                    raise AuthFailed('Invalid GitHub token.')
                changes['github_token'] = self.settings.cipher.encrypt(token)

            if auto_sync_interval is not None:
                if auto_sync_interval in SYNC_INTERVALS:
                    changes['auto_sync_interval'] = auto_sync_interval
                else:
                    self.logger.warning(f"Ignoring unknown sync interval: {auto_sync_interval}")

            if export_exclusions is not None:
                changes['export_exclusions'] = parse_exclusions(export_exclusions)

            if cleanup_exports_after is not None:
                try:
                    hours = int(cleanup_exports_after)
                except (TypeError, ValueError):
                    hours = 0
                if 1 <= hours <= 168:
                    changes['cleanup_exports_after'] = hours
                else:
                    self.logger.warning(f"Ignoring out-of-range cleanup hours: {cleanup_exports_after}")

            if changes:
                self.settings.update(changes)
                self.logger.info(f"Settings updated: {', '.join(sorted(changes))}")

            return {
                'success': True,
                'message': 'Settings saved successfully.',
                'settings': self.settings.public_view(),
            }
        except PluginLoaderError as e:
            self.logger.warning(f"Settings not saved: {e}")
            return e.to_dict()
