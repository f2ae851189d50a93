"""
WordPress plugin host adapter.

Reads plugin header metadata (name, version, entry file) from an installed
plugin directory, and tracks activation in the ``active_plugins`` record of
the state store, the way WordPress keeps its ``active_plugins`` option.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Union

from .state import JsonStateStore

ACTIVE_PLUGINS_KEY = 'active_plugins'

# WordPress only reads the first 8 KiB of a file when looking for headers
HEADER_READ_BYTES = 8192

_HEADER_RE = {
    'name': re.compile(r'^(?:[ \t]*<\?php)?[ \t/*#@]*Plugin Name:(.*)$', re.MULTILINE | re.IGNORECASE),
    'version': re.compile(r'^(?:[ \t]*<\?php)?[ \t/*#@]*Version:(.*)$', re.MULTILINE | re.IGNORECASE),
}


def _clean_header_value(value: str) -> str:
    # Strip a trailing comment close on the same line
    value = re.sub(r'\s*(?:\*/|\?>).*', '', value)
    return value.strip()


def read_plugin_header(file_path: Union[str, Path]) -> Dict[str, str]:
    """Parse ``Plugin Name`` and ``Version`` headers from one PHP file."""
    try:
        with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
            content = f.read(HEADER_READ_BYTES)
    except OSError:
        return {}
    content = content.replace('\r', '\n')

    headers = {}
    for key, pattern in _HEADER_RE.items():
        match = pattern.search(content)
        if match:
            headers[key] = _clean_header_value(match.group(1))
    return headers


class WordPressPluginHost:
    """Header lookup and activation state for plugins under the plugins root."""

    def __init__(self, plugins_dir: Union[str, Path], store: JsonStateStore):
        self.plugins_dir = Path(plugins_dir)
        self.store = store
        self.logger = logging.getLogger(__name__)

    def get_plugin_info(self, plugin_path: Union[str, Path]) -> Dict[str, str]:
        """
        Find the plugin's entry file and read its header.

        Top-level ``*.php`` files are scanned in name order; the first one with
        a ``Plugin Name`` header wins, as in WordPress.

        Returns:
            ``{'name', 'version', 'file'}`` where ``file`` is ``<slug>/<entry>.php``;
            empty strings when no header is found
        """
        info = {'name': '', 'version': '', 'file': ''}
        plugin_path = Path(plugin_path)
        if not plugin_path.is_dir():
            return info

        for php_file in sorted(plugin_path.glob('*.php')):
            if not php_file.is_file():
                continue
            headers = read_plugin_header(php_file)
            if headers.get('name'):
                info['name'] = headers['name']
                info['version'] = headers.get('version', '')
                info['file'] = f"{plugin_path.name}/{php_file.name}"
                break

        if not info['file']:
            self.logger.debug(f"No plugin header found in {plugin_path}")
        return info

    def active_plugins(self) -> List[str]:
        active = self.store.get(ACTIVE_PLUGINS_KEY, [])
        return list(active) if isinstance(active, list) else []

    def is_active(self, plugin_file: str) -> bool:
        if not plugin_file:
            return False
        return plugin_file in self.active_plugins()

    def activate(self, plugin_file: str) -> None:
        def _activate(active):
            active = list(active or [])
            if plugin_file not in active:
                active.append(plugin_file)
            return active

        self.store.update(ACTIVE_PLUGINS_KEY, _activate, default=[])
        self.logger.info(f"Activated plugin {plugin_file}")

    def deactivate(self, plugin_file: str) -> None:
        def _deactivate(active):
            return [item for item in (active or []) if item != plugin_file]

        self.store.update(ACTIVE_PLUGINS_KEY, _deactivate, default=[])
        self.logger.info(f"Deactivated plugin {plugin_file}")
