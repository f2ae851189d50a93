"""
Persisted state for Git Plugin Loader.

A single JSON document holds every record (managed plugins, settings,
active plugins, schedule bookkeeping). ``JsonStateStore`` is the key-value
layer; ``PluginRepository`` owns the managed-plugin collection on top of it.

Every mutation is a read-modify-write performed inside one locked section,
so a writer never works from a stale copy of the document. Concurrent
processes still race (last writer wins) since there is no file locking.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import NotFound, PluginExists, PluginLoaderError
from .models import ManagedPlugin

PLUGINS_KEY = 'gpl_managed_plugins'


class StateStoreError(PluginLoaderError):
    code = 'state_error'


class JsonStateStore:
    """Key-value store persisted as one JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"State file {self.path} is corrupt: {e}")
        except OSError as e:
            raise StateStoreError(f"Could not read state file {self.path}: {e}")
        if not isinstance(data, dict):
            raise StateStoreError(f"State file {self.path} does not contain an object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix='.gpl_state_', suffix='.json', dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StateStoreError(f"Could not write state file {self.path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            data = self._read()
        if key not in data:
            return copy.deepcopy(default)
        return data[key]

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """
        Apply ``fn`` to the current value of ``key`` and store the result.

        Args:
            key: Record name
            fn: Receives the current value (or a copy of ``default``) and
                returns the new value
            default: Value used when the record does not exist yet

        Returns:
            The stored value
        """
        with self._lock:
            data = self._read()
            current = data[key] if key in data else copy.deepcopy(default)
            data[key] = fn(current)
            self._write(data)
            return data[key]


class PluginRepository:
    """
    Owns the managed-plugin collection (slug -> record).

    ``update()`` re-reads the collection right before writing and holds a
    per-slug lock, so two mutations of the same plugin within one process
    are serialized.
    """

    def __init__(self, store: JsonStateStore):
        self.store = store
        self.logger = logging.getLogger(__name__)
        self._slug_locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, slug: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._slug_locks.get(slug)
            if lock is None:
                lock = threading.RLock()
                self._slug_locks[slug] = lock
            return lock

    def _raw(self) -> Dict[str, Dict[str, Any]]:
        raw = self.store.get(PLUGINS_KEY, {})
        return raw if isinstance(raw, dict) else {}

    def all(self) -> Dict[str, ManagedPlugin]:
        return {slug: ManagedPlugin.from_dict(data) for slug, data in self._raw().items()}

    def slugs(self) -> List[str]:
        return list(self._raw().keys())

    def exists(self, slug: str) -> bool:
        return slug in self._raw()

    def get(self, slug: str) -> Optional[ManagedPlugin]:
        data = self._raw().get(slug)
        return ManagedPlugin.from_dict(data) if data is not None else None

    def require(self, slug: str) -> ManagedPlugin:
        plugin = self.get(slug)
        if plugin is None:
            raise NotFound('Plugin not found.')
        return plugin

    def add(self, plugin: ManagedPlugin) -> ManagedPlugin:
        def _add(plugins):
            if plugin.slug in plugins:
                raise PluginExists('This plugin is already managed by Git Plugin Loader.')
            plugins[plugin.slug] = plugin.to_dict()
            return plugins

        with self.lock_for(plugin.slug):
            self.store.update(PLUGINS_KEY, _add, default={})
        self.logger.debug(f"Stored new plugin record {plugin.slug}")
        return plugin

    def update(self, slug: str, fn: Callable[[ManagedPlugin], None]) -> ManagedPlugin:
        """
        Mutate one record in place and persist it immediately.

        Raises:
            NotFound: if the slug is not managed
        """
        result = {}

        def _update(plugins):
            if slug not in plugins:
                raise NotFound('Plugin not found.')
            plugin = ManagedPlugin.from_dict(plugins[slug])
            fn(plugin)
            plugins[slug] = plugin.to_dict()
            result['plugin'] = plugin
            return plugins

        with self.lock_for(slug):
            self.store.update(PLUGINS_KEY, _update, default={})
        return result['plugin']

    def remove(self, slug: str) -> None:
        def _remove(plugins):
            if slug not in plugins:
                raise NotFound('Plugin not found.')
            del plugins[slug]
            return plugins

        with self.lock_for(slug):
            self.store.update(PLUGINS_KEY, _remove, default={})
