"""
Data model for managed plugins.
"""

import time
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict

STATUS_UP_TO_DATE = 'up_to_date'
STATUS_UPDATE_AVAILABLE = 'update_available'
STATUS_SYNCING = 'syncing'
STATUS_ERROR = 'error'

STATUSES = (STATUS_UP_TO_DATE, STATUS_UPDATE_AVAILABLE, STATUS_SYNCING, STATUS_ERROR)


@dataclass
class ManagedPlugin:
    """One repository-backed plugin installed under the plugins root."""

    slug: str
    repo_url: str
    owner: str
    repo: str
    branch: str = 'main'
    local_commit: str = ''
    remote_commit: str = ''
    last_sync: int = 0
    auto_sync: bool = False
    is_private: bool = False
    wp_plugin_name: str = ''
    wp_plugin_version: str = ''
    wp_plugin_file: str = ''
    status: str = STATUS_UP_TO_DATE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManagedPlugin':
        """Build a record from stored data, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        plugin = cls(**values)
        if plugin.status not in STATUSES:
            plugin.status = STATUS_ERROR
        return plugin

    def mark_synced(self, commit: str, plugin_info: Dict[str, str]) -> None:
        """Record a completed sync at ``commit``."""
        self.local_commit = commit
        self.remote_commit = commit
        self.last_sync = int(time.time())
        self.status = STATUS_UP_TO_DATE
        self.wp_plugin_name = plugin_info.get('name', '')
        self.wp_plugin_version = plugin_info.get('version', '')
        self.wp_plugin_file = plugin_info.get('file', '')
