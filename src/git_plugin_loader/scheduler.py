"""
Scheduled tasks for Git Plugin Loader.

Three periodic tasks are exposed as plain entry points for an external
scheduler (cron, systemd timer) to invoke:

- ``check_updates``: compare every managed plugin with GitHub
- ``auto_sync``: sync the plugins that have auto-sync enabled
- ``cleanup_exports``: delete export archives past the retention age

The first two follow the ``auto_sync_interval`` setting; cleanup runs daily.
The time of each task's last run is kept in the ``gpl_schedule`` record so
``due_tasks()`` can tell an every-few-minutes cron tick which tasks to run.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from .errors import InvalidInput, ToolUnavailable
from .export import ExportManager
from .git import GitRunner
from .manager import PluginManager
from .settings import SYNC_INTERVALS, SettingsRepository
from .state import JsonStateStore

SCHEDULE_KEY = 'gpl_schedule'

TASK_CHECK_UPDATES = 'check_updates'
TASK_AUTO_SYNC = 'auto_sync'
TASK_CLEANUP_EXPORTS = 'cleanup_exports'
TASKS = (TASK_CHECK_UPDATES, TASK_AUTO_SYNC, TASK_CLEANUP_EXPORTS)

CLEANUP_INTERVAL = 'daily'


class ScheduledTasks:
    """Entry points for periodic work, plus bookkeeping of when each ran."""

    def __init__(self, manager: PluginManager, exporter: ExportManager,
                 settings: SettingsRepository, git: GitRunner, store: JsonStateStore):
        self.manager = manager
        self.exporter = exporter
        self.settings = settings
        self.git = git
        self.store = store
        self.logger = logging.getLogger(__name__)

    def _interval_name(self, task: str) -> str:
        if task == TASK_CLEANUP_EXPORTS:
            return CLEANUP_INTERVAL
        interval = self.settings.get('auto_sync_interval')
        return interval if interval in SYNC_INTERVALS else 'hourly'

    def _record_run(self, task: str, now: Optional[float] = None) -> None:
        ran_at = int(now if now is not None else time.time())

        def _apply(schedule):
            schedule = dict(schedule or {})
            schedule[task] = ran_at
            return schedule

        self.store.update(SCHEDULE_KEY, _apply, default={})

    def _last_runs(self) -> Dict[str, int]:
        schedule = self.store.get(SCHEDULE_KEY, {})
        return schedule if isinstance(schedule, dict) else {}

    def _git_ready(self, task: str) -> Optional[Dict[str, Any]]:
        """None when git is usable, otherwise the skipped-task result."""
        if self.git.check_requirements()['ready']:
            return None
        error = ToolUnavailable('Git is not available; skipping scheduled task.')
        self.logger.warning(f"Skipping {task}: {error}")
        result = error.to_dict()
        result['skipped'] = True
        return result

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def check_updates(self) -> Dict[str, Any]:
        skipped = self._git_ready(TASK_CHECK_UPDATES)
        if skipped:
            return skipped
        self.logger.info("Running scheduled update check")
        result = self.manager.check_all_updates()
        self._record_run(TASK_CHECK_UPDATES)
        return result

    def auto_sync(self) -> Dict[str, Any]:
        skipped = self._git_ready(TASK_AUTO_SYNC)
        if skipped:
            return skipped
        self.logger.info("Running scheduled auto-sync")
        result = self.manager.sync_auto_enabled()
        self._record_run(TASK_AUTO_SYNC)
        return result

    def cleanup_exports(self) -> Dict[str, Any]:
        self.logger.info("Running scheduled export cleanup")
        result = self.exporter.cleanup_exports()
        self._record_run(TASK_CLEANUP_EXPORTS)
        return result

    def run(self, task: str) -> Dict[str, Any]:
        """
        Run one task by name.

        Raises:
            InvalidInput: for an unknown task name
        """
        if task not in TASKS:
            raise InvalidInput(f"Unknown task: {task}")
        return getattr(self, task)()

    def due_tasks(self, now: Optional[float] = None) -> List[str]:
        """Tasks whose interval has elapsed since their last recorded run."""
        now = time.time() if now is None else now
        last_runs = self._last_runs()
        due = []
        for task in TASKS:
            interval = SYNC_INTERVALS[self._interval_name(task)]
            if now - last_runs.get(task, 0) >= interval:
                due.append(task)
        return due

    def run_due(self, now: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """Run every due task; one task's failure does not stop the others."""
        results = {}
        for task in self.due_tasks(now):
            results[task] = self.run(task)
        return results

    def get_schedule_info(self, now: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """Per task: interval name, last run and next due time (unix seconds)."""
        now = time.time() if now is None else now
        last_runs = self._last_runs()
        info = {}
        for task in TASKS:
            interval_name = self._interval_name(task)
            last_run = last_runs.get(task, 0)
            next_run = last_run + SYNC_INTERVALS[interval_name] if last_run else int(now)
            info[task] = {
                'interval': interval_name,
                'last_run': last_run,
                'next_run': next_run,
            }
        return info
