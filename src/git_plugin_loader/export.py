"""
Export engine for Git Plugin Loader.

Builds clean ZIP archives of managed plugins: the working tree is copied to
a scratch directory with exclusion patterns applied during the copy, the
copy is archived under a ``<slug>/`` root, and the scratch directory is
removed whatever happens.
"""

import logging
import os
import re
import shutil
import time
import uuid
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

try:
    import zlib
except ImportError:
    zlib = None

from .errors import ExportError, InvalidInput, NotFound, PathViolation, Unavailable, returns_result
from .settings import SettingsRepository
from .state import PluginRepository

ALWAYS_EXCLUDED = ('.git',)
EXPORT_INDEX_CONTENT = '<?php // Silence is golden.'
EXPORT_HTACCESS_CONTENT = 'Options -Indexes'
TEMP_DIR_PREFIX = 'temp-'

_FILENAME_UNSAFE = re.compile(r'[^A-Za-z0-9._-]+')


def walk_tree(root: Union[str, Path],
              exclude: Optional[Callable[[str], bool]] = None) -> Iterator[Tuple[str, bool]]:
    """
    Walk ``root`` depth-first in name order, yielding ``(relative_path, is_dir)``.

    Relative paths use ``/`` separators. When ``exclude`` returns True for a
    path it is skipped, and an excluded directory is not descended into.
    Symlinked directories are reported as files and never followed.
    """
    root = Path(root)

    def _walk(directory: Path, prefix: str):
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            raise ExportError(f"Could not read directory {directory}: {e}")
        for entry in entries:
            relative = f"{prefix}{entry.name}"
            if exclude is not None and exclude(relative):
                continue
            is_dir = entry.is_dir(follow_symlinks=False)
            yield relative, is_dir
            if is_dir:
                yield from _walk(Path(entry.path), relative + '/')

    yield from _walk(root, '')


class ExclusionMatcher:
    """
    Decides whether a relative path is excluded from an export.

    A pattern matches when it equals the path or the path's basename, when
    the path lies below it (``tests`` covers ``tests/unit/a.php``), or, for
    patterns containing ``*``, when the glob matches the path or basename.
    ``*`` stays within one path segment, ``**`` crosses segments.
    ``.git`` is always excluded.
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns: List[str] = []
        self._globs: List[re.Pattern] = []
        for pattern in list(ALWAYS_EXCLUDED) + list(patterns or []):
            pattern = (pattern or '').strip().strip('/')
            if not pattern or pattern in self.patterns:
                continue
            self.patterns.append(pattern)
            if '*' in pattern:
                self._globs.append(self._compile_glob(pattern))

    @staticmethod
    def _compile_glob(pattern: str) -> re.Pattern:
        parts = []
        for chunk in re.split(r'(\*\*|\*)', pattern):
            if chunk == '**':
                parts.append('.*')
            elif chunk == '*':
                parts.append('[^/]*')
            else:
                parts.append(re.escape(chunk))
        return re.compile('^' + ''.join(parts) + '$')

    def __call__(self, path: str) -> bool:
        return self.matches(path)

    def matches(self, path: str) -> bool:
        path = path.strip('/')
        basename = path.rsplit('/', 1)[-1]
        for pattern in self.patterns:
            if path == pattern or basename == pattern:
                return True
            if path.startswith(pattern + '/'):
                return True
        for glob in self._globs:
            if glob.match(path) or glob.match(basename):
                return True
        return False


class ExportManager:
    """Creates, lists and cleans up plugin export archives."""

    def __init__(self, plugins: PluginRepository, settings: SettingsRepository,
                 plugins_dir: Union[str, Path], export_dir: Union[str, Path],
                 base_url: str = ''):
        """
        Args:
            plugins: Managed plugin records
            settings: Settings repository (exclusions, retention)
            plugins_dir: Plugins root holding the working trees
            export_dir: Directory archives are written to
            base_url: Public URL prefix of ``export_dir``
        """
        self.plugins = plugins
        self.settings = settings
        self.plugins_dir = Path(plugins_dir)
        self.export_dir = Path(export_dir)
        self.base_url = base_url.rstrip('/')
        self.logger = logging.getLogger(__name__)

    def ensure_export_dir(self) -> Path:
        """
        Create the export directory with listing disabled.

        Raises:
            ExportError: if the directory cannot be created or written
        """
        if not self.export_dir.exists():
            try:
                self.export_dir.mkdir(parents=True, exist_ok=True)
                (self.export_dir / 'index.php').write_text(EXPORT_INDEX_CONTENT, encoding='utf-8')
                (self.export_dir / '.htaccess').write_text(EXPORT_HTACCESS_CONTENT, encoding='utf-8')
            except OSError as e:
                raise ExportError(f"Could not create export directory: {e}")
        if not os.access(self.export_dir, os.W_OK):
            raise ExportError('Export directory is not writable.')
        return self.export_dir

    def _download_url(self, filename: str) -> str:
        return f"{self.base_url}/{filename}"

    @staticmethod
    def build_filename(slug: str, version: str, when: Optional[datetime] = None) -> str:
        """``<slug>-<version>-<YYYYMMDD-HHMMSS>.zip`` with unsafe characters replaced."""
        when = when or datetime.now()
        version = _FILENAME_UNSAFE.sub('-', version).strip('-') or 'unknown'
        return f"{slug}-{version}-{when.strftime('%Y%m%d-%H%M%S')}.zip"

    def _unique_export_path(self, filename: str) -> Path:
        """Add a ``-N`` suffix when an archive of the same name already exists."""
        stem = filename[:-len('.zip')]
        export_path = self.export_dir / filename
        counter = 2
        while export_path.exists():
            export_path = self.export_dir / f"{stem}-{counter}.zip"
            counter += 1
        return export_path

    @returns_result
    def export_plugin(self, slug: str) -> Dict[str, Any]:
        """
        Export a managed plugin as a clean ZIP archive.

        Args:
            slug: Plugin slug

        Returns:
            Dict with success flag, ``file_path``, ``filename``,
            ``download_url`` and ``size_bytes``
        """
        plugin = self.plugins.require(slug)
        plugin_path = self.plugins_dir / slug
        if not plugin_path.is_dir():
            raise NotFound('Plugin directory not found.')

        if zlib is None:
            raise Unavailable('ZIP compression is not available.')

        self.ensure_export_dir()

        version = plugin.wp_plugin_version or plugin.local_commit[:7]
        export_path = self._unique_export_path(self.build_filename(slug, version))
        filename = export_path.name

        matcher = ExclusionMatcher(self.settings.get('export_exclusions') or [])
        temp_dir = self.export_dir / f"{TEMP_DIR_PREFIX}{uuid.uuid4().hex}"

        self.logger.info(f"Exporting plugin {slug} to {filename}")
        try:
            try:
                (temp_dir / slug).mkdir(parents=True)
            except OSError as e:
                raise ExportError(f"Could not create temporary directory: {e}")

            self._copy_tree(plugin_path, temp_dir / slug, matcher)
            self._write_archive(temp_dir, export_path)
        except ExportError:
            if export_path.exists():
                export_path.unlink()
            raise
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        if not export_path.exists():
            raise ExportError('ZIP file was not created.')

        size_bytes = export_path.stat().st_size
        self.logger.info(f"Exported {slug} ({size_bytes} bytes)")
        return {
            'success': True,
            'file_path': str(export_path),
            'filename': filename,
            'download_url': self._download_url(filename),
            'size_bytes': size_bytes,
        }

    def _copy_tree(self, source: Path, destination: Path, matcher: ExclusionMatcher) -> None:
        try:
            for relative, is_dir in walk_tree(source, matcher):
                target = destination / relative
                if (source / relative).is_symlink():
                    self.logger.debug(f"Skipping symlink {relative}")
                    continue
                if is_dir:
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source / relative, target)
        except OSError as e:
            raise ExportError(f"Failed to copy plugin files: {e}")

    def _write_archive(self, source: Path, export_path: Path) -> None:
        try:
            with zipfile.ZipFile(export_path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
                for relative, is_dir in walk_tree(source):
                    if is_dir:
                        zf.writestr(relative + '/', '')
                    else:
                        zf.write(source / relative, relative)
        except (OSError, zipfile.BadZipFile) as e:
            raise ExportError(f"Failed to create ZIP archive: {e}")

    def list_exports(self) -> List[Dict[str, Any]]:
        """Export archives, newest first."""
        if not self.export_dir.is_dir():
            return []

        exports = []
        for path in self.export_dir.glob('*.zip'):
            if not path.is_file():
                continue
            stat_result = path.stat()
            exports.append({
                'filename': path.name,
                'path': str(path),
                'url': self._download_url(path.name),
                'size': stat_result.st_size,
                'created': int(stat_result.st_mtime),
            })

        exports.sort(key=lambda e: (e['created'], e['filename']), reverse=True)
        return exports

    def _resolve_export(self, filename: str) -> Path:
        name = os.path.basename(filename or '')
        if not name.endswith('.zip') or name != filename:
            raise InvalidInput('Invalid export filename.')
        export_root = self.export_dir.resolve()
        path = (self.export_dir / name).resolve()
        if path.parent != export_root:
            raise PathViolation('Path is outside the export directory.')
        return path

    @returns_result
    def delete_export(self, filename: str) -> Dict[str, Any]:
        """Delete one archive from the export directory."""
        path = self._resolve_export(filename)
        if not path.is_file():
            raise NotFound('Export not found.')
        path.unlink()
        self.logger.info(f"Deleted export {filename}")
        return {'success': True, 'filename': filename}

    @returns_result
    def cleanup_exports(self, max_age_hours: Optional[int] = None) -> Dict[str, Any]:
        """
        Delete archives (and leftover scratch directories) older than
        ``max_age_hours``, defaulting to the ``cleanup_exports_after`` setting.
        """
        if max_age_hours is None:
            max_age_hours = int(self.settings.get('cleanup_exports_after') or 24)
        if not self.export_dir.is_dir():
            return {'success': True, 'deleted': []}

        cutoff = time.time() - max_age_hours * 3600
        deleted = []
        for path in self.export_dir.iterdir():
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                if path.is_file() and path.suffix == '.zip':
                    path.unlink()
                elif path.is_dir() and path.name.startswith(TEMP_DIR_PREFIX):
                    shutil.rmtree(path)
                else:
                    continue
            except OSError as e:
                self.logger.warning(f"Could not delete old export {path.name}: {e}")
                continue
            deleted.append(path.name)

        if deleted:
            self.logger.info(f"Cleaned up {len(deleted)} old exports")
        return {'success': True, 'deleted': deleted}
