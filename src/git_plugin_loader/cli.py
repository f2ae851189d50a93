#!/usr/bin/env python3
"""
Git Plugin Loader command line.

Usage:
    git-plugin-loader add https://github.com/acme/widget --branch main
    git-plugin-loader sync widget
    git-plugin-loader check --all
    git-plugin-loader export widget
    git-plugin-loader cron due
    git-plugin-loader serve --port 5001

Every command prints its result as JSON and exits non-zero on failure.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from . import __version__
from .config import load_config
from .errors import PluginLoaderError
from .logging_config import setup_logging
from .scheduler import TASKS
from .services import Services, build_services

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='git-plugin-loader',
        description='Manage WordPress plugins installed from GitHub repositories',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', help='Path to config JSON (default: config/config.json)')
    parser.add_argument('--log-level', help='Override log level (DEBUG, INFO, WARNING, ERROR)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Shortcut for --log-level DEBUG')

    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('add', help='Clone a repository and start managing it')
    p.add_argument('url', help='GitHub repository URL (HTTPS or SSH)')
    p.add_argument('--branch', default='main', help='Branch or tag to check out (default: main)')
    p.add_argument('--slug', help='Directory name (default: repository name)')

    p = sub.add_parser('remove', help='Stop managing a plugin')
    p.add_argument('slug')
    p.add_argument('--delete-files', action='store_true', help='Also delete the working tree')

    p = sub.add_parser('sync', help='Sync a plugin with its upstream branch')
    p.add_argument('slug', nargs='?')
    p.add_argument('--auto', action='store_true', help='Sync every plugin with auto-sync enabled')

    p = sub.add_parser('check', help='Check for upstream updates')
    p.add_argument('slug', nargs='?')
    p.add_argument('--all', action='store_true', dest='check_all', help='Check every managed plugin')

    p = sub.add_parser('list', help='List managed plugins')
    p.add_argument('slug', nargs='?', help='Show one plugin in detail')

    p = sub.add_parser('branch', help='Switch a plugin to another branch or tag')
    p.add_argument('slug')
    p.add_argument('branch')

    p = sub.add_parser('refs', help='List branches and tags of a plugin or URL')
    p.add_argument('target', help='Plugin slug or repository URL')

    p = sub.add_parser('auto-sync', help='Enable or disable auto-sync for a plugin')
    p.add_argument('slug')
    p.add_argument('state', choices=['on', 'off'])

    p = sub.add_parser('export', help='Export a plugin as a ZIP archive')
    p.add_argument('slug')

    p = sub.add_parser('exports', help='List, delete or clean up export archives')
    p.add_argument('--delete', metavar='FILENAME', help='Delete one archive')
    p.add_argument('--cleanup', action='store_true', help='Delete archives past the retention age')

    p = sub.add_parser('cron', help='Run a scheduled task')
    p.add_argument('task', choices=list(TASKS) + ['due'], help="Task name, or 'due' for every due task")

    p = sub.add_parser('serve', help='Run the HTTP API')
    p.add_argument('--host', default='127.0.0.1', help='Host to bind to (default: 127.0.0.1)')
    p.add_argument('--port', type=int, default=5001, help='Port to run on (default: 5001)')
    p.add_argument('--debug', action='store_true', help='Enable Flask debug mode')

    return parser


def run_command(args: argparse.Namespace, services: Services) -> Dict[str, Any]:
    """Dispatch a parsed command and return its result dict."""
    manager = services.manager
    command = args.command

    if command == 'add':
        return manager.add_plugin(args.url, args.branch, args.slug)
    if command == 'remove':
        return manager.remove_plugin(args.slug, delete_files=args.delete_files)
    if command == 'sync':
        if args.auto:
            return manager.sync_auto_enabled()
        if not args.slug:
            return {'success': False, 'error': 'A plugin slug or --auto is required.', 'code': 'invalid_input'}
        return manager.sync_plugin(args.slug)
    if command == 'check':
        if args.check_all:
            return manager.check_all_updates()
        if not args.slug:
            return {'success': False, 'error': 'A plugin slug or --all is required.', 'code': 'invalid_input'}
        return manager.check_updates(args.slug)
    if command == 'list':
        if args.slug:
            return manager.get_plugin(args.slug)
        return manager.get_all_plugins()
    if command == 'branch':
        return manager.change_branch(args.slug, args.branch)
    if command == 'refs':
        if '/' in args.target or ':' in args.target:
            return manager.get_refs_for_url(args.target)
        return manager.get_refs(args.target)
    if command == 'auto-sync':
        return manager.toggle_auto_sync(args.slug, args.state == 'on')
    if command == 'export':
        return services.exporter.export_plugin(args.slug)
    if command == 'exports':
        if args.delete:
            return services.exporter.delete_export(args.delete)
        if args.cleanup:
            return services.exporter.cleanup_exports()
        return {'success': True, 'exports': services.exporter.list_exports()}
    if command == 'cron':
        if args.task == 'due':
            return {'success': True, 'results': services.scheduler.run_due()}
        return services.scheduler.run(args.task)

    return {'success': False, 'error': f"Unknown command: {command}", 'code': 'invalid_input'}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    level = 'DEBUG' if args.verbose else (args.log_level or config.log_level)
    setup_logging(level, config.log_file)

    try:
        services = build_services(config)
    except (OSError, PluginLoaderError) as e:
        logger.error(f"Could not initialize: {e}")
        return 1

    if args.command == 'serve':
        from .web import create_app
        logger.info(f"Starting HTTP API on http://{args.host}:{args.port}")
        create_app(services).run(host=args.host, port=args.port, debug=args.debug)
        return 0

    try:
        result = run_command(args, services)
    except PluginLoaderError as e:
        result = e.to_dict()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get('success') else 1


if __name__ == '__main__':
    sys.exit(main())
