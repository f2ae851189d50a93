"""
HTTP API for Git Plugin Loader.

A small Flask app exposing the plugin operations as JSON endpoints for an
admin UI. Every endpoint answers with the operation's result dict; failed
operations are mapped to an HTTP status by their error code.

Authentication is left to the fronting server.
"""

import logging
from typing import Any, Dict

from flask import Flask, jsonify, request

from . import __version__
from .errors import PluginLoaderError
from .services import Services

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    'invalid_input': 400,
    'invalid_url': 400,
    'invalid_path': 400,
    'path_violation': 400,
    'auth_required': 401,
    'token_required': 401,
    'auth_failed': 403,
    'not_found': 404,
    'directory_not_found': 404,
    'conflict': 409,
    'directory_exists': 409,
    'plugin_exists': 409,
    'checkout_failed': 422,
    'rate_limited': 429,
    'api_error': 502,
    'transport_error': 502,
    'tool_unavailable': 503,
    'unavailable': 503,
}


def status_for(result: Dict[str, Any]) -> int:
    if result.get('success'):
        return 200
    return ERROR_STATUS.get(result.get('code', ''), 500)


def respond(result: Dict[str, Any]):
    return jsonify(result), status_for(result)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def create_app(services: Services) -> Flask:
    """Create the Flask app bound to ``services``."""
    app = Flask(__name__)
    manager = services.manager
    exporter = services.exporter

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            return data
        return request.form.to_dict()

    @app.errorhandler(PluginLoaderError)
    def handle_plugin_error(error):
        return respond(error.to_dict())

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    @app.route('/api/plugins', methods=['GET'])
    def list_plugins():
        return respond(manager.get_all_plugins())

    @app.route('/api/plugins', methods=['POST'])
    def add_plugin():
        data = _body()
        url = (data.get('url') or '').strip()
        if not url:
            return jsonify({'success': False, 'error': 'Repository URL is required.',
                            'code': 'invalid_input'}), 400
        return respond(manager.add_plugin(url, data.get('branch') or 'main', data.get('slug') or None))

    @app.route('/api/plugins/check-all', methods=['POST'])
    def check_all():
        return respond(manager.check_all_updates())

    @app.route('/api/plugins/<slug>', methods=['GET'])
    def get_plugin(slug):
        return respond(manager.get_plugin(slug))

    @app.route('/api/plugins/<slug>', methods=['DELETE'])
    def remove_plugin(slug):
        delete_files = _truthy(request.args.get('delete_files', _body().get('delete_files', False)))
        return respond(manager.remove_plugin(slug, delete_files=delete_files))

    @app.route('/api/plugins/<slug>/sync', methods=['POST'])
    def sync_plugin(slug):
        return respond(manager.sync_plugin(slug))

    @app.route('/api/plugins/<slug>/check', methods=['POST'])
    def check_plugin(slug):
        return respond(manager.check_updates(slug))

    @app.route('/api/plugins/<slug>/auto-sync', methods=['POST'])
    def toggle_auto_sync(slug):
        return respond(manager.toggle_auto_sync(slug, _truthy(_body().get('enabled', False))))

    @app.route('/api/plugins/<slug>/branch', methods=['POST'])
    def change_branch(slug):
        branch = (_body().get('branch') or '').strip()
        if not branch:
            return jsonify({'success': False, 'error': 'Branch is required.',
                            'code': 'invalid_input'}), 400
        return respond(manager.change_branch(slug, branch))

    @app.route('/api/plugins/<slug>/refs', methods=['GET'])
    def plugin_refs(slug):
        return respond(manager.get_refs(slug))

    @app.route('/api/plugins/<slug>/diff', methods=['GET'])
    def plugin_diff(slug):
        return respond(manager.get_remote_diff(slug))

    @app.route('/api/refs', methods=['GET'])
    def refs_for_url():
        return respond(manager.get_refs_for_url(request.args.get('url', '')))

    @app.route('/api/validate', methods=['POST'])
    def validate_repo():
        return respond(manager.validate_repo((_body().get('url') or '').strip()))

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------

    @app.route('/api/plugins/<slug>/export', methods=['POST'])
    def export_plugin(slug):
        return respond(exporter.export_plugin(slug))

    @app.route('/api/exports', methods=['GET'])
    def list_exports():
        return jsonify({'success': True, 'exports': exporter.list_exports()})

    @app.route('/api/exports/<filename>', methods=['DELETE'])
    def delete_export(filename):
        return respond(exporter.delete_export(filename))

    # ------------------------------------------------------------------
    # Settings and system
    # ------------------------------------------------------------------

    @app.route('/api/settings', methods=['GET'])
    def get_settings():
        return jsonify({'success': True, 'settings': services.settings.public_view()})

    @app.route('/api/settings', methods=['POST'])
    def save_settings():
        data = _body()
        return respond(services.settings_service.save_settings(
            github_token=data.get('github_token'),
            clear_token=_truthy(data.get('clear_token', False)),
            auto_sync_interval=data.get('auto_sync_interval'),
            export_exclusions=data.get('export_exclusions'),
            cleanup_exports_after=data.get('cleanup_exports_after'),
        ))

    @app.route('/api/system', methods=['GET'])
    def system_info():
        return jsonify({
            'success': True,
            'version': __version__,
            'requirements': services.git.check_requirements(),
            'rate_limit': services.github_api.get_rate_limit_info(),
            'schedule': services.scheduler.get_schedule_info(),
            'weak_encryption': services.settings.cipher.uses_default_key,
        })

    logger.debug("Flask app created")
    return app
