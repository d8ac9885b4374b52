"""
Web API for the plugin gateway
Flask endpoints consumed by the panel's plugin browser
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from flask import Flask, jsonify, redirect, request

from plugin_apis import (
    ConfigurationError,
    NotFoundError,
    PluginAPIError,
    PluginProvider,
    UserFacingInstallError,
)
from plugin_manager import MAX_REQUEST_PAGE_SIZE, validate_server_ref
from server_manager import ServerManager

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    """Request parameters failed validation."""


class Unauthenticated(Exception):
    """The panel did not identify the calling user."""


def _arg(*names: str, default: Optional[str] = None) -> Optional[str]:
    """First query/body parameter present under any of ``names``."""
    body = request.get_json(silent=True) or {}
    for name in names:
        if name in request.args:
            return request.args[name]
        if name in body:
            return str(body[name])
    return default


def _required(*names: str) -> str:
    value = _arg(*names)
    if value is None or value == "":
        raise BadRequest(f"The {names[0]} field is required.")
    return value


def _int_arg(*names: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    raw = _arg(*names)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise BadRequest(f"The {names[0]} field must be an integer.")
    if value < minimum or (maximum is not None and value > maximum):
        raise BadRequest(f"The {names[0]} field is out of range.")
    return value


def _provider() -> PluginProvider:
    raw = _required("provider")
    try:
        return PluginProvider(raw.lower())
    except ValueError:
        raise BadRequest(f"Unknown provider: {raw}")


def create_app(
    manager: ServerManager,
    session_factory: Callable[[], Any] = aiohttp.ClientSession,
) -> Flask:
    """Build the Flask app around an already-configured ServerManager."""
    app = Flask(__name__)
    gateway = manager.gateway

    def _run(fn: Callable[[Any], Awaitable[Any]]) -> Any:
        async def _with_session():
            async with session_factory() as session:
                return await fn(session)
        return asyncio.run(_with_session())

    def _user(required: bool = True) -> Optional[str]:
        user_id = request.headers.get(manager.user_header)
        if required and not user_id:
            raise Unauthenticated("Not authenticated")
        return user_id

    # ========================================================================
    # ERROR HANDLING
    # ========================================================================

    @app.errorhandler(BadRequest)
    def _bad_request(exc):
        return jsonify({'success': False, 'error': str(exc)}), 400

    @app.errorhandler(Unauthenticated)
    def _unauthenticated(exc):
        return jsonify({'success': False, 'error': str(exc)}), 401

    @app.errorhandler(PluginAPIError)
    def _plugin_error(exc):
        if isinstance(exc, NotFoundError):
            status = 404
        elif isinstance(exc, ConfigurationError):
            status = 503
        else:
            status = 502
        if isinstance(exc, UserFacingInstallError) or status != 502:
            message = str(exc)
        else:
            message = 'The plugin marketplace is currently unavailable.'
        return jsonify({'success': False, 'error': message}), status

    @app.url_value_preprocessor
    def _check_server(endpoint, values):
        if values and 'server' in values:
            try:
                validate_server_ref(values['server'])
            except ConfigurationError as exc:
                raise BadRequest(str(exc))

    # ========================================================================
    # PLUGIN ENDPOINTS
    # ========================================================================

    @app.route('/api/servers/<server>/plugins')
    def api_plugins(server):
        """Search a marketplace"""
        provider = _provider()
        page = _int_arg('page', default=1)
        page_size = _int_arg('pageSize', 'page_size', default=20,
                             maximum=MAX_REQUEST_PAGE_SIZE)
        query = _arg('searchQuery', 'search_query', default='')
        mc_version = _arg('minecraftVersion', 'minecraft_version', default='')
        user_id = _user(required=False)

        result = _run(lambda session: gateway.search(
            provider, session, query=query, page=page, page_size=page_size,
            mc_version=mc_version, user_id=user_id,
        ))
        return jsonify(result.to_envelope())

    @app.route('/api/servers/<server>/plugins/versions')
    def api_plugin_versions(server):
        """List installable versions of a plugin"""
        provider = _provider()
        plugin_id = _required('pluginId', 'plugin_id')

        versions = _run(lambda session: gateway.list_versions(provider, plugin_id, session))
        return jsonify([v.to_dict() for v in versions])

    @app.route('/api/servers/<server>/plugins/install', methods=['POST'])
    def api_plugin_install(server):
        """Install a plugin version into /plugins"""
        provider = _provider()
        plugin_id = _required('pluginId', 'plugin_id')
        version_id = _required('versionId', 'version_id')
        user_id = _user(required=False)

        _run(lambda session: gateway.install_plugin(
            server, provider, plugin_id, version_id, session, user_id=user_id,
        ))
        return '', 204

    # ========================================================================
    # POLYMART LINKING
    # ========================================================================

    @app.route('/api/servers/<server>/plugins/polymart/link', methods=['POST'])
    def api_polymart_link(server):
        """Start linking a Polymart account"""
        user_id = _user()
        return_url = manager.polymart_return_url(server)

        redirect_url = _run(lambda session: gateway.link_polymart(user_id, return_url, session))
        return jsonify({'redirectUrl': redirect_url})

    @app.route('/api/servers/<server>/plugins/polymart/callback')
    def api_polymart_callback(server):
        """Polymart sends the browser back here"""
        success = _required('success')
        token = _arg('token', default='')
        state = _required('state')

        gateway.handle_polymart_callback(success, token, state)
        return redirect(manager.plugin_listing_path(server, PluginProvider.POLYMART))

    @app.route('/api/servers/<server>/plugins/polymart/disconnect', methods=['POST'])
    def api_polymart_disconnect(server):
        """Forget the user's Polymart link"""
        user_id = _user()

        _run(lambda session: gateway.disconnect_polymart(user_id, session))
        return '', 204

    @app.route('/api/servers/<server>/plugins/polymart/is-linked')
    def api_polymart_is_linked(server):
        """Whether the user has a Polymart link"""
        return jsonify(gateway.is_polymart_linked(_user()))

    return app


def run_server(config_path='config.json', host=None, port=None):
    """Run Flask server"""
    manager = ServerManager(config_path)
    web = manager.settings['web']
    host = host or web['host']
    port = port or int(web['port'])

    logger.info("Starting plugin gateway on http://%s:%d", host, port)
    create_app(manager).run(host=host, port=port, debug=False, threaded=True)


if __name__ == '__main__':
    import sys
    config = sys.argv[1] if len(sys.argv) > 1 else 'config.json'

    run_server(config)
