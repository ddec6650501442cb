"""
Flask Application Factory.

Creates the app, its Runtime, CORS, middleware, error handlers and
blueprints.
"""

import logging
import time
import uuid
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS

from config.settings import AppSettings, get_settings
from gatekeeper.runtime import EXTENSION_KEY, Runtime

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(config=None, settings: Optional[AppSettings] = None):
    """Create and configure the Flask application.

    Args:
        config: Optional dict of config overrides (e.g. {'TESTING': True}).
        settings: Settings to use instead of get_settings().

    Returns:
        Configured Flask app instance.
    """
    settings = settings or get_settings()

    app = Flask(__name__)
    app.json.sort_keys = False

    if config:
        app.config.update(config)

    if not app.config.get('TESTING'):
        from gatekeeper.logging_config import configure_logging
        configure_logging(app, settings)

    CORS(app, origins=settings.allowed_origins)

    runtime = Runtime(settings)
    app.extensions[EXTENSION_KEY] = runtime
    runtime.loop.start()

    from core.errors import register_error_handlers
    register_error_handlers(app)

    _register_blueprints(app)
    _register_middleware(app)

    logger.info(
        f"Gatekeeper ready (mode={runtime.mode.value}, "
        f"public={settings.vaults.public_vault}, private={settings.vaults.private_vault})"
    )
    return app


def _register_blueprints(app):
    """Register all route blueprints."""
    from gatekeeper.routes.health import health_bp
    app.register_blueprint(health_bp)

    from gatekeeper.routes.control import control_bp
    app.register_blueprint(control_bp)

    from gatekeeper.routes.fs import fs_bp
    app.register_blueprint(fs_bp)

    from gatekeeper.routes.cluster import cluster_bp
    app.register_blueprint(cluster_bp)


def _register_middleware(app):
    """Register request tracking and security middleware."""

    @app.before_request
    def before_request_tracking():
        """Track request start and assign request ID."""
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])
        g.start_time = time.time()

    @app.after_request
    def after_request_tracking(response):
        """Log request completion with timing and add security headers."""
        duration_ms = 0
        if hasattr(g, 'start_time'):
            duration_ms = (time.time() - g.start_time) * 1000

        if hasattr(g, 'request_id'):
            response.headers['X-Request-ID'] = g.request_id

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        if request.path in ['/health', '/cluster/events']:
            log_level = logging.DEBUG

        logger.log(
            log_level,
            f"{request.method} {request.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                'request_id': getattr(g, 'request_id', 'unknown'),
                'method': request.method,
                'endpoint': request.path,
                'status_code': response.status_code,
                'duration_ms': round(duration_ms, 2),
                'remote_addr': request.remote_addr,
            }
        )

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

        return response
