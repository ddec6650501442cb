"""
Gatekeeper server entry point.

Usage:
    gatekeeper
    python -m gatekeeper
"""

import logging

from config.settings import get_settings
from gatekeeper.app import create_app
from gatekeeper.runtime import EXTENSION_KEY

logger = logging.getLogger(__name__)


def main():
    settings = get_settings()
    app = create_app(settings=settings)
    runtime = app.extensions[EXTENSION_KEY]

    host, port = settings.server.host, settings.server.port
    logger.info(f"gatekeeper listening on http://{host}:{port}")
    try:
        app.run(host=host, port=port, threaded=True, use_reloader=False)
    finally:
        runtime.shutdown()
        logger.info("gatekeeper stopped")
