"""
Cluster lifecycle endpoints and the provisioning event stream.

Mutating endpoints validate synchronously and return 202 while the
``sky`` subprocess keeps running on the service loop; its outcome
arrives on GET /cluster/events and in GET /cluster/status.
"""

import logging

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from core.errors import ValidationError
from core.event_bus import make_event
from gatekeeper.envelope import make_envelope
from gatekeeper.runtime import get_runtime
from gatekeeper.schemas import LaunchRequest, validate_body

logger = logging.getLogger(__name__)

cluster_bp = Blueprint('cluster', __name__, url_prefix='/cluster')

DEFAULT_KEEPALIVE_SECONDS = 15
KEEPALIVE_COMMENT = ": keep-alive\n\n"


def _json_body() -> dict:
    """Parsed JSON body; an empty body means no overrides."""
    if not request.get_data(cache=True).strip():
        return {}
    data = request.get_json(force=True, silent=True)
    if data is None:
        raise ValidationError("invalid JSON", field="body")
    return data


# =============================================================================
# Read-only
# =============================================================================

@cluster_bp.route('/check', methods=['GET'])
def check():
    """SkyPilot installation and cloud credential report."""
    runtime = get_runtime()
    result = runtime.run(runtime.manager.check())
    return jsonify(make_envelope(request.path, result))


@cluster_bp.route('/status', methods=['GET'])
def status():
    """Cluster status, reconciled with the cloud unless ?refresh=false."""
    runtime = get_runtime()
    refresh = request.args.get('refresh', 'true').lower() not in ('false', '0', 'no')
    if refresh:
        result = runtime.run(runtime.manager.status_refresh())
    else:
        result = runtime.manager.status()
    return jsonify(make_envelope(request.path, result))


# =============================================================================
# Lifecycle
# =============================================================================

@cluster_bp.route('/launch', methods=['POST'])
def launch():
    """Start provisioning; optional JSON body overrides resources."""
    payload = validate_body(LaunchRequest, _json_body())
    runtime = get_runtime()
    result = runtime.run(runtime.manager.launch(payload.to_options()))
    return jsonify(make_envelope(request.path, result)), 202


@cluster_bp.route('/stop', methods=['POST'])
def stop():
    runtime = get_runtime()
    result = runtime.run(runtime.manager.stop())
    return jsonify(make_envelope(request.path, result)), 202


@cluster_bp.route('/destroy', methods=['POST'])
def destroy():
    runtime = get_runtime()
    result = runtime.run(runtime.manager.destroy())
    return jsonify(make_envelope(request.path, result)), 202


# =============================================================================
# Toolchain
# =============================================================================

@cluster_bp.route('/install/status', methods=['GET'])
def install_status():
    """uv and SkyPilot installation snapshot."""
    runtime = get_runtime()
    result = runtime.run(runtime.manager.install_status())
    return jsonify(make_envelope(request.path, result))


@cluster_bp.route('/install', methods=['POST'])
def install():
    """Install the managed toolchain in the background."""
    runtime = get_runtime()
    result = runtime.run(runtime.manager.ensure_install())
    status_code = 202 if result["accepted"] else 200
    return jsonify(make_envelope(request.path, result)), status_code


# =============================================================================
# Event stream
# =============================================================================

@cluster_bp.route('/events', methods=['GET'])
def events():
    """Server-Sent Events stream of provisioning events."""
    bus = get_runtime().bus
    keepalive = current_app.config.get('SSE_KEEPALIVE_SECONDS', DEFAULT_KEEPALIVE_SECONDS)
    subscription = bus.subscribe()

    def generate():
        try:
            yield make_event("progress", "Connected to event stream").to_sse()
            while True:
                event = subscription.get(timeout=keepalive)
                if event is not None:
                    yield event.to_sse()
                elif subscription.closed:
                    break
                else:
                    yield KEEPALIVE_COMMENT
        finally:
            bus.unsubscribe(subscription)
            logger.debug("Event stream closed")

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
