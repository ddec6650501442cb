"""
Health check endpoint.
"""

from flask import Blueprint, jsonify, request

from gatekeeper.envelope import make_envelope
from gatekeeper.runtime import get_runtime

health_bp = Blueprint('health', __name__)


@health_bp.route('/health', methods=['GET'])
def health():
    """Current mode and process uptime."""
    runtime = get_runtime()
    return jsonify(make_envelope(request.path, {
        "mode": runtime.mode.value,
        "uptime_ms": runtime.uptime_ms,
    }))
