"""
Runtime control endpoints.
"""

import logging

from flask import Blueprint, jsonify, request

from core.errors import ValidationError
from core.vaults import Mode
from gatekeeper.envelope import make_envelope
from gatekeeper.runtime import get_runtime

logger = logging.getLogger(__name__)

control_bp = Blueprint('control', __name__)


@control_bp.route('/control/set-mode', methods=['POST'])
def set_mode():
    """Switch between LOCAL and CLOUD mode."""
    body = request.get_json(silent=True)
    if body is None:
        raise ValidationError("invalid JSON", field="body")
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object", field="body")

    try:
        mode = Mode(body.get("mode"))
    except ValueError:
        raise ValidationError("must be LOCAL or CLOUD", field="mode")

    previous, current = get_runtime().set_mode(mode)
    return jsonify(make_envelope(request.path, {
        "previous_mode": previous.value,
        "current_mode": current.value,
    }))
