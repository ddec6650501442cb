"""
Vault file tools.

Reads go through the vault resolver: decode, normalize, containment,
mode policy, symlink escape, then the read itself.
"""

import logging

from flask import Blueprint, jsonify, request

from core.errors import ValidationError
from gatekeeper.envelope import make_envelope
from gatekeeper.runtime import get_runtime

logger = logging.getLogger(__name__)

fs_bp = Blueprint('fs', __name__, url_prefix='/tools/fs')


@fs_bp.route('/read', methods=['GET'])
def read_file():
    """Read one vault file: ?path=public/... or ?path=private/..."""
    raw_path = request.args.get('path', '')
    if not raw_path:
        raise ValidationError("path query parameter is required", field="path")

    runtime = get_runtime()
    resolved = runtime.resolver.resolve(raw_path)
    result = runtime.resolver.read(resolved, runtime.mode)
    logger.debug(f"Read {result['path']} ({result['size']} bytes)")
    return jsonify(make_envelope(request.path, result))


@fs_bp.route('/list', methods=['GET'])
def list_files():
    """Recursive vault listing; the private vault only in LOCAL mode."""
    runtime = get_runtime()
    mode = runtime.mode
    files = runtime.resolver.list(mode)
    return jsonify(make_envelope(request.path, {
        "mode": mode.value,
        "files": [entry.to_dict() for entry in files],
    }))
