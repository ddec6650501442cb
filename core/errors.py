"""
Centralized error handling for the gatekeeper API.

Error Hierarchy:
- APIError (4xx): Expected errors with messages safe to expose to clients
- Anything else (5xx): Unexpected errors - never expose internal details

Every APIError carries a ``field`` naming the part of the request it is
about. The HTTP layer renders it as ``{"errors": {field: [message]}}``
inside the standard result envelope.

Usage:
    from core.errors import ConflictError, NotFoundError

    raise NotFoundError("no cluster exists", field="cluster")
"""

import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Exception Classes (4xx - Expected Errors)
# =============================================================================

class APIError(Exception):
    """
    Base class for expected API errors (4xx status codes).
    Messages are safe to expose to clients.
    """
    status_code = 400
    field = "request"

    def __init__(self, message: str, field: Optional[str] = None, status_code: int = None):
        super().__init__(message)
        self.message = message
        if field is not None:
            self.field = field
        if status_code is not None:
            self.status_code = status_code

    def to_errors(self) -> dict:
        """Error map for the result envelope."""
        return {self.field: [self.message]}


class ValidationError(APIError):
    """Request validation failed (400)."""
    status_code = 400


class VaultPathError(ValidationError):
    """Vault path rejected (400). Traversal and prefix failures look identical."""
    field = "path"


class PermissionDeniedError(APIError):
    """Permission denied (403)."""
    status_code = 403
    field = "access"


class NotFoundError(APIError):
    """Resource not found (404)."""
    status_code = 404


class ConflictError(APIError):
    """Resource conflict (409)."""
    status_code = 409
    field = "cluster"


class DependencyUnavailableError(APIError):
    """A required tool or credential is missing (424)."""
    status_code = 424


def register_error_handlers(app):
    """
    Register Flask error handlers for APIError exceptions.

    Call this in your Flask app factory:
        from core.errors import register_error_handlers
        register_error_handlers(app)
    """
    from flask import jsonify, request

    from gatekeeper.envelope import make_error

    @app.errorhandler(APIError)
    def handle_api_error(e):
        """Handle all APIError subclasses."""
        logger.warning(f"API error on {request.path}: {e}")
        return jsonify(make_error(request.path, e.to_errors())), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify(make_error(request.path, {"route": ["not found"]})), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify(make_error(request.path, {"method": ["method not allowed"]})), 405

    @app.errorhandler(500)
    def handle_internal_error(e):
        """Handle unexpected 500 errors."""
        error_id = str(uuid.uuid4())[:8]
        logger.exception("Internal server error", extra={'error_id': error_id})
        return jsonify(make_error(
            request.path,
            {"server": [f"internal server error (error_id: {error_id})"]},
        )), 500
