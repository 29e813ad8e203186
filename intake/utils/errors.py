"""Standardised API error responses.

Usage
-----
    from intake.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workspace not found")
    return api_error(E.VALIDATION_REQUIRED, "business_id is required")
"""

from __future__ import annotations

import logging

from flask import g, has_app_context, jsonify, request

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Authentication – HTTP 401
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Server – HTTP 500
    CONSISTENCY = "ERR_CONSISTENCY"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONSISTENCY: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(jsonify(body), status)`` for a Flask view.

    The status falls back to ``_DEFAULT_STATUS[code]``, then 400.  The body
    carries the request id so clients can quote it when reporting a failure.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    request_id = g.get("request_id") if has_app_context() else None
    if request_id:
        body["request_id"] = request_id
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)


# ── Blueprint error handlers ──────────────────────────────────────────
def register_error_handlers(bp) -> None:
    """Map the service exception hierarchy onto ``api_error`` for ``bp``."""
    from werkzeug.exceptions import HTTPException

    from intake.core.exceptions import (
        AccessDeniedError,
        ConsistencyError,
        NotFoundError,
        StoreError,
        ValidationError,
    )

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(error.code, str(error), details=error.details)

    @bp.errorhandler(AccessDeniedError)
    def _handle_access_denied(error: AccessDeniedError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ConsistencyError)
    def _handle_consistency(error: ConsistencyError):
        return api_error(
            E.CONSISTENCY,
            str(error),
            details={"question_id": error.question_id, "attempts": error.attempts, "retryable": True},
        )

    @bp.errorhandler(StoreError)
    def _handle_store(error: StoreError):
        return api_error(E.DATABASE, str(error), details={"operation": error.operation, "retryable": True})

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
