"""
Workspace Access Middleware — resolves the caller's access to a workspace once
per request.

Provides the `@require_workspace_access` decorator.  The workspace id is read
from ``business_id`` in the JSON body (writes) or the query string (reads).
On success the typed AccessContext is stored in ``g.access`` and the handler
never re-checks ownership itself.

Usage:
    @bp.route("/api/v1/conversations", methods=["POST"])
    @require_workspace_access("answer")
    def create_conversation():
        access = g.access
        ...

Failures:
    no JWT identity            → 401 (answered here)
    missing/invalid business_id → ValidationError  (400)
    unknown workspace          → NotFoundError     (404)
    not allowed                → AccessDeniedError (403)

The exceptions propagate to the blueprint error handlers.
"""

import functools
import logging

from flask import g, request

from intake.core.exceptions import ValidationError
from intake.services.access_gate import Capability, resolve_access
from intake.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _requested_workspace_id() -> int:
    raw = None
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        raw = (request.get_json(silent=True) or {}).get("business_id")
    if raw is None:
        raw = request.args.get("business_id")
    if raw is None or raw == "":
        raise ValidationError(
            "business_id is required", details={"business_id": "required"}, code=ValidationError.REQUIRED
        )
    # JSON true/false and 1.9 are not workspace ids
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        raise ValidationError("business_id must be an integer", details={"business_id": raw})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("business_id must be an integer", details={"business_id": raw}) from None


def require_workspace_access(capability: str = "view"):
    """
    Decorator: resolve ``g.access`` for the requested workspace and require
    ``capability`` ("view", "answer" or "admin").
    """
    required = Capability(capability)

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id = getattr(g, "jwt_user_id", None)
            if user_id is None:
                return api_error(E.UNAUTHENTICATED, "Authentication required")

            workspace_id = _requested_workspace_id()
            access = resolve_access(user_id, workspace_id)
            access.require(required)
            g.access = access
            return f(*args, **kwargs)
        return decorated
    return decorator
