"""Question catalog blueprint (read-only).

  GET  /api/v1/questions?phase=                    cumulative phase listing
  POST /api/v1/questions/missing-for-analysis      unanswered inputs of an analysis
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from intake.middleware.workspace_access import require_workspace_access
from intake.services.progress_service import find_missing_for_analysis, list_questions
from intake.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

question_bp = Blueprint("question", __name__, url_prefix="/api/v1/questions")

register_error_handlers(question_bp)


@question_bp.route("", methods=["GET"])
def get_questions():
    """Active questions; ``?phase=essential`` returns initial + essential."""
    if getattr(g, "jwt_user_id", None) is None:
        return api_error(E.UNAUTHENTICATED, "Authentication required")
    return jsonify(list_questions(request.args.get("phase") or None)), 200


@question_bp.route("/missing-for-analysis", methods=["POST"])
@require_workspace_access("view")
def missing_for_analysis():
    """Body: {business_id, analysis_type}"""
    data = request.get_json(silent=True) or {}
    return jsonify(find_missing_for_analysis(g.access, data.get("analysis_type"))), 200
