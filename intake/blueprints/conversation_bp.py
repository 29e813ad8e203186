"""Conversation blueprint — answers, skips, edits, follow-ups, phase analyses
and the reconstructed progress view.

Endpoint groups:
  Progress           GET    /api/v1/progress                       (view)
                     GET    /api/v1/conversations                  (view, alias)
  Answer log         POST   /api/v1/conversations                  (answer)
                     POST   /api/v1/conversations/bulk             (answer)
                     POST   /api/v1/conversations/skip             (answer)
                     POST   /api/v1/conversations/followup-question (answer)
                     DELETE /api/v1/conversations                  (owner or admin)
  Phase analysis     POST   /api/v1/conversations/phase-analysis   (answer)
                     GET    /api/v1/conversations/phase-analysis   (view)

Every route identifies the workspace with ``business_id`` (query string for
GET, JSON body otherwise).  Access is resolved once by
``require_workspace_access`` and read from ``g.access``; events are always
stored under the workspace owner.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from intake.core.exceptions import ValidationError
from intake.middleware.workspace_access import require_workspace_access
from intake.services.analysis_store import AnalysisSnapshotStore, parse_generated_at
from intake.services.answer_resolver import AnswerResolver, purge_workspace
from intake.services.progress_service import build_progress
from intake.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

conversation_bp = Blueprint("conversation", __name__, url_prefix="/api/v1")

register_error_handlers(conversation_bp)


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _resolver() -> AnswerResolver:
    return AnswerResolver(g.access.owner_id, g.access.scope_id)


# ═════════════════════════════════════════════════════════════════════════
# Progress
# ═════════════════════════════════════════════════════════════════════════


@conversation_bp.route("/progress", methods=["GET"])
@require_workspace_access("view")
def get_progress():
    """Reconstructed progress view.

    Query params: business_id (required), phase (optional, cumulative)
    """
    phase = request.args.get("phase") or None
    return jsonify(build_progress(g.access, phase)), 200


@conversation_bp.route("/conversations", methods=["GET"])
@require_workspace_access("view")
def list_conversations():
    phase = request.args.get("phase") or None
    return jsonify(build_progress(g.access, phase)), 200


# ═════════════════════════════════════════════════════════════════════════
# Answer log
# ═════════════════════════════════════════════════════════════════════════


@conversation_bp.route("/conversations", methods=["POST"])
@require_workspace_access("answer")
def create_conversation():
    """Create an answer or bot message, or edit a question's answer.

    Body: {
        business_id, question_id?, answer_text?, message_text?,
        is_complete?, metadata?: {is_edit?, from_editable_brief?, is_followup?}
    }
    Returns: 201 for a new entry, 200 for an edit.
    """
    result = _resolver().dispatch(_body())

    if result.is_edit:
        return jsonify({
            "message": "Answer edited successfully, previous history cleared",
            **result.edit.to_dict(),
        }), 200

    return jsonify({
        "message": "Conversation entry added",
        "conversation": result.event.to_dict(),
        "action": result.action,
    }), 201


@conversation_bp.route("/conversations/bulk", methods=["POST"])
@require_workspace_access("answer")
def bulk_edit_conversations():
    """Replace several answers at once; each item is applied independently.

    Body: {business_id, answers: [{question_id, answer_text}, ...]}
    """
    data = _body()
    answers = data.get("answers")
    if not isinstance(answers, list):
        raise ValidationError(
            "business_id and answers array are required", details={"answers": "required"}, code=ValidationError.REQUIRED
        )

    result = _resolver().bulk_edit(answers)
    payload = result.to_dict()
    payload["message"] = f"{result.saved} answers saved"
    return jsonify(payload), 201


@conversation_bp.route("/conversations/skip", methods=["POST"])
@require_workspace_access("answer")
def skip_question():
    data = _body()
    if data.get("question_id") is None:
        raise ValidationError(
            "question_id is required", details={"question_id": "required"}, code=ValidationError.REQUIRED
        )
    event = _resolver().skip(data["question_id"])
    return jsonify({"message": "Question skipped", "conversation": event.to_dict()}), 200


@conversation_bp.route("/conversations/followup-question", methods=["POST"])
@require_workspace_access("answer")
def save_followup_question():
    """Store a bot follow-up prompt.

    Body: {business_id, question_id, message_text | followup_question_text}
    """
    data = _body()
    if data.get("question_id") is None:
        raise ValidationError(
            "question_id is required", details={"question_id": "required"}, code=ValidationError.REQUIRED
        )
    text = data.get("message_text") or data.get("followup_question_text")
    if not text:
        raise ValidationError(
            "message_text (or followup_question_text) is required",
            details={"message_text": "required"},
            code=ValidationError.REQUIRED,
        )
    event = _resolver().add_followup(data["question_id"], text)
    return jsonify({"message": "Follow-up saved", "conversation": event.to_dict()}), 200


@conversation_bp.route("/conversations", methods=["DELETE"])
@require_workspace_access("view")
def delete_conversations():
    """Irreversibly delete every event and analysis of the workspace."""
    access = g.access
    access.require_purge()

    counts = purge_workspace(access.owner_id, access.scope_id)
    logger.info("Conversations purged by user %s", access.user_id, extra={"scope_id": access.scope_id})
    return jsonify({"message": "All conversations deleted", **counts}), 200


# ═════════════════════════════════════════════════════════════════════════
# Phase analysis
# ═════════════════════════════════════════════════════════════════════════


@conversation_bp.route("/conversations/phase-analysis", methods=["POST"])
@require_workspace_access("answer")
def save_phase_analysis():
    """Upsert the analysis snapshot for (workspace, phase, analysis_type).

    Body: {business_id, phase, analysis_type, analysis_name, analysis_data,
           metadata?, generated_at?}
    """
    data = _body()
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object", details={"metadata": "must be an object"})

    access = g.access
    outcome = AnalysisSnapshotStore().upsert(
        access.owner_id,
        access.scope_id,
        data.get("phase"),
        data.get("analysis_type"),
        data.get("analysis_name"),
        data.get("analysis_data"),
        generated_at=parse_generated_at(data.get("generated_at") or metadata.get("generated_at")),
        metadata=metadata,
    )
    return jsonify({
        "message": "Phase analysis saved successfully",
        "analysis": outcome["snapshot"].to_dict(),
        "upserted": outcome["upserted"],
        "modified": outcome["modified"],
    }), 200


@conversation_bp.route("/conversations/phase-analysis", methods=["GET"])
@require_workspace_access("view")
def get_phase_analysis():
    """Deduplicated analyses; filter with ?phase= and ?analysis_type=."""
    access = g.access
    results = AnalysisSnapshotStore().list_by_owner_scope(
        access.owner_id,
        access.scope_id,
        phase=request.args.get("phase") or None,
        analysis_type=request.args.get("analysis_type") or None,
    )
    formatted = [r.to_dict() for r in results]
    by_phase: dict[str, list[dict]] = {}
    for item in formatted:
        by_phase.setdefault(item["phase"] or "unknown", []).append(item)

    return jsonify({
        "business_id": access.scope_id,
        "owner_id": access.owner_id,
        "total_analyses": len(formatted),
        "analysis_results": formatted,
        "results_by_phase": by_phase,
    }), 200
