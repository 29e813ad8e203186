"""
Progress orchestration — gathers the catalog slice, the workspace event log
and the analysis snapshots, runs the pure reconstructor and shapes the
response payloads.

Nothing here writes.  A store failure propagates as StoreError; a partial
view is never returned.
"""

from __future__ import annotations

import logging

from intake.core.exceptions import ValidationError
from intake.services.access_gate import AccessContext
from intake.services.analysis_store import AnalysisSnapshotStore
from intake.services.catalog_service import (
    QuestionCatalog,
    configured_phase_order,
    expand_cumulative_phase,
)
from intake.services.event_store import EventLogStore
from intake.services.progress_reconstructor import reconstruct

logger = logging.getLogger(__name__)

# Analysis types whose questions are tagged under a different name
ANALYSIS_TAG_ALIASES = {
    "fullSwot": "swot",
    "strategicRadar": "strategic",
}


def _events_in_slice(events, active_ids: set[int], slice_ids: set[int], phases: set[str]):
    """Drop events of active questions outside the requested phase slice.

    Events of questions no longer in the active catalog are kept when their
    phase snapshot falls inside the slice (or is unknown), so removed
    questions still surface as placeholders.
    """
    kept = []
    for event in events:
        qid = event.question_id
        if qid is None or qid in slice_ids:
            kept.append(event)
        elif qid not in active_ids:
            snap = event.question_phase_snapshot
            if snap is None or snap in phases:
                kept.append(event)
    return kept


def build_progress(access: AccessContext, phase: str | None = None, *, session=None) -> dict:
    """Full progress payload for ``GET /progress``."""
    phase_order = configured_phase_order()
    catalog_reader = QuestionCatalog(session)
    store = EventLogStore(session)
    analyses = AnalysisSnapshotStore(session)

    events = store.find_where(owner_id=access.owner_id, scope_id=access.scope_id)

    active = catalog_reader.list(active=True)
    if phase:
        phases = expand_cumulative_phase(phase, phase_order)
        catalog = [q for q in active if q.phase in phases]
        events = _events_in_slice(
            events,
            active_ids={q.id for q in active},
            slice_ids={q.id for q in catalog},
            phases=set(phases),
        )
    else:
        phases = list(phase_order)
        # Questions whose phase is not in the configured order are listed
        # after the known phases and do not gate completion
        catalog = active

    view = reconstruct(catalog, events, phases)

    logger.debug(
        "Progress rebuilt: %d questions, %d events, current phase %s",
        len(view.questions), len(events), view.current_phase,
        extra={"owner_id": access.owner_id, "scope_id": access.scope_id},
    )

    return {
        "conversations": [q.to_dict() for q in view.questions],
        "phase_analysis": analyses.grouped_by_phase(
            access.owner_id, access.scope_id, phases=phases if phase else None
        ),
        "total_questions": view.total,
        "completed": view.completed,
        "skipped": view.skipped,
        "deleted": view.deleted,
        "phase": phase or "all",
        "progress": view.progress_dict(),
        "business_info": access.workspace.to_info_dict(),
        "owner_id": access.owner_id,
        "access": access.to_dict(),
    }


def list_questions(phase: str | None = None, *, session=None) -> dict:
    """Active catalog questions, cumulative up to ``phase`` when given."""
    phase_order = configured_phase_order()
    phases = expand_cumulative_phase(phase, phase_order) if phase else list(phase_order)
    questions = QuestionCatalog(session).list(active=True, phases=phases)
    index = {p: i for i, p in enumerate(phase_order)}
    questions.sort(key=lambda q: (index.get(q.phase, len(index)), q.order, q.id))
    return {
        "questions": [q.to_dict() for q in questions],
        "allowed_phases": list(phase_order),
        "current_filter": phase or "all_allowed_phases",
        "total_questions": len(questions),
    }


def find_missing_for_analysis(access: AccessContext, analysis_type: str, *, session=None) -> dict:
    """Which questions an analysis needs that still lack a real answer.

    Questions are selected by their ``used_for`` tags; when nothing is tagged
    the active questions of the first phase are used instead.  Skipped
    questions count as missing.
    """
    if not analysis_type or not str(analysis_type).strip():
        raise ValidationError(
            "analysis_type is required", details={"analysis_type": "required"}, code=ValidationError.REQUIRED
        )
    analysis_type = str(analysis_type).strip()
    tag = ANALYSIS_TAG_ALIASES.get(analysis_type, analysis_type)

    phase_order = configured_phase_order()
    catalog_reader = QuestionCatalog(session)
    tagged = catalog_reader.tagged_for(tag)
    required = tagged or catalog_reader.list(active=True, phases=phase_order[:1])

    events = EventLogStore(session).find_where(owner_id=access.owner_id, scope_id=access.scope_id)
    required_ids = {q.id for q in required}
    view = reconstruct(
        required,
        [e for e in events if e.question_id in required_ids],
        phase_order,
    )
    missing = [s for s in view.questions if s.completion_status != "complete"]
    by_id = {q.id: q for q in required}

    total = len(view.questions)
    is_complete = not missing
    if is_complete:
        message = f"All required questions answered for {analysis_type}"
    else:
        plural = "s" if len(missing) > 1 else ""
        message = f"Please answer {len(missing)} more question{plural} to generate {analysis_type} analysis"

    return {
        "analysis_type": analysis_type,
        "total_required": total,
        "answered": total - len(missing),
        "missing_count": len(missing),
        "missing_questions": [
            {
                "question_id": s.question_id,
                "order": s.order,
                "phase": s.phase,
                "question_text": s.question_text,
                "objective": by_id[s.question_id].objective,
                "used_for": by_id[s.question_id].analysis_tags,
            }
            for s in missing
        ],
        "is_complete": is_complete,
        "message": message,
        "search_criteria": tag,
        "fallback_used": not tagged,
    }
