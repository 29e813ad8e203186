"""
Question Catalog Reader.

Read-only access to the question catalog.  Ordering is always
``order asc, id asc`` so ties never depend on backend insertion order.

Cumulative phase queries ("essential" means initial + essential) are expanded
by the caller with ``expand_cumulative_phase`` before querying; the reader
itself never cumulates.
"""

from __future__ import annotations

import logging
from typing import Iterable

from flask import current_app
from sqlalchemy import select

from intake.core.exceptions import ValidationError
from intake.models import db
from intake.models.catalog import (
    PHASE_ORDERS,
    STANDARD_PHASE_ORDER,
    VALID_PHASES,
    VALID_SEVERITIES,
    Question,
)

logger = logging.getLogger(__name__)


def configured_phase_order() -> tuple[str, ...]:
    """Phase order selected by the PHASE_ORDER config key."""
    name = current_app.config.get("PHASE_ORDER", "standard")
    order = PHASE_ORDERS.get(name)
    if order is None:
        logger.warning("Unknown PHASE_ORDER %r, falling back to standard", name)
        return STANDARD_PHASE_ORDER
    return order


def expand_cumulative_phase(phase: str, phase_order: Iterable[str]) -> list[str]:
    """Return every phase up to and including ``phase`` in canonical order.

    Raises:
        ValidationError: if ``phase`` is not part of ``phase_order``.
    """
    order = list(phase_order)
    if phase not in order:
        raise ValidationError(
            f"Invalid phase '{phase}'. Allowed phases are: {', '.join(order)}",
            details={"phase": phase},
        )
    return order[: order.index(phase) + 1]


class QuestionCatalog:
    """Catalog reader bound to an injected session."""

    def __init__(self, session=None):
        self.session = session or db.session

    def list(self, *, active: bool | None = None, phases: Iterable[str] | None = None) -> list[Question]:
        stmt = select(Question)
        if active is not None:
            stmt = stmt.where(Question.is_active.is_(active))
        if phases is not None:
            stmt = stmt.where(Question.phase.in_(list(phases)))
        stmt = stmt.order_by(Question.order.asc(), Question.id.asc())
        return list(self.session.execute(stmt).scalars())

    def get(self, question_id: int) -> Question | None:
        return self.session.get(Question, question_id)

    def by_ids(self, question_ids: Iterable[int]) -> dict[int, Question]:
        ids = {qid for qid in question_ids if qid is not None}
        if not ids:
            return {}
        rows = self.session.execute(select(Question).where(Question.id.in_(ids))).scalars()
        return {q.id: q for q in rows}

    def tagged_for(self, analysis_type: str) -> list[Question]:
        """Active questions whose ``used_for`` tags include ``analysis_type``."""
        tag = analysis_type.strip().lower()
        return [
            q for q in self.list(active=True)
            if tag in {t.lower() for t in q.analysis_tags}
        ]


def seed_questions(records: Iterable[dict], session=None) -> int:
    """Insert or update catalog questions from fixture records keyed by ``id``.

    Used only by the ``flask seed-questions`` command; the service itself
    never writes to the catalog.
    """
    session = session or db.session
    records = list(records)

    phase_order = configured_phase_order()

    # Whole fixture is validated before anything is written
    for idx, rec in enumerate(records):
        phase = rec.get("phase")
        if phase not in VALID_PHASES:
            raise ValidationError(f"Record #{idx}: invalid phase '{phase}'", details={"index": idx})
        if phase not in phase_order:
            raise ValidationError(
                f"Record #{idx}: phase '{phase}' is not in the configured phase order ({', '.join(phase_order)})",
                details={"index": idx, "phase": phase},
            )
        severity = rec.get("severity", "optional")
        if severity not in VALID_SEVERITIES:
            raise ValidationError(f"Record #{idx}: invalid severity '{severity}'", details={"index": idx})
        if not (rec.get("question_text") or "").strip():
            raise ValidationError(
                f"Record #{idx}: question_text is required", details={"index": idx}, code=ValidationError.REQUIRED
            )

    existing = QuestionCatalog(session).by_ids(rec.get("id") for rec in records)
    count = 0
    for rec in records:
        question = existing.get(rec.get("id"))
        if question is None:
            question = Question(id=rec.get("id"))
            session.add(question)
            if question.id is not None:
                existing[question.id] = question
        question.question_text = rec["question_text"].strip()
        question.phase = rec["phase"]
        question.severity = rec.get("severity", "optional")
        question.order = int(rec.get("order", 0))
        question.is_active = bool(rec.get("is_active", True))
        used_for = rec.get("used_for") or ""
        question.used_for = ",".join(used_for) if isinstance(used_for, list) else used_for
        question.objective = rec.get("objective")
        count += 1
    session.commit()
    logger.info("Seeded %d catalog questions", count)
    return count
