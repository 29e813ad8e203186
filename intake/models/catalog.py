"""
Question catalog model.

The catalog is owned by an external admin process: this service only reads
it.  Conversation events reference questions by plain integer id (no FK) so
that deleting or deactivating a question never touches answer history.

Phase orders:
    standard  initial → essential → good → excellent
    extended  initial → essential → advanced → good → excellent
"""

from datetime import datetime, timezone

from intake.models import db

# ── Constants ────────────────────────────────────────────────────────────────

STANDARD_PHASE_ORDER = ("initial", "essential", "good", "excellent")
EXTENDED_PHASE_ORDER = ("initial", "essential", "advanced", "good", "excellent")

PHASE_ORDERS = {
    "standard": STANDARD_PHASE_ORDER,
    "extended": EXTENDED_PHASE_ORDER,
}

VALID_PHASES = frozenset(EXTENDED_PHASE_ORDER)
VALID_SEVERITIES = frozenset({"mandatory", "optional"})


class Question(db.Model):
    """A single catalog question."""

    __tablename__ = "questions"

    id = db.Column(db.Integer, primary_key=True)
    question_text = db.Column(db.Text, nullable=False)
    phase = db.Column(db.String(20), nullable=False, index=True)
    severity = db.Column(db.String(20), nullable=False, default="optional")
    order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    used_for = db.Column(db.String(500), default="", comment="Comma list of analysis tags, e.g. swot,pestel")
    objective = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint(
            "severity IN ('mandatory','optional')",
            name="ck_question_severity",
        ),
        db.Index("ix_questions_phase_order", "phase", "order", "id"),
    )

    @property
    def is_mandatory(self) -> bool:
        return self.severity == "mandatory"

    @property
    def analysis_tags(self) -> list[str]:
        return [t.strip() for t in (self.used_for or "").split(",") if t.strip()]

    def to_dict(self):
        return {
            "id": self.id,
            "question_text": self.question_text,
            "phase": self.phase,
            "severity": self.severity,
            "order": self.order,
            "is_active": self.is_active,
            "used_for": self.analysis_tags,
            "objective": self.objective,
        }

    def __repr__(self):
        return f"<Question {self.id} [{self.phase}#{self.order}] {self.severity}>"
