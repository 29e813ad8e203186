"""
Conversation event log and phase-analysis snapshots.

Models:
    - ConversationEvent: append-only Q&A log per (owner, scope, question)
    - QuestionWriteLock: row lock serialising writes to one question
    - PhaseAnalysisSnapshot: one live analysis result per
      (owner, scope, phase, analysis_type)

Business rules:
    - Events are never updated.  The only destructive write is the edit
      replace (delete-all-for-question + one clean append, single transaction)
      and the explicit workspace purge.
    - A skip is a user event whose body is SKIP_SENTINEL.
    - question_text_snapshot / question_phase_snapshot are captured at write
      time so history stays readable after the catalog drifts.
"""

from datetime import datetime, timezone

from intake.models import db

# ── Constants ────────────────────────────────────────────────────────────────

SKIP_SENTINEL = "[Question Skipped]"

ACTORS = frozenset({"bot", "user", "system"})


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class ConversationEvent(db.Model):
    """One entry in the question/answer log."""

    __tablename__ = "conversation_events"

    id = db.Column(db.Integer, primary_key=True)

    # Scope
    owner_id = db.Column(db.Integer, nullable=False, comment="Workspace owner; events are always stored under the owner")
    scope_id = db.Column(db.Integer, nullable=False, comment="Workspace (business) id")
    question_id = db.Column(db.Integer, nullable=True, comment="No FK: catalog deletions must not cascade into history")

    actor = db.Column(db.String(10), nullable=False, comment="bot | user | system")
    body = db.Column(db.Text, nullable=True, comment="Prompt text (bot) or answer text (user)")
    is_followup = db.Column(db.Boolean, nullable=False, default=False)

    question_text_snapshot = db.Column(db.Text, nullable=True)
    question_phase_snapshot = db.Column(db.String(20), nullable=True)

    # "metadata" is reserved on declarative classes
    event_metadata = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "actor IN ('bot','user','system')",
            name="ck_conv_event_actor",
        ),
        db.Index("ix_conv_event_owner_scope", "owner_id", "scope_id", "created_at"),
        db.Index("ix_conv_event_question", "owner_id", "scope_id", "question_id"),
    )

    @property
    def meta(self) -> dict:
        return self.event_metadata or {}

    @property
    def is_skip(self) -> bool:
        return self.actor == "user" and self.body == SKIP_SENTINEL

    @property
    def is_answer(self) -> bool:
        """User event carrying non-blank text (real answer or skip marker)."""
        return self.actor == "user" and bool((self.body or "").strip())

    @property
    def is_edit(self) -> bool:
        return self.meta.get("is_edit") is True

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "scope_id": self.scope_id,
            "question_id": self.question_id,
            "actor": self.actor,
            "body": self.body,
            "is_followup": self.is_followup,
            "metadata": self.meta,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ConversationEvent {self.id} q={self.question_id} {self.actor}>"


class QuestionWriteLock(db.Model):
    """
    One row per (owner, scope, question) that has ever been written.

    Writers take ``SELECT ... FOR UPDATE`` on the row inside their transaction
    so an edit's delete+append and a plain append from another worker never
    interleave.  The row carries no data beyond the last lock time.
    """

    __tablename__ = "question_write_locks"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, nullable=False)
    scope_id = db.Column(db.Integer, nullable=False)
    question_id = db.Column(db.Integer, nullable=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("owner_id", "scope_id", "question_id", name="uq_question_write_lock"),
    )

    def __repr__(self):
        return f"<QuestionWriteLock {self.owner_id}/{self.scope_id} q={self.question_id}>"


class PhaseAnalysisSnapshot(db.Model):
    """
    Latest analysis result for (owner, scope, phase, analysis_type).

    No unique constraint: rows written before upserts existed may duplicate a
    key, so readers deduplicate by latest generated_at.
    """

    __tablename__ = "phase_analysis_snapshots"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, nullable=False)
    scope_id = db.Column(db.Integer, nullable=False)
    phase = db.Column(db.String(20), nullable=False)
    analysis_type = db.Column(db.String(100), nullable=False)

    name = db.Column(db.String(300), nullable=False)
    result = db.Column(db.JSON, nullable=False, comment="Opaque analysis payload")
    extra_metadata = db.Column(db.JSON, nullable=False, default=dict)

    generated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_phase_analysis_key", "owner_id", "scope_id", "phase", "analysis_type"),
    )

    @property
    def key(self) -> tuple:
        return (self.owner_id, self.scope_id, self.phase, self.analysis_type)

    def to_dict(self):
        return {
            "analysis_id": self.id,
            "phase": self.phase,
            "analysis_type": self.analysis_type,
            "analysis_name": self.name or f"{self.analysis_type.upper()} Analysis",
            "analysis_data": self.result,
            "metadata": self.extra_metadata or {},
            "generated_at": _iso(self.generated_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<PhaseAnalysisSnapshot {self.id} {self.phase}/{self.analysis_type}>"
