"""
Event Log Store — append-only persistence of conversation events.

Rules:
  - owner_id and scope_id are mandatory on every write and every read.
  - User answers/skips and follow-up prompts must reference a question;
    free-standing bot/system messages may not.
  - append_many validates the whole batch before anything is added, so a
    bulk submission is applied completely or not at all.
  - lock_question holds a per-question row lock until the caller commits;
    every resolver write takes it first.
  - delete_where is scoped to exactly one (owner, scope, question) tuple and
    is called only by the answer resolver's edit path.
  - ``commit=False`` lets the resolver compose several calls into one
    transaction; the caller then owns commit/rollback.
  - SQLAlchemy failures surface as StoreError after a rollback.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from intake.core.exceptions import StoreError, ValidationError
from intake.models import db
from intake.models.conversation import ACTORS, ConversationEvent, QuestionWriteLock

logger = logging.getLogger(__name__)


def validate_event(event: ConversationEvent) -> None:
    """Raise ValidationError if the event cannot be persisted."""
    missing = {}
    if event.owner_id is None:
        missing["owner_id"] = "required"
    if event.scope_id is None:
        missing["scope_id"] = "required"
    if missing:
        raise ValidationError("owner_id and scope_id are required", details=missing, code=ValidationError.REQUIRED)

    if event.actor not in ACTORS:
        raise ValidationError(
            f"Invalid actor '{event.actor}'",
            details={"actor": f"must be one of: {', '.join(sorted(ACTORS))}"},
        )

    needs_question = event.actor == "user" or (event.actor == "bot" and event.is_followup)
    if needs_question and event.question_id is None:
        raise ValidationError(
            "question_id is required for answers, skips and follow-ups",
            details={"question_id": "required"},
            code=ValidationError.REQUIRED,
        )


class EventLogStore:
    """Append-only conversation log bound to an injected session."""

    def __init__(self, session=None):
        self.session = session or db.session

    # ── Writes ────────────────────────────────────────────────────────────

    def append(self, event: ConversationEvent, *, commit: bool = True) -> int:
        validate_event(event)
        try:
            self.session.add(event)
            self.session.flush()
            if commit:
                self.session.commit()
        except SQLAlchemyError as exc:
            self._rollback_and_raise("append", exc)
        return event.id

    def append_many(self, events: Iterable[ConversationEvent], *, commit: bool = True) -> list[int]:
        batch = list(events)
        # Validate everything first: nothing is added if any element is bad
        for idx, event in enumerate(batch):
            try:
                validate_event(event)
            except ValidationError as exc:
                raise ValidationError(
                    f"Event #{idx} rejected: {exc}",
                    details={"index": idx, **exc.details},
                    code=exc.code,
                ) from exc
        try:
            self.session.add_all(batch)
            self.session.flush()
            if commit:
                self.session.commit()
        except SQLAlchemyError as exc:
            self._rollback_and_raise("append_many", exc)
        return [e.id for e in batch]

    def delete_where(self, *, owner_id: int, scope_id: int, question_id: int, commit: bool = True) -> int:
        """Delete every event of one question. Returns the number of rows removed."""
        if owner_id is None or scope_id is None or question_id is None:
            raise ValidationError(
                "delete_where requires owner_id, scope_id and question_id",
                details={"owner_id": owner_id, "scope_id": scope_id, "question_id": question_id},
            )
        stmt = delete(ConversationEvent).where(
            ConversationEvent.owner_id == owner_id,
            ConversationEvent.scope_id == scope_id,
            ConversationEvent.question_id == question_id,
        )
        try:
            result = self.session.execute(stmt)
            if commit:
                self.session.commit()
        except SQLAlchemyError as exc:
            self._rollback_and_raise("delete_where", exc)
        return result.rowcount or 0

    def purge_scope(self, *, owner_id: int, scope_id: int, commit: bool = True) -> int:
        """Irreversibly delete every event of a workspace."""
        if owner_id is None or scope_id is None:
            raise ValidationError("purge_scope requires owner_id and scope_id")
        stmt = delete(ConversationEvent).where(
            ConversationEvent.owner_id == owner_id,
            ConversationEvent.scope_id == scope_id,
        )
        try:
            result = self.session.execute(stmt)
            if commit:
                self.session.commit()
        except SQLAlchemyError as exc:
            self._rollback_and_raise("purge_scope", exc)
        return result.rowcount or 0

    def lock_question(self, *, owner_id: int, scope_id: int, question_id: int) -> QuestionWriteLock:
        """Take the write lock row of one question for the rest of the transaction.

        Race-safe: the lock row is created (in its own commit) the first time
        a question is written, then held with ``SELECT ... FOR UPDATE`` where
        the backend supports it.  SQLite has no row locks; the ``locked_at``
        update takes its database-wide write lock instead.
        """
        if owner_id is None or scope_id is None or question_id is None:
            raise ValidationError(
                "lock_question requires owner_id, scope_id and question_id",
                details={"owner_id": owner_id, "scope_id": scope_id, "question_id": question_id},
            )
        stmt = (
            select(QuestionWriteLock)
            .where(
                QuestionWriteLock.owner_id == owner_id,
                QuestionWriteLock.scope_id == scope_id,
                QuestionWriteLock.question_id == question_id,
            )
            .with_for_update()
        )
        try:
            row = self.session.execute(stmt).scalar_one_or_none()
            if row is None:
                self.session.add(QuestionWriteLock(owner_id=owner_id, scope_id=scope_id, question_id=question_id))
                try:
                    self.session.commit()
                except IntegrityError:
                    # Another worker created it first
                    self.session.rollback()
                row = self.session.execute(stmt).scalar_one()
            row.locked_at = datetime.now(timezone.utc)
            self.session.flush()
        except SQLAlchemyError as exc:
            self._rollback_and_raise("lock_question", exc)
        return row

    # ── Reads ─────────────────────────────────────────────────────────────

    def find_where(
        self,
        *,
        owner_id: int,
        scope_id: int,
        question_id: int | None = None,
        actor: str | None = None,
    ) -> list[ConversationEvent]:
        """Events for a workspace ordered by created_at asc (id breaks ties)."""
        if owner_id is None or scope_id is None:
            raise ValidationError("find_where requires owner_id and scope_id")
        stmt = select(ConversationEvent).where(
            ConversationEvent.owner_id == owner_id,
            ConversationEvent.scope_id == scope_id,
        )
        if question_id is not None:
            stmt = stmt.where(ConversationEvent.question_id == question_id)
        if actor is not None:
            stmt = stmt.where(ConversationEvent.actor == actor)
        stmt = stmt.order_by(ConversationEvent.created_at.asc(), ConversationEvent.id.asc())
        try:
            return list(self.session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            self._rollback_and_raise("find_where", exc)

    # ── Internal helpers ──────────────────────────────────────────────────

    def _rollback_and_raise(self, operation: str, exc: Exception):
        self.session.rollback()
        logger.error("Event store %s failed: %s", operation, exc)
        raise StoreError(f"Event store {operation} failed", operation=operation) from exc
