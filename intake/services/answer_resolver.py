"""
Edit/Skip Resolver — turns answer, skip, follow-up and edit requests into
event-log writes.

Design decisions:
    - Writes to one (owner, scope, question) are serialised twice: a weak
      in-process lock orders threads of one worker, and a row lock on
      question_write_locks (taken inside the write transaction) orders
      workers.  Different questions never contend.
    - An edit is delete-all-for-question + one clean append with
      ``metadata.is_edit = True``, flushed in the SAME session transaction and
      committed once.  A failed attempt is rolled back as a whole and retried
      up to EDIT_MAX_RETRIES times; after that ConsistencyError is raised and
      the pre-edit history is intact.  A lone delete is never committed.
    - Replaying the same edit yields the same final state (one event with the
      edited text), so callers may retry safely.
    - Question text/phase are snapshotted from the catalog at write time.  An
      unknown question is not an error here: history must survive catalog
      drift, so the snapshot is simply left empty.
    - Bulk edits are independent per item: a failure on item k does not undo
      items 1..k-1.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from intake.core.exceptions import ConsistencyError, IntakeError, StoreError, ValidationError
from intake.models import db
from intake.models.conversation import SKIP_SENTINEL, ConversationEvent
from intake.services.catalog_service import QuestionCatalog
from intake.services.event_store import EventLogStore, validate_event

logger = logging.getLogger(__name__)

_DEFAULT_MAX_RETRIES = 3


# ── Lock registry ─────────────────────────────────────────────────────────────


class QuestionLockRegistry:
    """One ``threading.Lock`` per (owner, scope, question), created on demand.

    Entries are weak: a lock is dropped as soon as no writer holds it, so the
    registry only ever holds keys currently being written.  It orders writers
    inside one process; writers in other workers are ordered by the database
    row lock (``EventLogStore.lock_question``).
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def lock_for(self, owner_id: int, scope_id: int, question_id: int | None) -> threading.Lock:
        key = (owner_id, scope_id, question_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def __len__(self):
        return len(self._locks)


_registry = QuestionLockRegistry()


# ── Results ───────────────────────────────────────────────────────────────────


@dataclass
class EditResult:
    event: ConversationEvent
    deleted_count: int
    attempts: int

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.event.id,
            "question_id": self.event.question_id,
            "deleted_count": self.deleted_count,
            "attempts": self.attempts,
            "action": "edited_and_replaced",
            "is_complete": True,
            "is_edit": True,
        }


@dataclass
class BulkItemResult:
    index: int
    question_id: int | None
    status: str  # "edited" | "failed" | "ignored"
    conversation_id: int | None = None
    error: str | None = None
    code: str | None = None

    def to_dict(self) -> dict:
        d = {"index": self.index, "question_id": self.question_id, "status": self.status}
        if self.conversation_id is not None:
            d["conversation_id"] = self.conversation_id
        if self.error:
            d["error"] = self.error
            d["code"] = self.code
        return d


@dataclass
class BulkEditResult:
    items: list[BulkItemResult] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return sum(1 for i in self.items if i.status == "edited")

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if i.status == "failed")

    def to_dict(self) -> dict:
        return {
            "count": self.saved,
            "failed": self.failed,
            "results": [i.to_dict() for i in self.items],
        }


@dataclass
class DispatchResult:
    action: str  # "created" | "edited_and_replaced"
    event: ConversationEvent
    edit: EditResult | None = None

    @property
    def is_edit(self) -> bool:
        return self.edit is not None


# ── Helpers ───────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_int(value, field_name: str) -> int:
    """Coerce an id from JSON or a query string; bools and fractional numbers are rejected."""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field_name} must be an integer", details={field_name: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer", details={field_name: value}) from None


def _clean_text(value, field_name: str) -> str:
    text = (value or "").strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(
            f"{field_name} is required", details={field_name: "required"}, code=ValidationError.REQUIRED
        )
    return text


# ── Resolver ──────────────────────────────────────────────────────────────────


class AnswerResolver:
    """Write path for one workspace's conversation log.

    Args:
        owner_id:  Workspace owner; events are always stored under the owner,
                   whoever is writing.
        scope_id:  Workspace id.
        session:   SQLAlchemy session, defaults to ``db.session``.
        max_retries: Edit attempts before ConsistencyError; defaults to the
                   EDIT_MAX_RETRIES config key.
    """

    def __init__(
        self,
        owner_id: int,
        scope_id: int,
        *,
        session=None,
        catalog: QuestionCatalog | None = None,
        store: EventLogStore | None = None,
        locks: QuestionLockRegistry | None = None,
        max_retries: int | None = None,
    ):
        if owner_id is None or scope_id is None:
            raise ValidationError("owner_id and scope_id are required", code=ValidationError.REQUIRED)
        self.owner_id = owner_id
        self.scope_id = scope_id
        self.session = session or db.session
        self.catalog = catalog or QuestionCatalog(self.session)
        self.store = store or EventLogStore(self.session)
        self.locks = locks if locks is not None else _registry
        if max_retries is None:
            max_retries = current_app.config.get("EDIT_MAX_RETRIES", _DEFAULT_MAX_RETRIES)
        self.max_retries = max(1, int(max_retries))

    # ── Event construction ────────────────────────────────────────────────

    def _snapshot(self, question_id: int | None) -> tuple[str | None, str | None]:
        if question_id is None:
            return None, None
        question = self.catalog.get(question_id)
        if question is None:
            return None, None
        return question.question_text, question.phase

    def _event(self, *, actor: str, question_id: int | None, body: str | None,
               is_followup: bool = False, metadata: dict | None = None) -> ConversationEvent:
        text_snap, phase_snap = self._snapshot(question_id)
        return ConversationEvent(
            owner_id=self.owner_id,
            scope_id=self.scope_id,
            question_id=question_id,
            actor=actor,
            body=body,
            is_followup=is_followup,
            question_text_snapshot=text_snap,
            question_phase_snapshot=phase_snap,
            event_metadata=dict(metadata or {}),
            created_at=_utcnow(),
        )

    def _write(self, **fields) -> ConversationEvent:
        """Build and append one event while holding the question's locks."""
        question_id = fields.get("question_id")
        with self.locks.lock_for(self.owner_id, self.scope_id, question_id):
            event = self._event(**fields)
            validate_event(event)
            try:
                if question_id is not None:
                    self.store.lock_question(owner_id=self.owner_id, scope_id=self.scope_id, question_id=question_id)
                self.store.append(event, commit=False)
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise StoreError("Event append failed", operation="append") from exc
        return event

    # ── Plain writes ──────────────────────────────────────────────────────

    def submit_answer(self, question_id, answer_text, *, is_complete: bool = False,
                      metadata: dict | None = None) -> ConversationEvent:
        """Append a user answer.  ``is_complete`` is recorded as given."""
        question_id = _as_int(question_id, "question_id")
        if not isinstance(answer_text, str) or not answer_text.strip():
            raise ValidationError(
                "answer_text is required", details={"answer_text": "required"}, code=ValidationError.REQUIRED
            )
        meta = dict(metadata or {})
        meta["is_complete"] = bool(is_complete)
        event = self._write(actor="user", question_id=question_id, body=answer_text, metadata=meta)
        logger.info(
            "Answer stored for question %s",
            question_id,
            extra={"owner_id": self.owner_id, "scope_id": self.scope_id, "question_id": question_id,
                   "event_type": "question_skipped" if answer_text == SKIP_SENTINEL else "question_answered"},
        )
        return event

    def skip(self, question_id) -> ConversationEvent:
        """Append a skip marker.  A later real answer supersedes it."""
        question_id = _as_int(question_id, "question_id")
        event = self._write(
            actor="user",
            question_id=question_id,
            body=SKIP_SENTINEL,
            metadata={"is_complete": True, "is_skipped": True},
        )
        logger.info(
            "Question %s skipped",
            question_id,
            extra={"owner_id": self.owner_id, "scope_id": self.scope_id, "question_id": question_id,
                   "event_type": "question_skipped"},
        )
        return event

    def add_followup(self, question_id, message_text) -> ConversationEvent:
        """Append a bot follow-up prompt under ``question_id``."""
        question_id = _as_int(question_id, "question_id")
        text = _clean_text(message_text, "message_text")
        return self._write(
            actor="bot",
            question_id=question_id,
            body=text,
            is_followup=True,
            metadata={"is_followup": True, "is_complete": False},
        )

    def add_bot_message(self, message_text, *, question_id=None,
                        metadata: dict | None = None) -> ConversationEvent:
        """Append a bot prompt, optionally attached to a question."""
        text = _clean_text(message_text, "message_text")
        if question_id is not None:
            question_id = _as_int(question_id, "question_id")
        meta = dict(metadata or {})
        is_followup = meta.get("is_followup") is True and question_id is not None
        meta["is_complete"] = False
        return self._write(actor="bot", question_id=question_id, body=text,
                           is_followup=is_followup, metadata=meta)

    # ── Edit ──────────────────────────────────────────────────────────────

    def edit(self, question_id, answer_text, *, metadata: dict | None = None) -> EditResult:
        """Replace a question's whole history with one edited answer.

        Raises:
            ValidationError: missing question_id / answer_text (nothing written).
            ConsistencyError: every attempt failed and was rolled back.
        """
        question_id = _as_int(question_id, "question_id")
        text = _clean_text(answer_text, "answer_text")

        meta = dict(metadata or {})
        meta.update({
            "is_complete": True,
            "is_edit": True,
            "from_editable_brief": True,
            "last_edited": _utcnow().isoformat(),
        })

        last_exc: Exception | None = None
        with self.locks.lock_for(self.owner_id, self.scope_id, question_id):
            for attempt in range(1, self.max_retries + 1):
                event = self._event(actor="user", question_id=question_id, body=text, metadata=meta)
                validate_event(event)
                try:
                    self.store.lock_question(owner_id=self.owner_id, scope_id=self.scope_id, question_id=question_id)
                    deleted = self.store.delete_where(
                        owner_id=self.owner_id,
                        scope_id=self.scope_id,
                        question_id=question_id,
                        commit=False,
                    )
                    self.store.append(event, commit=False)
                    self.session.commit()
                except (StoreError, SQLAlchemyError) as exc:
                    self.session.rollback()
                    last_exc = exc
                    logger.warning(
                        "Edit attempt %d/%d for question %s rolled back: %s",
                        attempt, self.max_retries, question_id, exc,
                        extra={"owner_id": self.owner_id, "scope_id": self.scope_id,
                               "question_id": question_id},
                    )
                    continue

                logger.info(
                    "Question %s edited, %d previous entries replaced",
                    question_id, deleted,
                    extra={"owner_id": self.owner_id, "scope_id": self.scope_id,
                           "question_id": question_id, "event_type": "question_edited"},
                )
                return EditResult(event=event, deleted_count=deleted, attempts=attempt)

        logger.error(
            "Edit for question %s failed after %d attempts",
            question_id, self.max_retries,
            extra={"owner_id": self.owner_id, "scope_id": self.scope_id, "question_id": question_id},
        )
        raise ConsistencyError(
            f"Edit for question {question_id} could not be applied; previous answer kept",
            question_id=question_id,
            attempts=self.max_retries,
        ) from last_exc

    def bulk_edit(self, answers) -> BulkEditResult:
        """Apply a list of ``{question_id, answer_text}`` edits independently.

        Items without a question_id or text are reported as ``ignored``.
        """
        if not isinstance(answers, list):
            raise ValidationError("answers must be a list", details={"answers": "must be a list"})

        result = BulkEditResult()
        for idx, item in enumerate(answers):
            item = item if isinstance(item, dict) else {}
            qid = item.get("question_id")
            text = item.get("answer_text")
            if qid is None or not isinstance(text, str) or not text.strip():
                result.items.append(BulkItemResult(index=idx, question_id=qid, status="ignored"))
                continue
            try:
                edited = self.edit(qid, text, metadata={"is_enriched": True})
            except IntakeError as exc:
                result.items.append(BulkItemResult(
                    index=idx,
                    question_id=qid,
                    status="failed",
                    error=str(exc),
                    code=type(exc).__name__,
                ))
                continue
            result.items.append(BulkItemResult(
                index=idx,
                question_id=edited.event.question_id,
                status="edited",
                conversation_id=edited.event.id,
            ))

        logger.info(
            "Bulk edit: %d saved, %d failed",
            result.saved, result.failed,
            extra={"owner_id": self.owner_id, "scope_id": self.scope_id, "event_type": "questions_bulk_enriched"},
        )
        return result

    # ── Dispatch ──────────────────────────────────────────────────────────

    def dispatch(self, payload: dict) -> DispatchResult:
        """Route a ``POST /conversations`` body to the matching write.

        - ``metadata.is_edit`` or ``metadata.from_editable_brief`` → edit
        - ``answer_text`` → user answer
        - only ``message_text`` → bot message
        """
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", details={"metadata": "must be an object"})

        question_id = payload.get("question_id")
        answer_text = payload.get("answer_text")
        message_text = payload.get("message_text")

        if metadata.get("is_edit") is True or metadata.get("from_editable_brief") is True:
            if question_id is None or not answer_text:
                raise ValidationError(
                    "question_id and answer_text required for edit",
                    details={"question_id": question_id, "answer_text": "required"},
                    code=ValidationError.REQUIRED,
                )
            edited = self.edit(question_id, answer_text, metadata=metadata)
            return DispatchResult(action="edited_and_replaced", event=edited.event, edit=edited)

        if answer_text:
            event = self.submit_answer(
                question_id,
                answer_text,
                is_complete=payload.get("is_complete") is True,
                metadata=metadata,
            )
            return DispatchResult(action="created", event=event)

        if message_text:
            event = self.add_bot_message(message_text, question_id=question_id, metadata=metadata)
            return DispatchResult(action="created", event=event)

        raise ValidationError(
            "Invalid payload: must include question_id + answer_text (user) or message_text (bot)"
        )


# ── Purge ─────────────────────────────────────────────────────────────────────


def purge_workspace(owner_id: int, scope_id: int, *, session=None) -> dict:
    """Delete every event and analysis snapshot of a workspace in one commit."""
    from intake.services.analysis_store import AnalysisSnapshotStore

    session = session or db.session
    try:
        deleted_events = EventLogStore(session).purge_scope(owner_id=owner_id, scope_id=scope_id, commit=False)
        deleted_analyses = AnalysisSnapshotStore(session).purge_scope(owner_id, scope_id, commit=False)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreError("Workspace purge failed", operation="purge_workspace") from exc

    logger.warning(
        "Workspace purged: %d events, %d analyses",
        deleted_events, deleted_analyses,
        extra={"owner_id": owner_id, "scope_id": scope_id, "event_type": "conversations_purged"},
    )
    return {"deleted": deleted_events, "deleted_analyses": deleted_analyses}
