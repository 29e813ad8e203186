"""Tests for the append-only event log store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from intake.core.exceptions import StoreError, ValidationError
from intake.models import db
from intake.models.conversation import ConversationEvent, QuestionWriteLock
from intake.services.event_store import EventLogStore, validate_event

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _event(owner=1, scope=1, question=1, actor="user", body="answer", minute=0, **kw):
    return ConversationEvent(
        owner_id=owner,
        scope_id=scope,
        question_id=question,
        actor=actor,
        body=body,
        is_followup=kw.pop("is_followup", False),
        event_metadata=kw.pop("meta", {}),
        created_at=T0 + timedelta(minutes=minute),
        **kw,
    )


def _count() -> int:
    return db.session.execute(db.select(db.func.count(ConversationEvent.id))).scalar()


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


class TestValidateEvent:

    def test_owner_and_scope_required(self):
        with pytest.raises(ValidationError) as exc:
            validate_event(_event(owner=None, scope=None))
        assert set(exc.value.details) == {"owner_id", "scope_id"}

    def test_user_event_requires_question(self):
        with pytest.raises(ValidationError):
            validate_event(_event(question=None))

    def test_followup_requires_question(self):
        with pytest.raises(ValidationError):
            validate_event(_event(question=None, actor="bot", is_followup=True))

    def test_free_standing_bot_message_is_allowed(self):
        validate_event(_event(question=None, actor="bot", body="Welcome"))

    def test_unknown_actor_rejected(self):
        with pytest.raises(ValidationError, match="Invalid actor"):
            validate_event(_event(actor="robot"))


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════


class TestAppend:

    def test_append_returns_id_and_persists(self):
        store = EventLogStore()

        event_id = store.append(_event(body="hello"))

        assert event_id is not None
        assert db.session.get(ConversationEvent, event_id).body == "hello"

    def test_invalid_event_is_not_written(self):
        with pytest.raises(ValidationError):
            EventLogStore().append(_event(question=None))
        assert _count() == 0

    def test_append_many_is_all_or_nothing(self):
        batch = [_event(question=1), _event(question=None), _event(question=2)]

        with pytest.raises(ValidationError) as exc:
            EventLogStore().append_many(batch)

        assert exc.value.details["index"] == 1
        assert exc.value.code == ValidationError.REQUIRED
        assert "Event #1" in str(exc.value)
        assert _count() == 0

    def test_append_many_returns_ids_in_order(self):
        ids = EventLogStore().append_many([_event(question=1), _event(question=2)])

        assert len(ids) == 2
        assert ids[0] < ids[1]

    def test_database_failure_surfaces_as_store_error(self, monkeypatch):
        store = EventLogStore()

        def _boom():
            from sqlalchemy.exc import OperationalError
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store.session, "flush", _boom)

        with pytest.raises(StoreError) as exc:
            store.append(_event())
        assert exc.value.operation == "append"
        assert exc.value.retryable is True


class TestDeleteAndPurge:

    def test_delete_where_requires_full_key(self):
        with pytest.raises(ValidationError):
            EventLogStore().delete_where(owner_id=1, scope_id=1, question_id=None)

    def test_delete_where_only_touches_one_question(self):
        store = EventLogStore()
        store.append_many([
            _event(question=1), _event(question=1, actor="bot", body="Q?"),
            _event(question=2), _event(scope=2, question=1),
        ])

        removed = store.delete_where(owner_id=1, scope_id=1, question_id=1)

        assert removed == 2
        assert _count() == 2

    def test_purge_scope_keeps_other_workspaces(self):
        store = EventLogStore()
        store.append_many([_event(question=1), _event(question=2), _event(scope=2), _event(owner=2)])

        removed = store.purge_scope(owner_id=1, scope_id=1)

        assert removed == 2
        assert _count() == 2


class TestQuestionLock:

    def test_lock_row_is_created_once(self):
        store = EventLogStore()

        first = store.lock_question(owner_id=1, scope_id=1, question_id=1)
        db.session.commit()
        second = store.lock_question(owner_id=1, scope_id=1, question_id=1)
        db.session.commit()

        assert first.id == second.id
        assert db.session.execute(db.select(db.func.count(QuestionWriteLock.id))).scalar() == 1

    def test_rollback_keeps_lock_row_but_drops_writes(self):
        store = EventLogStore()

        store.lock_question(owner_id=1, scope_id=1, question_id=1)
        store.append(_event(), commit=False)
        db.session.rollback()

        assert _count() == 0
        assert db.session.execute(db.select(QuestionWriteLock)).scalar_one().question_id == 1

    def test_requires_full_key(self):
        with pytest.raises(ValidationError):
            EventLogStore().lock_question(owner_id=1, scope_id=1, question_id=None)


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


class TestFindWhere:

    def test_ordered_by_created_at_then_id(self):
        store = EventLogStore()
        store.append_many([
            _event(body="third", minute=5),
            _event(body="first", minute=0),
            _event(body="second-a", minute=2),
            _event(body="second-b", minute=2),
        ])

        bodies = [e.body for e in store.find_where(owner_id=1, scope_id=1)]

        assert bodies == ["first", "second-a", "second-b", "third"]

    def test_filters(self):
        store = EventLogStore()
        store.append_many([
            _event(question=1, actor="bot", body="Q?"),
            _event(question=1, body="A"),
            _event(question=2, body="B"),
            _event(scope=9, question=1, body="other workspace"),
        ])

        assert [e.body for e in store.find_where(owner_id=1, scope_id=1, question_id=1)] == ["Q?", "A"]
        assert [e.body for e in store.find_where(owner_id=1, scope_id=1, actor="user")] == ["A", "B"]

    def test_scope_is_mandatory(self):
        with pytest.raises(ValidationError):
            EventLogStore().find_where(owner_id=1, scope_id=None)
