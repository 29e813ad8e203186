"""
Progress Reconstructor — pure (catalog, events) → ProgressView.

No database access and no side effects: the same inputs always produce the
same view, so it is safe to call from any read path and trivially testable
with transient model instances.

Algorithm:
    1. Group events by question_id.  Groups whose question is not in the
       catalog snapshot become placeholder questions built from the event
       snapshots and flagged ``is_deleted``.
    2. Order each group by (created_at, id).  The main answer is the latest
       real user answer, else the latest skip marker.  State is ``skipped``
       (only skips), ``complete`` (any real answer) or ``incomplete``.
    3. Build the conversation flow: bot prompts and user answers in
       chronological order; the main answer entry carries ``is_latest``.
    4. Aggregate counts over the catalog (placeholders are not counted).
    5. Walk phases in canonical order: a phase is complete when it has
       mandatory questions and all of them hold a main answer; the first
       phase that is not complete is the current phase and the walk stops.
    6. Next question = first catalog question (phase, order, id) without a
       main answer.

Skip markers count as a main answer for phase gating and for the next
question pointer.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Sequence

from intake.models.conversation import SKIP_SENTINEL

REMOVED_QUESTION_TEXT = "(Question removed)"
UNKNOWN_PHASE = "unknown"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _aware(ts: datetime | None) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns
    if ts is None:
        return _EPOCH
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _event_key(event) -> tuple:
    return (_aware(event.created_at), event.id or 0)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts else None


def _is_real_answer(event) -> bool:
    body = (event.body or "").strip()
    return event.actor == "user" and bool(body) and event.body != SKIP_SENTINEL


def _is_skip(event) -> bool:
    return event.actor == "user" and event.body == SKIP_SENTINEL


def _meta(event) -> dict:
    return getattr(event, "event_metadata", None) or {}


# ── View types ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FlowEntry:
    """One bot prompt or user answer in a question's conversation flow."""

    type: str  # "question" | "answer"
    text: str
    timestamp: datetime | None
    is_followup: bool = False
    is_latest: bool = False
    is_edited: bool = False

    def to_dict(self) -> dict:
        d = {
            "type": self.type,
            "text": self.text,
            "timestamp": _iso(self.timestamp),
            "is_followup": self.is_followup,
        }
        if self.type == "answer":
            d["is_latest"] = self.is_latest
            d["is_edited"] = self.is_edited
        return d


@dataclass
class QuestionState:
    question_id: int
    question_text: str
    phase: str
    order: int | None
    severity: str
    is_deleted: bool
    conversation_flow: list[FlowEntry] = field(default_factory=list)
    completion_status: str = "incomplete"  # complete | skipped | incomplete
    latest_answer: str | None = None
    last_updated: datetime | None = None
    is_edited: bool = False

    @property
    def has_main_answer(self) -> bool:
        return self.latest_answer is not None

    @property
    def is_skipped(self) -> bool:
        return self.completion_status == "skipped"

    @property
    def is_mandatory(self) -> bool:
        return self.severity == "mandatory"

    def to_dict(self) -> dict:
        return {
            "question_id": self.question_id,
            "question_text": self.question_text,
            "phase": self.phase,
            "order": self.order,
            "severity": self.severity,
            "is_deleted": self.is_deleted,
            "conversation_flow": [e.to_dict() for e in self.conversation_flow],
            "total_interactions": len(self.conversation_flow),
            "total_answers": sum(1 for e in self.conversation_flow if e.type == "answer"),
            "completion_status": self.completion_status,
            "is_skipped": self.is_skipped,
            "last_updated": _iso(self.last_updated),
            "latest_answer": self.latest_answer,
            "is_edited": self.is_edited,
        }


@dataclass
class ProgressView:
    questions: list[QuestionState]
    phase_order: tuple[str, ...]
    phase_completion: dict[str, bool]
    current_phase: str
    next_question: QuestionState | None
    total: int
    mandatory_total: int
    answered: int
    mandatory_answered: int
    percentage: int
    completed: int
    skipped: int
    deleted: int

    def progress_dict(self) -> dict:
        return {
            "phase_order": list(self.phase_order),
            "phase_completion": dict(self.phase_completion),
            "current_phase": self.current_phase,
            "next_question": (
                {
                    "question_id": self.next_question.question_id,
                    "question_text": self.next_question.question_text,
                    "phase": self.next_question.phase,
                    "order": self.next_question.order,
                    "severity": self.next_question.severity,
                }
                if self.next_question else None
            ),
            "total": self.total,
            "mandatory_total": self.mandatory_total,
            "answered": self.answered,
            "mandatory_answered": self.mandatory_answered,
            "percentage": self.percentage,
        }


# ── Reconstruction ────────────────────────────────────────────────────────────


def _placeholder(question_id: int, group: Sequence) -> QuestionState:
    text = next((e.question_text_snapshot for e in group if e.question_text_snapshot), None)
    phase = next((e.question_phase_snapshot for e in group if e.question_phase_snapshot), None)
    return QuestionState(
        question_id=question_id,
        question_text=text or REMOVED_QUESTION_TEXT,
        phase=phase or UNKNOWN_PHASE,
        order=None,
        severity="optional",
        is_deleted=True,
    )


def _from_catalog(question) -> QuestionState:
    return QuestionState(
        question_id=question.id,
        question_text=question.question_text,
        phase=question.phase,
        order=question.order,
        severity=question.severity,
        is_deleted=False,
    )


def _apply_events(state: QuestionState, group: Sequence) -> None:
    """Fill flow, main answer and status of ``state`` from its ordered events."""
    real = [e for e in group if _is_real_answer(e)]
    skips = [e for e in group if _is_skip(e)]
    main = real[-1] if real else (skips[-1] if skips else None)

    flow = []
    for event in group:
        if event.actor == "bot" and event.body:
            flow.append(FlowEntry(
                type="question",
                text=event.body,
                timestamp=event.created_at,
                is_followup=bool(event.is_followup),
            ))
        elif event.actor == "user" and (event.body or "").strip():
            flow.append(FlowEntry(
                type="answer",
                text=event.body,
                timestamp=event.created_at,
                is_followup=bool(event.is_followup),
                is_latest=event is main,
                is_edited=_meta(event).get("is_edit") is True,
            ))
    state.conversation_flow = flow

    if real:
        state.completion_status = "complete"
    elif skips:
        state.completion_status = "skipped"
    else:
        state.completion_status = "incomplete"

    if main is not None:
        state.latest_answer = main.body
        state.last_updated = main.created_at
        state.is_edited = _meta(main).get("is_edit") is True
    elif group:
        state.last_updated = group[-1].created_at


def _sort_key(phase_index: dict[str, int]):
    fallback = len(phase_index)

    def key(state: QuestionState) -> tuple:
        return (
            phase_index.get(state.phase, fallback),
            state.order is None,
            state.order if state.order is not None else 0,
            state.question_id,
        )

    return key


def _percentage(part: int, whole: int) -> int:
    if whole == 0:
        return 0
    # Half-up, not banker's rounding: 12.5 → 13
    return int(math.floor(100 * part / whole + 0.5))


def reconstruct(
    catalog: Iterable,
    events: Iterable,
    phase_order: Sequence[str],
) -> ProgressView:
    """Build the progress view for one (owner, scope).

    Args:
        catalog: Catalog snapshot (objects with id, question_text, phase,
                 severity, order).  Inactive questions must be left out by
                 the caller so they surface as deleted placeholders.
        events:  Every conversation event of the workspace, any order.
        phase_order: Canonical phase order used for sorting and gating.
    """
    phase_order = tuple(phase_order)
    phase_index = {p: i for i, p in enumerate(phase_order)}

    groups: dict[int, list] = {}
    for event in events:
        if event.question_id is None:
            continue
        groups.setdefault(event.question_id, []).append(event)
    for group in groups.values():
        group.sort(key=_event_key)

    states: dict[int, QuestionState] = {}
    for question in catalog:
        states[question.id] = _from_catalog(question)

    for question_id, group in groups.items():
        if question_id not in states:
            states[question_id] = _placeholder(question_id, group)
        _apply_events(states[question_id], group)

    ordered = sorted(states.values(), key=_sort_key(phase_index))
    in_catalog = [s for s in ordered if not s.is_deleted]

    mandatory = [s for s in in_catalog if s.is_mandatory]
    answered = [s for s in in_catalog if s.has_main_answer]
    mandatory_answered = [s for s in mandatory if s.has_main_answer]

    phase_completion = {p: False for p in phase_order}
    current_phase = None
    for phase in phase_order:
        pm = [s for s in mandatory if s.phase == phase]
        if pm and all(s.has_main_answer for s in pm):
            phase_completion[phase] = True
            continue
        current_phase = phase
        break
    if current_phase is None:
        current_phase = phase_order[-1]

    next_question = next((s for s in in_catalog if not s.has_main_answer), None)

    return ProgressView(
        questions=ordered,
        phase_order=phase_order,
        phase_completion=phase_completion,
        current_phase=current_phase,
        next_question=next_question,
        total=len(in_catalog),
        mandatory_total=len(mandatory),
        answered=len(answered),
        mandatory_answered=len(mandatory_answered),
        percentage=_percentage(len(mandatory_answered), len(mandatory)),
        completed=sum(1 for s in in_catalog if s.completion_status == "complete"),
        skipped=sum(1 for s in in_catalog if s.completion_status == "skipped"),
        deleted=len(ordered) - len(in_catalog),
    )
