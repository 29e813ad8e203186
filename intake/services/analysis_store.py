"""
Analysis Snapshot Store — last-write-wins phase analysis results.

One live snapshot per (owner, scope, phase, analysis_type):

    upsert()                 → replace the row for the key (or insert), and
                               drop any extra legacy rows for the same key
    list_by_owner_scope()    → every key once, latest generated_at wins
                               (ties → highest id)

The write is applied even when its generated_at is older than the stored
one: the most recent *write* wins, not the most recent timestamp.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from intake.core.exceptions import StoreError, ValidationError
from intake.models import db
from intake.models.conversation import PhaseAnalysisSnapshot

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(ts: datetime | None) -> datetime:
    if ts is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def parse_generated_at(value) -> datetime | None:
    """Accept None, a datetime or an ISO-8601 string ("Z" suffix allowed)."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            pass
    raise ValidationError("generated_at must be an ISO-8601 timestamp", details={"generated_at": value})


def dedupe_latest(rows) -> list[PhaseAnalysisSnapshot]:
    """Keep one row per key: latest generated_at, ties broken by highest id."""
    best: dict[tuple, PhaseAnalysisSnapshot] = {}
    for row in rows:
        current = best.get(row.key)
        if current is None or (_aware(row.generated_at), row.id or 0) > (
            _aware(current.generated_at), current.id or 0
        ):
            best[row.key] = row
    return sorted(best.values(), key=lambda r: (r.phase, r.analysis_type, r.id or 0))


class AnalysisSnapshotStore:

    def __init__(self, session=None):
        self.session = session or db.session

    def _rows_for_key(self, owner_id, scope_id, phase, analysis_type):
        stmt = (
            select(PhaseAnalysisSnapshot)
            .where(
                PhaseAnalysisSnapshot.owner_id == owner_id,
                PhaseAnalysisSnapshot.scope_id == scope_id,
                PhaseAnalysisSnapshot.phase == phase,
                PhaseAnalysisSnapshot.analysis_type == analysis_type,
            )
            .order_by(PhaseAnalysisSnapshot.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def upsert(
        self,
        owner_id: int,
        scope_id: int,
        phase: str,
        analysis_type: str,
        name: str,
        result,
        *,
        generated_at: datetime | None = None,
        metadata: dict | None = None,
    ) -> dict:
        """Insert or replace the snapshot for the key.

        Returns:
            {"snapshot": PhaseAnalysisSnapshot, "upserted": bool, "modified": bool}
        """
        missing = [
            f for f, v in (
                ("owner_id", owner_id), ("scope_id", scope_id), ("phase", phase),
                ("analysis_type", analysis_type), ("analysis_name", name), ("analysis_data", result),
            ) if v is None or v == "" or v == {}
        ]
        if missing:
            raise ValidationError(
                f"{', '.join(missing)} required",
                details={f: "required" for f in missing},
                code=ValidationError.REQUIRED,
            )

        generated_at = generated_at or _utcnow()
        try:
            rows = self._rows_for_key(owner_id, scope_id, phase, analysis_type)
            if rows:
                snapshot = rows[-1]
                extra_ids = [r.id for r in rows[:-1]]
                if extra_ids:
                    self.session.execute(
                        delete(PhaseAnalysisSnapshot).where(PhaseAnalysisSnapshot.id.in_(extra_ids))
                    )
                snapshot.name = name
                snapshot.result = result
                snapshot.extra_metadata = dict(metadata or {})
                snapshot.generated_at = generated_at
                snapshot.updated_at = _utcnow()
                upserted = False
            else:
                snapshot = PhaseAnalysisSnapshot(
                    owner_id=owner_id,
                    scope_id=scope_id,
                    phase=phase,
                    analysis_type=analysis_type,
                    name=name,
                    result=result,
                    extra_metadata=dict(metadata or {}),
                    generated_at=generated_at,
                )
                self.session.add(snapshot)
                upserted = True
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Analysis upsert failed: %s", exc)
            raise StoreError("Analysis snapshot upsert failed", operation="upsert") from exc

        logger.info(
            "Phase analysis %s/%s %s",
            phase, analysis_type, "inserted" if upserted else "replaced",
            extra={"owner_id": owner_id, "scope_id": scope_id, "event_type": "analysis_generated"},
        )
        return {"snapshot": snapshot, "upserted": upserted, "modified": not upserted}

    def list_by_owner_scope(
        self,
        owner_id: int,
        scope_id: int,
        *,
        phase: str | None = None,
        phases: Iterable[str] | None = None,
        analysis_type: str | None = None,
    ) -> list[PhaseAnalysisSnapshot]:
        """Live snapshots of a workspace; ``phase`` matches one phase, ``phases`` any of several."""
        stmt = select(PhaseAnalysisSnapshot).where(
            PhaseAnalysisSnapshot.owner_id == owner_id,
            PhaseAnalysisSnapshot.scope_id == scope_id,
        )
        if phase:
            stmt = stmt.where(PhaseAnalysisSnapshot.phase == phase)
        if phases is not None:
            stmt = stmt.where(PhaseAnalysisSnapshot.phase.in_(list(phases)))
        if analysis_type:
            stmt = stmt.where(PhaseAnalysisSnapshot.analysis_type == analysis_type)
        try:
            rows = list(self.session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError("Analysis snapshot read failed", operation="list") from exc
        return dedupe_latest(rows)

    def grouped_by_phase(self, owner_id: int, scope_id: int, **filters) -> dict[str, list[dict]]:
        grouped: dict[str, list[dict]] = {}
        for snap in self.list_by_owner_scope(owner_id, scope_id, **filters):
            grouped.setdefault(snap.phase or "unknown", []).append(snap.to_dict())
        return grouped

    def purge_scope(self, owner_id: int, scope_id: int, *, commit: bool = True) -> int:
        stmt = delete(PhaseAnalysisSnapshot).where(
            PhaseAnalysisSnapshot.owner_id == owner_id,
            PhaseAnalysisSnapshot.scope_id == scope_id,
        )
        try:
            result = self.session.execute(stmt)
            if commit:
                self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError("Analysis snapshot purge failed", operation="purge_scope") from exc
        return result.rowcount or 0
