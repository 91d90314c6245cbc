"""
Append-only stage event log.

`append` is the single commit point of an admission: one row, one commit.
There are no update or delete paths. Storage failures surface as
PersistenceError; an ambiguous failure (e.g. the commit itself raised) may
still have written the row, so retries must go back through admission.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ...utils.timezones import as_utc
from . import models
from .errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventRecord:
    """Detached, immutable snapshot of one stored StageEvent."""

    sequence: int
    id: str
    stage_id: str
    vehicle_id: str
    event_type: models.StageEventType
    actor_id: str
    timestamp: datetime

    @property
    def order_key(self):
        return (self.timestamp, self.sequence)

    @classmethod
    def from_row(cls, row: models.StageEvent) -> "EventRecord":
        return cls(
            sequence=row.sequence,
            id=row.id,
            stage_id=row.stage_id,
            vehicle_id=row.vehicle_id,
            event_type=models.StageEventType(row.event_type),
            actor_id=row.actor_id,
            timestamp=as_utc(row.timestamp),
        )


@contextmanager
def _storage_errors(db: Session, operation: str, **context) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Stage event store failure",
            extra={"operation": operation, **context},
            exc_info=True,
        )
        raise PersistenceError(
            f"Stage event storage failed during {operation}",
            detail={"operation": operation},
        ) from exc


class EventStore:
    def append(
        self,
        db: Session,
        *,
        stage_id: str,
        vehicle_id: str,
        event_type: models.StageEventType,
        actor_id: str,
        timestamp: datetime,
    ) -> EventRecord:
        with _storage_errors(db, "append", stage_id=stage_id, vehicle_id=vehicle_id):
            row = models.StageEvent(
                stage_id=stage_id,
                vehicle_id=vehicle_id,
                event_type=event_type,
                actor_id=actor_id,
                timestamp=as_utc(timestamp),
            )
            db.add(row)
            db.flush()
            record = EventRecord.from_row(row)
            db.commit()
        return record

    def _filtered(
        self,
        db: Session,
        stage_id: Optional[str],
        *,
        vehicle_id: Optional[str] = None,
        event_type: Optional[models.StageEventType] = None,
        actor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Query:
        query = db.query(models.StageEvent)
        if stage_id is not None:
            query = query.filter(models.StageEvent.stage_id == stage_id)
        if vehicle_id:
            query = query.filter(models.StageEvent.vehicle_id == vehicle_id)
        if event_type is not None:
            query = query.filter(models.StageEvent.event_type == models.StageEventType(event_type))
        if actor_id:
            query = query.filter(models.StageEvent.actor_id == actor_id)
        if start is not None:
            query = query.filter(models.StageEvent.timestamp >= as_utc(start))
        if end is not None:
            query = query.filter(models.StageEvent.timestamp <= as_utc(end))
        return query

    def query(
        self,
        db: Session,
        stage_id: str,
        *,
        vehicle_id: Optional[str] = None,
        event_type: Optional[models.StageEventType] = None,
        actor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = False,
    ) -> List[EventRecord]:
        """Events of one stage ordered by (timestamp, sequence); both bounds inclusive."""
        with _storage_errors(db, "query", stage_id=stage_id):
            query = self._filtered(
                db,
                stage_id,
                vehicle_id=vehicle_id,
                event_type=event_type,
                actor_id=actor_id,
                start=start,
                end=end,
            )
            if descending:
                query = query.order_by(
                    models.StageEvent.timestamp.desc(), models.StageEvent.sequence.desc()
                )
            else:
                query = query.order_by(
                    models.StageEvent.timestamp.asc(), models.StageEvent.sequence.asc()
                )
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [EventRecord.from_row(row) for row in query.all()]

    def count(
        self,
        db: Session,
        stage_id: str,
        *,
        vehicle_id: Optional[str] = None,
        event_type: Optional[models.StageEventType] = None,
        actor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        with _storage_errors(db, "count", stage_id=stage_id):
            return self._filtered(
                db,
                stage_id,
                vehicle_id=vehicle_id,
                event_type=event_type,
                actor_id=actor_id,
                start=start,
                end=end,
            ).count()

    def latest(self, db: Session, stage_id: str) -> Optional[EventRecord]:
        with _storage_errors(db, "latest", stage_id=stage_id):
            row = (
                db.query(models.StageEvent)
                .filter(models.StageEvent.stage_id == stage_id)
                .order_by(models.StageEvent.timestamp.desc(), models.StageEvent.sequence.desc())
                .first()
            )
            return EventRecord.from_row(row) if row is not None else None

    def latest_timestamp(self, db: Session, stage_id: str) -> Optional[datetime]:
        record = self.latest(db, stage_id)
        return record.timestamp if record else None

    def vehicle_history(
        self,
        db: Session,
        vehicle_id: str,
        *,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> List[EventRecord]:
        """
        A vehicle's events across stages, newest first.

        With `tenant_id`, only stages on that SACCO's routes are included.
        """
        with _storage_errors(db, "vehicle_history", vehicle_id=vehicle_id):
            query = self._filtered(db, None, vehicle_id=vehicle_id)
            if tenant_id is not None:
                stage_ids = (
                    select(models.Stage.id)
                    .join(models.Route, models.Route.id == models.Stage.route_id)
                    .where(models.Route.sacco_id == tenant_id)
                )
                query = query.filter(models.StageEvent.stage_id.in_(stage_ids))
            query = query.order_by(
                models.StageEvent.timestamp.desc(), models.StageEvent.sequence.desc()
            )
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [EventRecord.from_row(row) for row in query.all()]
