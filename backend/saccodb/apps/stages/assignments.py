"""
Marshal shift assignments.

A marshal may log events for a stage only while an active assignment's
window [shift_start, shift_end) contains the event time; NULL shift_end is
an ongoing shift. A marshal holds at most one overlapping active
assignment per stage.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ...utils.timezones import as_utc, utcnow
from ..accounts import services as account_services
from . import models
from .capacity import windows_overlap
from .errors import (
    InvalidAssignment,
    InvalidTransition,
    NotAssigned,
    OverlapError,
    PersistenceError,
    StageOpsError,
)
from .locking import StageLockRegistry

logger = logging.getLogger(__name__)


def _active_at(query: Query, as_of: datetime) -> Query:
    return query.filter(
        models.ShiftAssignment.active.is_(True),
        models.ShiftAssignment.shift_start <= as_of,
        or_(
            models.ShiftAssignment.shift_end.is_(None),
            models.ShiftAssignment.shift_end > as_of,
        ),
    )


class AssignmentValidator:
    def __init__(self, locks: Optional[StageLockRegistry] = None) -> None:
        self.locks = locks or StageLockRegistry()

    def get(self, db: Session, assignment_id: str) -> Optional[models.ShiftAssignment]:
        return (
            db.query(models.ShiftAssignment)
            .filter(models.ShiftAssignment.id == assignment_id)
            .first()
        )

    def find_active(
        self,
        db: Session,
        stage_id: str,
        marshal_id: str,
        as_of: datetime,
    ) -> Optional[models.ShiftAssignment]:
        query = db.query(models.ShiftAssignment).filter(
            models.ShiftAssignment.stage_id == stage_id,
            models.ShiftAssignment.marshal_id == marshal_id,
        )
        return _active_at(query, as_utc(as_of)).first()

    def assert_active_assignment(
        self,
        db: Session,
        stage_id: str,
        marshal_id: str,
        as_of: datetime,
    ) -> models.ShiftAssignment:
        assignment = self.find_active(db, stage_id, marshal_id, as_of)
        if assignment is None:
            raise NotAssigned(
                "Marshal has no active shift at this stage",
                detail={"stage_id": stage_id, "marshal_id": marshal_id},
            )
        return assignment

    def create_assignment(
        self,
        db: Session,
        *,
        stage_id: str,
        tenant_id: str,
        marshal_id: str,
        shift_start: Optional[datetime] = None,
        shift_end: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> models.ShiftAssignment:
        shift_start = as_utc(shift_start) if shift_start is not None else utcnow()
        shift_end = as_utc(shift_end)
        if shift_end is not None and shift_end <= shift_start:
            raise InvalidAssignment(
                "shift_end must be after shift_start",
                detail={"field": "shift_end"},
            )

        marshal = account_services.get_user(db, marshal_id)
        if marshal is None or not marshal.is_active:
            raise InvalidAssignment(
                "Marshal not found or inactive",
                detail={"marshal_id": marshal_id},
            )
        if account_services.get_membership_in(db, user_id=marshal.id, sacco_id=tenant_id) is None:
            raise InvalidAssignment(
                "Marshal is not an active member of this SACCO",
                detail={"marshal_id": marshal_id},
            )

        with self.locks.assignments(stage_id):
            try:
                existing = (
                    db.query(models.ShiftAssignment)
                    .filter(
                        models.ShiftAssignment.stage_id == stage_id,
                        models.ShiftAssignment.marshal_id == marshal.id,
                        models.ShiftAssignment.active.is_(True),
                    )
                    .all()
                )
                conflicting = [
                    row.id
                    for row in existing
                    if windows_overlap(row.shift_start, row.shift_end, shift_start, shift_end)
                ]
                if conflicting:
                    raise OverlapError(
                        "Marshal already has an active assignment for this stage during this time",
                        conflicting_ids=conflicting,
                    )

                assignment = models.ShiftAssignment(
                    stage_id=stage_id,
                    marshal_id=marshal.id,
                    shift_start=shift_start,
                    shift_end=shift_end,
                    active=True,
                    created_by=created_by,
                )
                db.add(assignment)
                db.commit()
            except StageOpsError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error(
                    "Failed to store shift assignment",
                    extra={"stage_id": stage_id, "marshal_id": marshal_id},
                    exc_info=True,
                )
                raise PersistenceError("Failed to store shift assignment") from exc

        logger.info(
            "Marshal assigned to stage",
            extra={"stage_id": stage_id, "marshal_id": marshal_id, "assignment_id": assignment.id},
        )
        return assignment

    def end_assignment(
        self,
        db: Session,
        assignment: models.ShiftAssignment,
        *,
        ended_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> models.ShiftAssignment:
        """Close an assignment: active=False, shift_end=now (never before shift_start)."""
        now = as_utc(now) if now is not None else utcnow()

        with self.locks.assignments(assignment.stage_id):
            # The caller's copy may predate a concurrent end.
            db.refresh(assignment)
            if not assignment.active:
                raise InvalidTransition(
                    "Assignment already ended",
                    code="assignment_ended",
                    detail={"assignment_id": assignment.id},
                )

            shift_start = as_utc(assignment.shift_start)
            current_end = as_utc(assignment.shift_end)
            end_at = now if current_end is None else min(now, current_end)
            try:
                assignment.active = False
                assignment.shift_end = max(end_at, shift_start)
                assignment.ended_at = now
                assignment.ended_by = ended_by
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError("Failed to end shift assignment") from exc
        return assignment

    def active_marshals(
        self,
        db: Session,
        stage_id: str,
        as_of: Optional[datetime] = None,
    ) -> List[models.ShiftAssignment]:
        as_of = as_utc(as_of) if as_of is not None else utcnow()
        query = db.query(models.ShiftAssignment).filter(models.ShiftAssignment.stage_id == stage_id)
        return _active_at(query, as_of).order_by(models.ShiftAssignment.shift_start.asc()).all()

    def list_assignments(
        self,
        db: Session,
        stage_id: str,
        *,
        active_only: bool = False,
        as_of: Optional[datetime] = None,
    ) -> List[models.ShiftAssignment]:
        query = db.query(models.ShiftAssignment).filter(models.ShiftAssignment.stage_id == stage_id)
        if active_only:
            query = _active_at(query, as_utc(as_of) if as_of is not None else utcnow())
        return query.order_by(models.ShiftAssignment.shift_start.desc()).all()

    def marshal_assignments(
        self,
        db: Session,
        marshal_id: str,
        *,
        tenant_id: Optional[str] = None,
        active_only: bool = False,
        as_of: Optional[datetime] = None,
    ) -> List[models.ShiftAssignment]:
        query = db.query(models.ShiftAssignment).filter(
            models.ShiftAssignment.marshal_id == marshal_id
        )
        if tenant_id is not None:
            stage_ids = (
                select(models.Stage.id)
                .join(models.Route, models.Route.id == models.Stage.route_id)
                .where(models.Route.sacco_id == tenant_id)
            )
            query = query.filter(models.ShiftAssignment.stage_id.in_(stage_ids))
        if active_only:
            query = _active_at(query, as_utc(as_of) if as_of is not None else utcnow())
        return query.order_by(models.ShiftAssignment.shift_start.desc()).all()
