"""
Capacity rule resolution and insertion.

Each stage has a set of time-windowed rules whose half-open windows
[effective_from, effective_to) never overlap; NULL effective_to is
open-ended. At most one rule is therefore effective at any instant, and an
instant with no rule means unlimited capacity.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...utils.timezones import as_utc
from . import models
from .errors import InvalidRule, OverlapError, PersistenceError, StageOpsError
from .locking import StageLockRegistry

logger = logging.getLogger(__name__)


def windows_overlap(
    a_from: datetime,
    a_to: Optional[datetime],
    b_from: datetime,
    b_to: Optional[datetime],
) -> bool:
    """Half-open interval intersection; None as an end means +infinity."""
    a_from, a_to, b_from, b_to = as_utc(a_from), as_utc(a_to), as_utc(b_from), as_utc(b_to)
    a_starts_before_b_ends = b_to is None or a_from < b_to
    b_starts_before_a_ends = a_to is None or b_from < a_to
    return a_starts_before_b_ends and b_starts_before_a_ends


def rule_window(rule: models.CapacityRule) -> Tuple[datetime, Optional[datetime]]:
    return as_utc(rule.effective_from), as_utc(rule.effective_to)


class CapacityRuleResolver:
    def __init__(self, locks: Optional[StageLockRegistry] = None) -> None:
        self.locks = locks or StageLockRegistry()

    def effective_rule(
        self,
        db: Session,
        stage_id: str,
        as_of: datetime,
    ) -> Optional[models.CapacityRule]:
        as_of = as_utc(as_of)
        try:
            return (
                db.query(models.CapacityRule)
                .filter(
                    models.CapacityRule.stage_id == stage_id,
                    models.CapacityRule.effective_from <= as_of,
                    or_(
                        models.CapacityRule.effective_to.is_(None),
                        models.CapacityRule.effective_to > as_of,
                    ),
                )
                .order_by(models.CapacityRule.effective_from.desc())
                .first()
            )
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to resolve capacity rule") from exc

    def list_rules(self, db: Session, stage_id: str) -> List[models.CapacityRule]:
        return (
            db.query(models.CapacityRule)
            .filter(models.CapacityRule.stage_id == stage_id)
            .order_by(models.CapacityRule.effective_from.desc(), models.CapacityRule.created_at.desc())
            .all()
        )

    def check_shape(
        self,
        *,
        max_vehicles: int,
        effective_from: datetime,
        effective_to: Optional[datetime],
    ) -> None:
        if max_vehicles is None or int(max_vehicles) < 1:
            raise InvalidRule(
                "max_vehicles must be at least 1",
                detail={"field": "max_vehicles"},
            )
        if effective_from is None:
            raise InvalidRule("effective_from is required", detail={"field": "effective_from"})
        if effective_to is not None and as_utc(effective_to) <= as_utc(effective_from):
            raise InvalidRule(
                "effective_to must be after effective_from",
                detail={"field": "effective_to"},
            )

    def conflicts(
        self,
        rules: Iterable[models.CapacityRule],
        effective_from: datetime,
        effective_to: Optional[datetime],
    ) -> List[str]:
        return [
            rule.id
            for rule in rules
            if windows_overlap(*rule_window(rule), effective_from, effective_to)
        ]

    def validate_insert(
        self,
        db: Session,
        *,
        stage_id: str,
        max_vehicles: int,
        effective_from: datetime,
        effective_to: Optional[datetime] = None,
    ) -> None:
        """Raise InvalidRule or OverlapError if the window cannot be stored."""
        self.check_shape(
            max_vehicles=max_vehicles,
            effective_from=effective_from,
            effective_to=effective_to,
        )
        conflicting = self.conflicts(self.list_rules(db, stage_id), effective_from, effective_to)
        if conflicting:
            raise OverlapError(
                "Capacity rule window overlaps existing rules",
                conflicting_ids=conflicting,
            )

    def insert_rule(
        self,
        db: Session,
        *,
        stage_id: str,
        max_vehicles: int,
        queue_strategy: models.QueueStrategy = models.QueueStrategy.FIFO,
        overflow_action: models.OverflowAction = models.OverflowAction.HOLD,
        effective_from: datetime,
        effective_to: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Tuple[models.CapacityRule, List[models.CapacityRule]]:
        """
        Store a new rule, returning it with any rules it superseded.

        An open-ended rule closes every open rule that started before it at
        its own effective_from. Closing and inserting commit together or not
        at all.
        """
        self.check_shape(
            max_vehicles=max_vehicles,
            effective_from=effective_from,
            effective_to=effective_to,
        )
        effective_from = as_utc(effective_from)
        effective_to = as_utc(effective_to)

        with self.locks.rules(stage_id):
            try:
                superseded: List[models.CapacityRule] = []
                if effective_to is None:
                    superseded = (
                        db.query(models.CapacityRule)
                        .filter(
                            models.CapacityRule.stage_id == stage_id,
                            models.CapacityRule.effective_to.is_(None),
                            models.CapacityRule.effective_from < effective_from,
                        )
                        .all()
                    )
                    for rule in superseded:
                        rule.effective_to = effective_from
                    db.flush()

                self.validate_insert(
                    db,
                    stage_id=stage_id,
                    max_vehicles=max_vehicles,
                    effective_from=effective_from,
                    effective_to=effective_to,
                )

                rule = models.CapacityRule(
                    stage_id=stage_id,
                    max_vehicles=int(max_vehicles),
                    queue_strategy=models.QueueStrategy(queue_strategy),
                    overflow_action=models.OverflowAction(overflow_action),
                    effective_from=effective_from,
                    effective_to=effective_to,
                    created_by=created_by,
                )
                db.add(rule)
                db.commit()
            except StageOpsError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error(
                    "Failed to store capacity rule",
                    extra={"stage_id": stage_id},
                    exc_info=True,
                )
                raise PersistenceError("Failed to store capacity rule") from exc

        logger.info(
            "Capacity rule created",
            extra={
                "stage_id": stage_id,
                "rule_id": rule.id,
                "max_vehicles": rule.max_vehicles,
                "superseded": [r.id for r in superseded],
            },
        )
        return rule, superseded
