from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .errors import StageNotFound


@dataclass(frozen=True)
class StageRef:
    stage_id: str
    route_id: str
    sacco_id: str
    stage_name: str


class StageOwnership:
    """
    Read-only lookups answering "which SACCO owns this stage" and "is this
    route running".

    Queries are explicit single-row selects; nothing here walks ORM
    relationships between stages, routes and SACCOs.
    """

    def lookup(self, db: Session, stage_id: str) -> Optional[StageRef]:
        row = (
            db.query(
                models.Stage.id,
                models.Stage.route_id,
                models.Route.sacco_id,
                models.Stage.name,
            )
            .join(models.Route, models.Route.id == models.Stage.route_id)
            .filter(models.Stage.id == stage_id)
            .first()
        )
        if row is None:
            return None
        return StageRef(
            stage_id=row[0],
            route_id=row[1],
            sacco_id=row[2],
            stage_name=row[3],
        )

    def require(self, db: Session, stage_id: str) -> StageRef:
        ref = self.lookup(db, stage_id)
        if ref is None:
            raise StageNotFound(f"Stage {stage_id} not found", detail={"stage_id": stage_id})
        return ref

    def tenant_of(self, db: Session, stage_id: str) -> Optional[str]:
        ref = self.lookup(db, stage_id)
        return ref.sacco_id if ref else None

    def is_route_active(self, db: Session, route_id: str) -> bool:
        value = (
            db.query(models.Route.is_active)
            .filter(models.Route.id == route_id)
            .scalar()
        )
        return bool(value)
