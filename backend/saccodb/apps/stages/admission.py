"""
Arrival admission and departures.

Everything from reading presence to appending the event happens under the
stage's admission lock, so two arrivals can never both pass the capacity
check on the last free slot. The append is the only write; a request that
fails or is abandoned before it leaves nothing behind.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ...utils.timezones import as_utc, utcnow
from . import models
from .capacity import CapacityRuleResolver
from .errors import CapacityExceeded, InvalidTransition, PersistenceError
from .event_store import EventRecord, EventStore
from .locking import StageLockRegistry
from .ownership import StageOwnership
from .presence import PresenceReconstructor, PresenceRecord

logger = logging.getLogger(__name__)

try:
    STAGE_MAX_CLOCK_SKEW_SECONDS = int(os.getenv("STAGE_MAX_CLOCK_SKEW_SECONDS", "120"))
except ValueError:
    STAGE_MAX_CLOCK_SKEW_SECONDS = 120

try:
    STAGE_HOLD_RETRY_AFTER_SECONDS = int(os.getenv("STAGE_HOLD_RETRY_AFTER_SECONDS", "30"))
except ValueError:
    STAGE_HOLD_RETRY_AFTER_SECONDS = 30


class AdmissionOutcome(str, enum.Enum):
    ADMITTED = "ADMITTED"
    DEPARTED = "DEPARTED"
    REDIRECT = "REDIRECT"


@dataclass(frozen=True)
class AdmissionDecision:
    outcome: AdmissionOutcome
    stage_id: str
    vehicle_id: str
    as_of: datetime
    current_count: int
    event: Optional[EventRecord] = None
    queue_position: Optional[int] = None
    max_vehicles: Optional[int] = None
    overflow_action: Optional[models.OverflowAction] = None
    rule_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.event is not None

    @property
    def event_id(self) -> Optional[str]:
        return self.event.id if self.event else None


class AdmissionController:
    def __init__(
        self,
        *,
        store: EventStore,
        presence: PresenceReconstructor,
        rules: CapacityRuleResolver,
        ownership: StageOwnership,
        locks: StageLockRegistry,
        clock: Callable[[], datetime] = utcnow,
        max_clock_skew: timedelta = timedelta(seconds=STAGE_MAX_CLOCK_SKEW_SECONDS),
        hold_retry_after_seconds: int = STAGE_HOLD_RETRY_AFTER_SECONDS,
    ) -> None:
        self.store = store
        self.presence = presence
        self.rules = rules
        self.ownership = ownership
        self.locks = locks
        self.clock = clock
        self.max_clock_skew = max_clock_skew
        self.hold_retry_after_seconds = hold_retry_after_seconds

    def _check_timestamp(self, db: Session, stage_id: str, as_of: datetime) -> None:
        now = as_utc(self.clock())
        if as_of > now + self.max_clock_skew:
            raise InvalidTransition(
                "Event timestamp is in the future",
                code="future_timestamp",
                detail={"timestamp": as_of.isoformat()},
            )
        latest = self.store.latest_timestamp(db, stage_id)
        if latest is not None and as_of < latest:
            raise InvalidTransition(
                "Event timestamp is older than the stage's last recorded event",
                code="out_of_order",
                detail={"timestamp": as_of.isoformat(), "latest": latest.isoformat()},
            )

    def _append(
        self,
        db: Session,
        *,
        stage_id: str,
        vehicle_id: str,
        actor_id: str,
        event_type: models.StageEventType,
        as_of: datetime,
    ) -> EventRecord:
        try:
            event = self.store.append(
                db,
                stage_id=stage_id,
                vehicle_id=vehicle_id,
                event_type=event_type,
                actor_id=actor_id,
                timestamp=as_of,
            )
        except PersistenceError:
            # The row may have landed; rebuild from storage on next use.
            self.presence.invalidate(stage_id)
            raise
        self.presence.record(event)
        return event

    @staticmethod
    def _find(present: List[PresenceRecord], vehicle_id: str) -> Optional[PresenceRecord]:
        for record in present:
            if record.vehicle_id == vehicle_id:
                return record
        return None

    def try_arrive(
        self,
        db: Session,
        stage_id: str,
        vehicle_id: str,
        actor_id: str,
        as_of: Optional[datetime] = None,
    ) -> AdmissionDecision:
        as_of = as_utc(as_of) if as_of is not None else as_utc(self.clock())

        stage = self.ownership.require(db, stage_id)
        if not self.ownership.is_route_active(db, stage.route_id):
            raise InvalidTransition(
                "Route for this stage is not active",
                code="route_inactive",
                detail={"stage_id": stage_id, "route_id": stage.route_id},
            )

        with self.locks.admission(stage_id):
            self._check_timestamp(db, stage_id, as_of)

            present = self.presence.present_vehicles(db, stage_id, as_of)
            if self._find(present, vehicle_id) is not None:
                raise InvalidTransition(
                    "Vehicle is already at this stage",
                    code="already_present",
                    detail={"vehicle_id": vehicle_id},
                )

            rule = self.rules.effective_rule(db, stage_id, as_of)
            current_count = len(present)
            max_vehicles = rule.max_vehicles if rule is not None else None
            overflow_action = models.OverflowAction(rule.overflow_action) if rule is not None else None

            if rule is not None and current_count >= rule.max_vehicles:
                logger.info(
                    "Stage at capacity",
                    extra={
                        "stage_id": stage_id,
                        "vehicle_id": vehicle_id,
                        "current_count": current_count,
                        "max_vehicles": rule.max_vehicles,
                        "overflow_action": overflow_action.value,
                    },
                )
                if overflow_action is models.OverflowAction.REDIRECT:
                    return AdmissionDecision(
                        outcome=AdmissionOutcome.REDIRECT,
                        stage_id=stage_id,
                        vehicle_id=vehicle_id,
                        as_of=as_of,
                        current_count=current_count,
                        max_vehicles=max_vehicles,
                        overflow_action=overflow_action,
                        rule_id=rule.id,
                    )
                hold = overflow_action is models.OverflowAction.HOLD
                raise CapacityExceeded(
                    f"Stage is at capacity ({current_count}/{rule.max_vehicles})",
                    overflow_action=overflow_action.value,
                    retry_eligible=hold,
                    max_vehicles=rule.max_vehicles,
                    current_count=current_count,
                    retry_after_seconds=self.hold_retry_after_seconds if hold else None,
                )

            event = self._append(
                db,
                stage_id=stage_id,
                vehicle_id=vehicle_id,
                actor_id=actor_id,
                event_type=models.StageEventType.ARRIVAL,
                as_of=as_of,
            )

        logger.info(
            "Vehicle admitted",
            extra={
                "stage_id": stage_id,
                "vehicle_id": vehicle_id,
                "event_id": event.id,
                "queue_position": current_count + 1,
            },
        )
        return AdmissionDecision(
            outcome=AdmissionOutcome.ADMITTED,
            stage_id=stage_id,
            vehicle_id=vehicle_id,
            as_of=as_of,
            current_count=current_count + 1,
            event=event,
            # Timestamps are monotonic per stage, so a new arrival always
            # ranks last.
            queue_position=current_count + 1,
            max_vehicles=max_vehicles,
            overflow_action=overflow_action,
            rule_id=rule.id if rule is not None else None,
        )

    def try_depart(
        self,
        db: Session,
        stage_id: str,
        vehicle_id: str,
        actor_id: str,
        as_of: Optional[datetime] = None,
    ) -> AdmissionDecision:
        as_of = as_utc(as_of) if as_of is not None else as_utc(self.clock())
        self.ownership.require(db, stage_id)

        with self.locks.admission(stage_id):
            self._check_timestamp(db, stage_id, as_of)

            present = self.presence.present_vehicles(db, stage_id, as_of)
            if self._find(present, vehicle_id) is None:
                raise InvalidTransition(
                    "Vehicle has no open arrival at this stage",
                    code="not_present",
                    detail={"vehicle_id": vehicle_id},
                )

            event = self._append(
                db,
                stage_id=stage_id,
                vehicle_id=vehicle_id,
                actor_id=actor_id,
                event_type=models.StageEventType.DEPARTURE,
                as_of=as_of,
            )

        logger.info(
            "Vehicle departed",
            extra={"stage_id": stage_id, "vehicle_id": vehicle_id, "event_id": event.id},
        )
        return AdmissionDecision(
            outcome=AdmissionOutcome.DEPARTED,
            stage_id=stage_id,
            vehicle_id=vehicle_id,
            as_of=as_of,
            current_count=len(present) - 1,
            event=event,
        )
