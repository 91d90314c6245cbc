# backend/saccodb/apps/stages/services.py

"""
Stage operations.

Every public method takes the caller's `RequestContext` and runs the same
sequence: minimum role, tenant/stage scope, then (for event writes) the
acting marshal's shift, then the core component. Audit entries are written
after the primary commit and never fail the operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ...utils.timezones import as_utc, utcnow
from ..accounts.models import SaccoRole
from ..accounts.scope import RequestContext, TenantScopeResolver
from ..audit import services as audit_services
from . import models
from .admission import AdmissionController, AdmissionDecision
from .assignments import AssignmentValidator
from .capacity import CapacityRuleResolver
from .errors import StageNotFound
from .event_store import EventRecord, EventStore
from .locking import StageLockRegistry
from .ownership import StageOwnership
from .presence import PresenceReconstructor, PresenceRecord

READ_ROLE = SaccoRole.CONDUCTOR
LOG_ROLE = SaccoRole.STAGE_MARSHAL
LOG_ON_BEHALF_ROLE = SaccoRole.MANAGER
CONFIG_ROLE = SaccoRole.ADMIN


@dataclass(frozen=True)
class StageStatus:
    stage_id: str
    stage_name: str
    as_of: datetime
    current_count: int
    max_vehicles: Optional[int]
    available_slots: Optional[int]
    is_at_capacity: bool
    queue_strategy: Optional[models.QueueStrategy]
    overflow_action: Optional[models.OverflowAction]
    rule_id: Optional[str]
    active_marshals: List[str] = field(default_factory=list)
    present_vehicles: List[PresenceRecord] = field(default_factory=list)

    @property
    def unlimited(self) -> bool:
        return self.max_vehicles is None


class StageOperations:
    def __init__(
        self,
        *,
        locks: Optional[StageLockRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        presence: Optional[PresenceReconstructor] = None,
    ) -> None:
        self.clock = clock
        self.locks = locks or StageLockRegistry()
        self.store = EventStore()
        self.presence = presence or PresenceReconstructor(self.store, clock=clock)
        self.ownership = StageOwnership()
        self.scope = TenantScopeResolver(self.ownership)
        self.rules = CapacityRuleResolver(self.locks)
        self.assignments = AssignmentValidator(self.locks)
        self.admission = AdmissionController(
            store=self.store,
            presence=self.presence,
            rules=self.rules,
            ownership=self.ownership,
            locks=self.locks,
            clock=clock,
        )

    def _now(self) -> datetime:
        return as_utc(self.clock())

    def _authorize(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        minimum: SaccoRole,
        sacco_id: Optional[str],
    ) -> str:
        self.scope.require_role(ctx, minimum)
        return self.scope.authorize_stage(db, ctx, stage_id, sacco_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def compute_status(
        self,
        db: Session,
        stage_id: str,
        as_of: Optional[datetime] = None,
    ) -> StageStatus:
        """Status without authorization checks; callers have already scoped."""
        as_of = as_utc(as_of) if as_of is not None else self._now()
        stage = self.ownership.require(db, stage_id)
        present = self.presence.present_vehicles(db, stage_id, as_of)
        rule = self.rules.effective_rule(db, stage_id, as_of)
        marshals = self.assignments.active_marshals(db, stage_id, as_of)

        count = len(present)
        if rule is None:
            max_vehicles = None
            available = None
            at_capacity = False
        else:
            max_vehicles = rule.max_vehicles
            available = max(0, rule.max_vehicles - count)
            at_capacity = count >= rule.max_vehicles

        return StageStatus(
            stage_id=stage_id,
            stage_name=stage.stage_name,
            as_of=as_of,
            current_count=count,
            max_vehicles=max_vehicles,
            available_slots=available,
            is_at_capacity=at_capacity,
            queue_strategy=models.QueueStrategy(rule.queue_strategy) if rule is not None else None,
            overflow_action=models.OverflowAction(rule.overflow_action) if rule is not None else None,
            rule_id=rule.id if rule is not None else None,
            active_marshals=[assignment.marshal_id for assignment in marshals],
            present_vehicles=present,
        )

    def stage_status(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        sacco_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> StageStatus:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        return self.compute_status(db, stage_id, as_of)

    def stage_capacity(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        sacco_id: Optional[str] = None,
    ) -> Tuple[StageStatus, Optional[models.CapacityRule]]:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        status = self.compute_status(db, stage_id)
        rule = self.rules.effective_rule(db, stage_id, status.as_of)
        return status, rule

    def present_vehicles(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        sacco_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> List[PresenceRecord]:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        return self.presence.present_vehicles(db, stage_id, as_of)

    # ------------------------------------------------------------------
    # Arrivals / departures
    # ------------------------------------------------------------------

    def _resolve_actor(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        actor_id: Optional[str],
        as_of: datetime,
    ) -> str:
        actor = (actor_id or "").strip() or ctx.principal_id
        if actor != ctx.principal_id:
            self.scope.require_role(ctx, LOG_ON_BEHALF_ROLE)
        self.assignments.assert_active_assignment(db, stage_id, actor, as_of)
        return actor

    def _audit_event(
        self,
        db: Session,
        ctx: RequestContext,
        tenant_id: str,
        event: EventRecord,
    ) -> None:
        audit_services.log_event(
            db,
            sacco_id=tenant_id,
            actor_user_id=ctx.principal_id,
            entity_type="stage_event",
            entity_id=event.id,
            action=event.event_type.value.lower(),
            after={
                "stage_id": event.stage_id,
                "vehicle_id": event.vehicle_id,
                "actor_id": event.actor_id,
                "timestamp": event.timestamp.isoformat(),
            },
            metadata={"stage_id": event.stage_id, "sequence": event.sequence},
            commit=True,
        )

    def record_arrival(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        vehicle_id: str,
        actor_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        sacco_id: Optional[str] = None,
    ) -> Tuple[AdmissionDecision, StageStatus]:
        tenant_id = self._authorize(db, ctx, stage_id, LOG_ROLE, sacco_id)
        as_of = as_utc(timestamp) if timestamp is not None else self._now()
        actor = self._resolve_actor(db, ctx, stage_id, actor_id, as_of)

        decision = self.admission.try_arrive(db, stage_id, vehicle_id, actor, as_of)
        if decision.event is not None:
            self._audit_event(db, ctx, tenant_id, decision.event)
        return decision, self.compute_status(db, stage_id)

    def record_departure(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        vehicle_id: str,
        actor_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        sacco_id: Optional[str] = None,
    ) -> Tuple[AdmissionDecision, StageStatus]:
        tenant_id = self._authorize(db, ctx, stage_id, LOG_ROLE, sacco_id)
        as_of = as_utc(timestamp) if timestamp is not None else self._now()
        actor = self._resolve_actor(db, ctx, stage_id, actor_id, as_of)

        decision = self.admission.try_depart(db, stage_id, vehicle_id, actor, as_of)
        self._audit_event(db, ctx, tenant_id, decision.event)
        return decision, self.compute_status(db, stage_id)

    # ------------------------------------------------------------------
    # Event log queries
    # ------------------------------------------------------------------

    def stage_logs(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        sacco_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        event_type: Optional[models.StageEventType] = None,
        actor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[EventRecord], int]:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        filters = dict(
            vehicle_id=vehicle_id,
            event_type=event_type,
            actor_id=actor_id,
            start=start,
            end=end,
        )
        items = self.store.query(
            db, stage_id, limit=limit, offset=offset, descending=True, **filters
        )
        total = self.store.count(db, stage_id, **filters)
        return items, total

    def vehicle_history(
        self,
        db: Session,
        ctx: RequestContext,
        vehicle_id: str,
        *,
        sacco_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EventRecord]:
        self.scope.require_role(ctx, READ_ROLE)
        tenant_id = self.scope.resolve_tenant(ctx, sacco_id)
        return self.store.vehicle_history(db, vehicle_id, tenant_id=tenant_id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Capacity rules
    # ------------------------------------------------------------------

    def current_rule(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        sacco_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> Optional[models.CapacityRule]:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        return self.rules.effective_rule(db, stage_id, as_utc(as_of) if as_of else self._now())

    def list_rules(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        sacco_id: Optional[str] = None,
    ) -> List[models.CapacityRule]:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        return self.rules.list_rules(db, stage_id)

    def create_rule(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        max_vehicles: int,
        queue_strategy: models.QueueStrategy = models.QueueStrategy.FIFO,
        overflow_action: models.OverflowAction = models.OverflowAction.HOLD,
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
        sacco_id: Optional[str] = None,
    ) -> models.CapacityRule:
        tenant_id = self._authorize(db, ctx, stage_id, CONFIG_ROLE, sacco_id)
        rule, superseded = self.rules.insert_rule(
            db,
            stage_id=stage_id,
            max_vehicles=max_vehicles,
            queue_strategy=queue_strategy,
            overflow_action=overflow_action,
            effective_from=effective_from if effective_from is not None else self._now(),
            effective_to=effective_to,
            created_by=ctx.principal_id,
        )
        audit_services.log_event(
            db,
            sacco_id=tenant_id,
            actor_user_id=ctx.principal_id,
            entity_type="capacity_rule",
            entity_id=rule.id,
            action="create",
            after={
                "stage_id": stage_id,
                "max_vehicles": rule.max_vehicles,
                "queue_strategy": models.QueueStrategy(rule.queue_strategy).value,
                "overflow_action": models.OverflowAction(rule.overflow_action).value,
                "effective_from": as_utc(rule.effective_from).isoformat(),
                "effective_to": as_utc(rule.effective_to).isoformat() if rule.effective_to else None,
            },
            metadata={"superseded": [r.id for r in superseded]},
            commit=True,
        )
        return rule

    # ------------------------------------------------------------------
    # Marshal assignments
    # ------------------------------------------------------------------

    def create_assignment(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        marshal_id: str,
        shift_start: Optional[datetime] = None,
        shift_end: Optional[datetime] = None,
        sacco_id: Optional[str] = None,
    ) -> models.ShiftAssignment:
        tenant_id = self._authorize(db, ctx, stage_id, CONFIG_ROLE, sacco_id)
        assignment = self.assignments.create_assignment(
            db,
            stage_id=stage_id,
            tenant_id=tenant_id,
            marshal_id=marshal_id,
            shift_start=shift_start if shift_start is not None else self._now(),
            shift_end=shift_end,
            created_by=ctx.principal_id,
        )
        audit_services.log_event(
            db,
            sacco_id=tenant_id,
            actor_user_id=ctx.principal_id,
            entity_type="stage_assignment",
            entity_id=assignment.id,
            action="assign_marshal",
            after={
                "stage_id": stage_id,
                "marshal_id": marshal_id,
                "shift_start": as_utc(assignment.shift_start).isoformat(),
                "shift_end": as_utc(assignment.shift_end).isoformat() if assignment.shift_end else None,
            },
            commit=True,
        )
        return assignment

    def end_assignment(
        self,
        db: Session,
        ctx: RequestContext,
        assignment_id: str,
        *,
        sacco_id: Optional[str] = None,
    ) -> models.ShiftAssignment:
        self.scope.require_role(ctx, CONFIG_ROLE)
        assignment = self.assignments.get(db, assignment_id)
        if assignment is None:
            raise StageNotFound(
                f"Assignment {assignment_id} not found",
                code="assignment_not_found",
                detail={"assignment_id": assignment_id},
            )
        tenant_id = self.scope.authorize_stage(db, ctx, assignment.stage_id, sacco_id)
        before = {
            "active": assignment.active,
            "shift_end": as_utc(assignment.shift_end).isoformat() if assignment.shift_end else None,
        }

        assignment = self.assignments.end_assignment(
            db,
            assignment,
            ended_by=ctx.principal_id,
            now=self._now(),
        )
        audit_services.log_event(
            db,
            sacco_id=tenant_id,
            actor_user_id=ctx.principal_id,
            entity_type="stage_assignment",
            entity_id=assignment.id,
            action="end_assignment",
            before=before,
            after={"active": False, "shift_end": as_utc(assignment.shift_end).isoformat()},
            commit=True,
        )
        return assignment

    def list_assignments(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        active_only: bool = False,
        sacco_id: Optional[str] = None,
    ) -> List[models.ShiftAssignment]:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        return self.assignments.list_assignments(db, stage_id, active_only=active_only, as_of=self._now())

    def active_marshals(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        *,
        sacco_id: Optional[str] = None,
    ) -> List[models.ShiftAssignment]:
        self._authorize(db, ctx, stage_id, READ_ROLE, sacco_id)
        return self.assignments.active_marshals(db, stage_id, self._now())

    def marshal_assignments(
        self,
        db: Session,
        ctx: RequestContext,
        marshal_id: str,
        *,
        active_only: bool = False,
        sacco_id: Optional[str] = None,
    ) -> List[models.ShiftAssignment]:
        self.scope.require_role(ctx, READ_ROLE)
        tenant_id = self.scope.resolve_tenant(ctx, sacco_id)
        return self.assignments.marshal_assignments(
            db,
            marshal_id,
            tenant_id=tenant_id,
            active_only=active_only,
            as_of=self._now(),
        )


operations = StageOperations()


def get_stage_operations() -> StageOperations:
    return operations
