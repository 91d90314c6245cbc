# backend/saccodb/apps/stages/router.py

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from ...database import get_db, get_read_db
from ...security import get_current_active_user, get_request_context
from ..accounts.scope import RequestContext
from . import schemas
from .admission import AdmissionOutcome
from .errors import StageOpsError
from .models import StageEventType
from .services import StageOperations, StageStatus, get_stage_operations

router = APIRouter(
    prefix="/stages",
    tags=["stages"],
    dependencies=[Depends(get_current_active_user)],
)


def _to_http(exc: StageOpsError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail=exc.to_dict(),
        headers=exc.headers,
    )


def _status_read(stage_status: StageStatus) -> schemas.StageStatusRead:
    return schemas.StageStatusRead.model_validate(stage_status)


# ---------------------------------------------------------------------------
# ARRIVALS / DEPARTURES
# ---------------------------------------------------------------------------


@router.post(
    "/{stage_id}/arrivals",
    response_model=schemas.ArrivalResult,
    status_code=status.HTTP_201_CREATED,
)
def record_arrival(
    stage_id: str,
    payload: schemas.StageEventCreate,
    response: Response,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        decision, stage_status = ops.record_arrival(
            db,
            ctx,
            stage_id,
            vehicle_id=payload.vehicle_id,
            actor_id=payload.actor_id,
            timestamp=payload.timestamp,
            sacco_id=sacco_id,
        )
    except StageOpsError as exc:
        raise _to_http(exc)

    if decision.outcome is AdmissionOutcome.REDIRECT:
        # Redirect is an instruction to the caller, not a failure.
        response.status_code = status.HTTP_200_OK

    return schemas.ArrivalResult(
        admitted=decision.accepted,
        outcome=decision.outcome.value,
        event_id=decision.event_id,
        queue_position=decision.queue_position,
        stage_status=_status_read(stage_status),
    )


@router.post(
    "/{stage_id}/departures",
    response_model=schemas.DepartureResult,
    status_code=status.HTTP_201_CREATED,
)
def record_departure(
    stage_id: str,
    payload: schemas.StageEventCreate,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        decision, stage_status = ops.record_departure(
            db,
            ctx,
            stage_id,
            vehicle_id=payload.vehicle_id,
            actor_id=payload.actor_id,
            timestamp=payload.timestamp,
            sacco_id=sacco_id,
        )
    except StageOpsError as exc:
        raise _to_http(exc)

    return schemas.DepartureResult(
        event_id=decision.event_id,
        stage_status=_status_read(stage_status),
    )


# ---------------------------------------------------------------------------
# STATUS / QUEUE / LOGS
# ---------------------------------------------------------------------------


@router.get("/{stage_id}/status", response_model=schemas.StageStatusRead)
def get_stage_status(
    stage_id: str,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return _status_read(ops.stage_status(db, ctx, stage_id, sacco_id=sacco_id))
    except StageOpsError as exc:
        raise _to_http(exc)


@router.get("/{stage_id}/capacity", response_model=schemas.StageCapacityRead)
def get_stage_capacity(
    stage_id: str,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        stage_status, rule = ops.stage_capacity(db, ctx, stage_id, sacco_id=sacco_id)
    except StageOpsError as exc:
        raise _to_http(exc)

    return schemas.StageCapacityRead(
        stage_id=stage_id,
        unlimited=rule is None,
        rule=schemas.CapacityRuleRead.model_validate(rule) if rule is not None else None,
        current_count=stage_status.current_count,
        available_slots=stage_status.available_slots,
        is_at_capacity=stage_status.is_at_capacity,
        can_arrive=not stage_status.is_at_capacity,
    )


@router.get("/{stage_id}/vehicles", response_model=List[schemas.PresenceRecordRead])
def list_stage_vehicles(
    stage_id: str,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.present_vehicles(db, ctx, stage_id, sacco_id=sacco_id)
    except StageOpsError as exc:
        raise _to_http(exc)


@router.get("/{stage_id}/logs", response_model=schemas.StageEventPage)
def list_stage_logs(
    stage_id: str,
    sacco_id: Optional[str] = None,
    vehicle_id: Optional[str] = None,
    event_type: Optional[StageEventType] = None,
    actor_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        items, total = ops.stage_logs(
            db,
            ctx,
            stage_id,
            sacco_id=sacco_id,
            vehicle_id=vehicle_id,
            event_type=event_type,
            actor_id=actor_id,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
    except StageOpsError as exc:
        raise _to_http(exc)

    return schemas.StageEventPage(
        items=[schemas.StageEventRead.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/vehicles/{vehicle_id}/history", response_model=List[schemas.StageEventRead])
def get_vehicle_history(
    vehicle_id: str,
    sacco_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.vehicle_history(
            db, ctx, vehicle_id, sacco_id=sacco_id, limit=limit, offset=offset
        )
    except StageOpsError as exc:
        raise _to_http(exc)


# ---------------------------------------------------------------------------
# CAPACITY RULES
# ---------------------------------------------------------------------------


@router.post(
    "/{stage_id}/capacity-rules",
    response_model=schemas.CapacityRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_capacity_rule(
    stage_id: str,
    payload: schemas.CapacityRuleCreate,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.create_rule(
            db,
            ctx,
            stage_id,
            max_vehicles=payload.max_vehicles,
            queue_strategy=payload.queue_strategy,
            overflow_action=payload.overflow_action,
            effective_from=payload.effective_from,
            effective_to=payload.effective_to,
            sacco_id=sacco_id,
        )
    except StageOpsError as exc:
        raise _to_http(exc)


@router.get("/{stage_id}/capacity-rules", response_model=List[schemas.CapacityRuleRead])
def list_capacity_rules(
    stage_id: str,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.list_rules(db, ctx, stage_id, sacco_id=sacco_id)
    except StageOpsError as exc:
        raise _to_http(exc)


@router.get("/{stage_id}/capacity-rules/current", response_model=Optional[schemas.CapacityRuleRead])
def get_current_capacity_rule(
    stage_id: str,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.current_rule(db, ctx, stage_id, sacco_id=sacco_id)
    except StageOpsError as exc:
        raise _to_http(exc)


# ---------------------------------------------------------------------------
# MARSHAL ASSIGNMENTS
# ---------------------------------------------------------------------------


@router.post(
    "/{stage_id}/assignments",
    response_model=schemas.AssignmentRead,
    status_code=status.HTTP_201_CREATED,
)
def create_assignment(
    stage_id: str,
    payload: schemas.AssignmentCreate,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.create_assignment(
            db,
            ctx,
            stage_id,
            marshal_id=payload.marshal_id,
            shift_start=payload.shift_start,
            shift_end=payload.shift_end,
            sacco_id=sacco_id,
        )
    except StageOpsError as exc:
        raise _to_http(exc)


@router.get("/{stage_id}/assignments", response_model=List[schemas.AssignmentRead])
def list_assignments(
    stage_id: str,
    active_only: bool = False,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_read_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.list_assignments(db, ctx, stage_id, active_only=active_only, sacco_id=sacco_id)
    except StageOpsError as exc:
        raise _to_http(exc)


@router.get("/{stage_id}/marshals", response_model=List[schemas.AssignmentRead])
def list_active_marshals(
    stage_id: str,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_read_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.active_marshals(db, ctx, stage_id, sacco_id=sacco_id)
    except StageOpsError as exc:
        raise _to_http(exc)


@router.patch("/assignments/{assignment_id}/end", response_model=schemas.AssignmentRead)
def end_assignment(
    assignment_id: str,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.end_assignment(db, ctx, assignment_id, sacco_id=sacco_id)
    except StageOpsError as exc:
        raise _to_http(exc)


@router.get("/marshals/{marshal_id}/assignments", response_model=List[schemas.AssignmentRead])
def list_marshal_assignments(
    marshal_id: str,
    active_only: bool = False,
    sacco_id: Optional[str] = None,
    db: Session = Depends(get_read_db),
    ctx: RequestContext = Depends(get_request_context),
    ops: StageOperations = Depends(get_stage_operations),
):
    try:
        return ops.marshal_assignments(
            db, ctx, marshal_id, active_only=active_only, sacco_id=sacco_id
        )
    except StageOpsError as exc:
        raise _to_http(exc)
