"""
Pydantic schemas for the stages app.

Scope:
- Arrival / departure requests and their results.
- Derived stage status and queue.
- Capacity rules and marshal shift assignments.
- Event log pages.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import OverflowAction, QueueStrategy, StageEventType


# ---------------- EVENTS ----------------


class StageEventCreate(BaseModel):
    """
    Body for both arrivals and departures.

    `actor_id` defaults to the caller; naming another marshal requires
    manager or higher. `timestamp` defaults to server time.
    """

    vehicle_id: str = Field(..., min_length=1, max_length=64)
    actor_id: Optional[str] = None
    timestamp: Optional[datetime] = None


class StageEventRead(BaseModel):
    sequence: int
    id: str
    stage_id: str
    vehicle_id: str
    event_type: StageEventType
    actor_id: str
    timestamp: datetime

    class Config:
        from_attributes = True


class StageEventPage(BaseModel):
    items: List[StageEventRead]
    total: int
    limit: int
    offset: int


# ---------------- STATUS ----------------


class PresenceRecordRead(BaseModel):
    vehicle_id: str
    arrived_at: datetime
    queue_position: int
    logged_by: str
    event_id: str

    class Config:
        from_attributes = True


class StageStatusRead(BaseModel):
    stage_id: str
    stage_name: str
    as_of: datetime
    current_count: int
    max_vehicles: Optional[int] = None          # None = unlimited
    available_slots: Optional[int] = None
    is_at_capacity: bool
    queue_strategy: Optional[QueueStrategy] = None
    overflow_action: Optional[OverflowAction] = None
    rule_id: Optional[str] = None
    active_marshals: List[str] = []
    present_vehicles: List[PresenceRecordRead] = []

    class Config:
        from_attributes = True


class ArrivalResult(BaseModel):
    admitted: bool
    outcome: str                                 # ADMITTED | REDIRECT
    event_id: Optional[str] = None
    queue_position: Optional[int] = None
    stage_status: StageStatusRead


class DepartureResult(BaseModel):
    event_id: str
    stage_status: StageStatusRead


# ---------------- CAPACITY RULES ----------------


class CapacityRuleCreate(BaseModel):
    max_vehicles: int = Field(..., ge=1)
    queue_strategy: QueueStrategy = QueueStrategy.FIFO
    overflow_action: OverflowAction = OverflowAction.HOLD
    effective_from: Optional[datetime] = None    # defaults to now
    effective_to: Optional[datetime] = None      # None = open-ended


class CapacityRuleRead(BaseModel):
    id: str
    stage_id: str
    max_vehicles: int
    queue_strategy: QueueStrategy
    overflow_action: OverflowAction
    effective_from: datetime
    effective_to: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StageCapacityRead(BaseModel):
    stage_id: str
    unlimited: bool
    rule: Optional[CapacityRuleRead] = None
    current_count: int
    available_slots: Optional[int] = None
    is_at_capacity: bool
    can_arrive: bool


# ---------------- ASSIGNMENTS ----------------


class AssignmentCreate(BaseModel):
    marshal_id: str = Field(..., min_length=1)
    shift_start: Optional[datetime] = None       # defaults to now
    shift_end: Optional[datetime] = None         # None = open shift


class AssignmentRead(BaseModel):
    id: str
    stage_id: str
    marshal_id: str
    shift_start: datetime
    shift_end: Optional[datetime] = None
    active: bool
    created_by: Optional[str] = None
    created_at: datetime
    ended_by: Optional[str] = None
    ended_at: Optional[datetime] = None

    class Config:
        from_attributes = True
