# backend/saccodb/apps/stages/models.py

from __future__ import annotations

import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from ...database import Base
from ...utils import identifiers
from ...utils.timezones import utcnow


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------


class StageEventType(str, enum.Enum):
    ARRIVAL = "ARRIVAL"
    DEPARTURE = "DEPARTURE"


class QueueStrategy(str, enum.Enum):
    FIFO = "FIFO"
    PRIORITY = "PRIORITY"
    TIME_BASED = "TIME_BASED"


class OverflowAction(str, enum.Enum):
    HOLD = "HOLD"
    REDIRECT = "REDIRECT"
    DENY = "DENY"


# ---------------------------------------------------------------------------
# ROUTES + STAGES (owned by the CRUD layer, read here for ownership lookups)
# ---------------------------------------------------------------------------


class Route(Base):
    __tablename__ = "routes"
    __table_args__ = (
        UniqueConstraint("sacco_id", "route_code", name="uq_routes_sacco_code"),
        Index("idx_routes_sacco_active", "sacco_id", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=identifiers.route_id)
    sacco_id = Column(String(36), ForeignKey("saccos.id", ondelete="CASCADE"), nullable=False, index=True)
    route_code = Column(String(32), nullable=False)
    origin = Column(String(150), nullable=False)
    destination = Column(String(150), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Route {self.route_code} {self.origin}-{self.destination}>"


class Stage(Base):
    """
    Physical vehicle-queueing point along a route.

    Tenant ownership is derived through the route; see
    `apps.stages.ownership.StageOwnership`.
    """

    __tablename__ = "stages"
    __table_args__ = (
        Index("idx_stages_route_sequence", "route_id", "sequence_order"),
    )

    id = Column(String(36), primary_key=True, default=identifiers.stage_id)
    route_id = Column(String(36), ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    sequence_order = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Stage {self.id} {self.name}>"


# ---------------------------------------------------------------------------
# STAGE EVENT LOG
# ---------------------------------------------------------------------------


class StageEvent(Base):
    """
    One vehicle ARRIVAL or DEPARTURE at a stage.

    Rows are immutable. Total order within a stage is (timestamp, sequence);
    `sequence` is the database insertion counter and breaks timestamp ties.
    """

    __tablename__ = "stage_events"
    __table_args__ = (
        Index("idx_stage_events_stage_time", "stage_id", "timestamp", "sequence"),
        Index("idx_stage_events_stage_vehicle", "stage_id", "vehicle_id"),
        Index("idx_stage_events_vehicle_time", "vehicle_id", "timestamp"),
    )

    sequence = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    id = Column(String(36), nullable=False, unique=True, default=identifiers.generate_uuid7)
    stage_id = Column(String(36), ForeignKey("stages.id", ondelete="RESTRICT"), nullable=False, index=True)
    vehicle_id = Column(String(64), nullable=False, index=True)
    event_type = Column(
        Enum(StageEventType, name="stage_event_type_enum", native_enum=False),
        nullable=False,
    )
    actor_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<StageEvent #{self.sequence} {self.event_type} "
            f"stage={self.stage_id} vehicle={self.vehicle_id}>"
        )


# ---------------------------------------------------------------------------
# CAPACITY RULES
# ---------------------------------------------------------------------------


class CapacityRule(Base):
    """
    Time-windowed capacity limit for a stage.

    Window is half-open [effective_from, effective_to); a NULL effective_to
    means open-ended. Windows of one stage never overlap. Rules are
    superseded by closing effective_to, never deleted.
    """

    __tablename__ = "stage_capacity_rules"
    __table_args__ = (
        CheckConstraint("max_vehicles > 0", name="ck_stage_capacity_rules_max_positive"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to > effective_from",
            name="ck_stage_capacity_rules_window",
        ),
        Index("idx_stage_capacity_rules_stage_window", "stage_id", "effective_from", "effective_to"),
    )

    id = Column(String(36), primary_key=True, default=identifiers.generate_uuid7)
    stage_id = Column(String(36), ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    max_vehicles = Column(Integer, nullable=False)
    queue_strategy = Column(
        Enum(QueueStrategy, name="queue_strategy_enum", native_enum=False),
        nullable=False,
        default=QueueStrategy.FIFO,
    )
    overflow_action = Column(
        Enum(OverflowAction, name="overflow_action_enum", native_enum=False),
        nullable=False,
        default=OverflowAction.HOLD,
    )
    effective_from = Column(DateTime(timezone=True), nullable=False)
    effective_to = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<CapacityRule {self.id} stage={self.stage_id} max={self.max_vehicles}>"


# ---------------------------------------------------------------------------
# MARSHAL SHIFT ASSIGNMENTS
# ---------------------------------------------------------------------------


class ShiftAssignment(Base):
    __tablename__ = "stage_assignments"
    __table_args__ = (
        Index("idx_stage_assignments_stage_marshal", "stage_id", "marshal_id", "active"),
        Index("idx_stage_assignments_marshal_active", "marshal_id", "active"),
    )

    id = Column(String(36), primary_key=True, default=identifiers.generate_uuid7)
    stage_id = Column(String(36), ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    marshal_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_start = Column(DateTime(timezone=True), nullable=False)
    shift_end = Column(DateTime(timezone=True), nullable=True)
    active = Column(Boolean, nullable=False, default=True, index=True)

    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    ended_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ShiftAssignment {self.id} stage={self.stage_id} marshal={self.marshal_id}>"
