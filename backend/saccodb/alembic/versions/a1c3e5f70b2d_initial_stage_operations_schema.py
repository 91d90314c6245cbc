"""
Initial schema: SACCOs, users and memberships, routes and stages, the stage
event log, capacity rules, marshal assignments and the audit trail.

Revision ID: a1c3e5f70b2d
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f70b2d"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ROLE_VALUES = (
    "CONDUCTOR",
    "DRIVER",
    "VEHICLE_OWNER",
    "STAGE_MARSHAL",
    "MANAGER",
    "DIRECTOR",
    "ADMIN",
    "SUPER_ADMIN",
)


def _role_enum() -> sa.Enum:
    return sa.Enum(*ROLE_VALUES, name="sacco_role_enum", native_enum=False)


def upgrade() -> None:
    op.create_table(
        "saccos",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_saccos_code", "saccos", ["code"], unique=True)
    op.create_index("ix_saccos_is_active", "saccos", ["is_active"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_superuser", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_is_active", "users", ["is_active"])
    op.create_index("ix_users_is_superuser", "users", ["is_superuser"])

    op.create_table(
        "sacco_memberships",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sacco_id", sa.String(length=36), sa.ForeignKey("saccos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", _role_enum(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "SUSPENDED", "LEFT", name="membership_status_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "sacco_id", name="uq_sacco_memberships_user_sacco"),
    )
    op.create_index("ix_sacco_memberships_user_id", "sacco_memberships", ["user_id"])
    op.create_index("ix_sacco_memberships_sacco_id", "sacco_memberships", ["sacco_id"])
    op.create_index("ix_sacco_memberships_status", "sacco_memberships", ["status"])
    op.create_index("idx_sacco_memberships_sacco_status", "sacco_memberships", ["sacco_id", "status"])

    op.create_table(
        "user_role_grants",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", _role_enum(), nullable=False),
        sa.Column(
            "granted_by_user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "role", name="uq_user_role_grants_user_role"),
    )
    op.create_index("ix_user_role_grants_user_id", "user_role_grants", ["user_id"])

    op.create_table(
        "routes",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("sacco_id", sa.String(length=36), sa.ForeignKey("saccos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("route_code", sa.String(length=32), nullable=False),
        sa.Column("origin", sa.String(length=150), nullable=False),
        sa.Column("destination", sa.String(length=150), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("sacco_id", "route_code", name="uq_routes_sacco_code"),
    )
    op.create_index("ix_routes_sacco_id", "routes", ["sacco_id"])
    op.create_index("ix_routes_is_active", "routes", ["is_active"])
    op.create_index("idx_routes_sacco_active", "routes", ["sacco_id", "is_active"])

    op.create_table(
        "stages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("route_id", sa.String(length=36), sa.ForeignKey("routes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("sequence_order", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_stages_route_id", "stages", ["route_id"])
    op.create_index("idx_stages_route_sequence", "stages", ["route_id", "sequence_order"])

    op.create_table(
        "stage_events",
        sa.Column("sequence", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("stage_id", sa.String(length=36), sa.ForeignKey("stages.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column(
            "event_type",
            sa.Enum("ARRIVAL", "DEPARTURE", name="stage_event_type_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_stage_events_stage_id", "stage_events", ["stage_id"])
    op.create_index("ix_stage_events_vehicle_id", "stage_events", ["vehicle_id"])
    op.create_index("ix_stage_events_actor_id", "stage_events", ["actor_id"])
    op.create_index("idx_stage_events_stage_time", "stage_events", ["stage_id", "timestamp", "sequence"])
    op.create_index("idx_stage_events_stage_vehicle", "stage_events", ["stage_id", "vehicle_id"])
    op.create_index("idx_stage_events_vehicle_time", "stage_events", ["vehicle_id", "timestamp"])

    op.create_table(
        "stage_capacity_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("stage_id", sa.String(length=36), sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("max_vehicles", sa.Integer(), nullable=False),
        sa.Column(
            "queue_strategy",
            sa.Enum("FIFO", "PRIORITY", "TIME_BASED", name="queue_strategy_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column(
            "overflow_action",
            sa.Enum("HOLD", "REDIRECT", "DENY", name="overflow_action_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("max_vehicles > 0", name="ck_stage_capacity_rules_max_positive"),
        sa.CheckConstraint(
            "effective_to IS NULL OR effective_to > effective_from",
            name="ck_stage_capacity_rules_window",
        ),
    )
    op.create_index("ix_stage_capacity_rules_stage_id", "stage_capacity_rules", ["stage_id"])
    op.create_index(
        "idx_stage_capacity_rules_stage_window",
        "stage_capacity_rules",
        ["stage_id", "effective_from", "effective_to"],
    )

    op.create_table(
        "stage_assignments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("stage_id", sa.String(length=36), sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("marshal_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("shift_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("shift_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(length=36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_by", sa.String(length=36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_stage_assignments_stage_id", "stage_assignments", ["stage_id"])
    op.create_index("ix_stage_assignments_marshal_id", "stage_assignments", ["marshal_id"])
    op.create_index("ix_stage_assignments_active", "stage_assignments", ["active"])
    op.create_index(
        "idx_stage_assignments_stage_marshal",
        "stage_assignments",
        ["stage_id", "marshal_id", "active"],
    )
    op.create_index("idx_stage_assignments_marshal_active", "stage_assignments", ["marshal_id", "active"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("sacco_id", sa.String(length=36), sa.ForeignKey("saccos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column(
            "actor_user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_events_id", "audit_events", ["id"])
    op.create_index("ix_audit_events_sacco_id", "audit_events", ["sacco_id"])
    op.create_index("ix_audit_events_entity_type", "audit_events", ["entity_type"])
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])
    op.create_index("ix_audit_events_action", "audit_events", ["action"])
    op.create_index("ix_audit_events_actor_user_id", "audit_events", ["actor_user_id"])
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_correlation_id", "audit_events", ["correlation_id"])
    op.create_index("ix_audit_events_sacco_entity", "audit_events", ["sacco_id", "entity_type", "entity_id"])
    op.create_index("ix_audit_events_sacco_action", "audit_events", ["sacco_id", "action"])
    op.create_index(
        "ix_audit_events_sacco_time_desc",
        "audit_events",
        ["sacco_id", sa.text("occurred_at DESC")],
    )


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("stage_assignments")
    op.drop_table("stage_capacity_rules")
    op.drop_table("stage_events")
    op.drop_table("stages")
    op.drop_table("routes")
    op.drop_table("user_role_grants")
    op.drop_table("sacco_memberships")
    op.drop_table("users")
    op.drop_table("saccos")
