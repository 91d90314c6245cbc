from __future__ import annotations

from datetime import timedelta

import pytest

from saccodb.apps.accounts import models as account_models
from saccodb.apps.audit import services as audit_services
from saccodb.apps.stages import models
from saccodb.apps.stages.errors import (
    InsufficientPrivilege,
    InvalidAssignment,
    InvalidTransition,
    NotAssigned,
    OverlapError,
    StageNotFound,
)


def test_marshal_without_shift_cannot_log(db_session, world, ops, seconds):
    with pytest.raises(NotAssigned):
        ops.record_arrival(
            db_session,
            world.ctx.marshal_off_shift,
            world.stage.id,
            vehicle_id="KBA 001A",
            timestamp=seconds(world, 1),
        )
    assert ops.store.count(db_session, world.stage.id) == 0


def test_assignment_at_one_stage_does_not_cover_another(db_session, world, ops, seconds):
    with pytest.raises(NotAssigned):
        ops.record_arrival(
            db_session,
            world.ctx.marshal,
            world.stage_two.id,
            vehicle_id="KBA 001A",
            timestamp=seconds(world, 1),
        )


def test_event_outside_shift_window_is_rejected(db_session, world, ops):
    ops.create_assignment(
        db_session,
        world.ctx.admin,
        world.stage_two.id,
        marshal_id=world.marshal_off_shift.id,
        shift_start=world.t0,
        shift_end=world.t0 + timedelta(minutes=30),
    )

    decision, _ = ops.record_arrival(
        db_session,
        world.ctx.marshal_off_shift,
        world.stage_two.id,
        vehicle_id="KBA 001A",
        timestamp=world.t0 + timedelta(minutes=10),
    )
    assert decision.accepted

    # shift_end is exclusive.
    with pytest.raises(NotAssigned):
        ops.record_departure(
            db_session,
            world.ctx.marshal_off_shift,
            world.stage_two.id,
            vehicle_id="KBA 001A",
            timestamp=world.t0 + timedelta(minutes=30),
        )


def test_overlapping_assignment_rejected(db_session, world, ops):
    existing = ops.assignments.active_marshals(db_session, world.stage.id, world.now)
    assert [a.marshal_id for a in existing] == [world.marshal.id]

    with pytest.raises(OverlapError) as excinfo:
        ops.create_assignment(
            db_session,
            world.ctx.admin,
            world.stage.id,
            marshal_id=world.marshal.id,
            shift_start=world.t0,
        )
    assert excinfo.value.conflicting_ids == [existing[0].id]


def test_back_to_back_shifts_are_allowed(db_session, world, ops):
    first = ops.create_assignment(
        db_session,
        world.ctx.admin,
        world.stage_two.id,
        marshal_id=world.marshal_off_shift.id,
        shift_start=world.t0,
        shift_end=world.t0 + timedelta(hours=1),
    )
    second = ops.create_assignment(
        db_session,
        world.ctx.admin,
        world.stage_two.id,
        marshal_id=world.marshal_off_shift.id,
        shift_start=world.t0 + timedelta(hours=1),
    )

    assert first.id != second.id
    assert len(ops.assignments.list_assignments(db_session, world.stage_two.id)) == 2


def test_assignment_requires_active_member_of_stage_sacco(db_session, world, ops):
    with pytest.raises(InvalidAssignment):
        ops.create_assignment(
            db_session,
            world.ctx.admin,
            world.stage.id,
            marshal_id=world.marshal_b.id,
        )

    with pytest.raises(InvalidAssignment):
        ops.create_assignment(
            db_session,
            world.ctx.admin,
            world.stage.id,
            marshal_id="USR-MISSING",
        )


def test_assignment_rejects_inactive_marshal(db_session, world, ops):
    world.marshal_off_shift.is_active = False
    db_session.commit()

    with pytest.raises(InvalidAssignment):
        ops.create_assignment(
            db_session,
            world.ctx.admin,
            world.stage_two.id,
            marshal_id=world.marshal_off_shift.id,
        )


def test_assignment_rejects_suspended_membership(db_session, world, ops):
    membership = (
        db_session.query(account_models.SaccoMembership)
        .filter(account_models.SaccoMembership.user_id == world.marshal_off_shift.id)
        .one()
    )
    membership.status = account_models.MembershipStatus.SUSPENDED
    db_session.commit()

    with pytest.raises(InvalidAssignment):
        ops.create_assignment(
            db_session,
            world.ctx.admin,
            world.stage_two.id,
            marshal_id=world.marshal_off_shift.id,
        )


def test_assignment_rejects_inverted_shift(db_session, world, ops):
    with pytest.raises(InvalidAssignment):
        ops.create_assignment(
            db_session,
            world.ctx.admin,
            world.stage_two.id,
            marshal_id=world.marshal_off_shift.id,
            shift_start=world.t0,
            shift_end=world.t0 - timedelta(minutes=1),
        )


def test_only_admins_manage_assignments(db_session, world, ops):
    with pytest.raises(InsufficientPrivilege):
        ops.create_assignment(
            db_session,
            world.ctx.manager,
            world.stage_two.id,
            marshal_id=world.marshal_off_shift.id,
        )


def test_end_assignment_closes_shift_once(db_session, world, ops, seconds):
    current = ops.assignments.find_active(db_session, world.stage.id, world.marshal.id, world.now)

    ended = ops.end_assignment(db_session, world.ctx.admin, current.id)

    assert ended.active is False
    assert ended.ended_by == world.admin.id
    assert ended.shift_end is not None
    assert ops.active_marshals(db_session, world.ctx.conductor, world.stage.id) == []

    with pytest.raises(InvalidTransition) as excinfo:
        ops.end_assignment(db_session, world.ctx.admin, current.id)
    assert excinfo.value.code == "assignment_ended"

    with pytest.raises(NotAssigned):
        ops.record_arrival(db_session, world.ctx.marshal, world.stage.id, vehicle_id="KBA 001A")

    actions = [
        e.action
        for e in audit_services.list_audit_events(
            db_session, sacco_id=world.sacco_a.id, entity_type="stage_assignment"
        )
    ]
    assert actions == ["end_assignment"]


def test_end_assignment_rechecks_a_stale_copy(file_session_factory, world_builder, ops):
    setup = file_session_factory()
    try:
        world = world_builder(setup)
        assignment_id = ops.assignments.find_active(
            setup, world.stage.id, world.marshal.id, world.now
        ).id
    finally:
        setup.close()

    stale_session = file_session_factory()
    other_session = file_session_factory()
    try:
        stale = stale_session.get(models.ShiftAssignment, assignment_id)
        ops.assignments.end_assignment(
            other_session,
            other_session.get(models.ShiftAssignment, assignment_id),
            ended_by=world.admin.id,
        )

        with pytest.raises(InvalidTransition) as excinfo:
            ops.assignments.end_assignment(stale_session, stale, ended_by=world.manager.id)
        assert excinfo.value.code == "assignment_ended"
    finally:
        stale_session.close()
        other_session.close()

    check = file_session_factory()
    try:
        assert check.get(models.ShiftAssignment, assignment_id).ended_by == world.admin.id
    finally:
        check.close()


def test_end_unknown_assignment_is_not_found(db_session, world, ops):
    with pytest.raises(StageNotFound):
        ops.end_assignment(db_session, world.ctx.admin, "missing")


def test_marshal_assignments_are_tenant_scoped(db_session, world, ops):
    mine = ops.marshal_assignments(db_session, world.ctx.admin, world.marshal.id)
    assert {a.stage_id for a in mine} == {world.stage.id, world.stage_closed.id}

    assert ops.marshal_assignments(db_session, world.ctx.admin_b, world.marshal.id) == []
    root_view = ops.marshal_assignments(db_session, world.ctx.root, world.marshal_b.id)
    assert [a.stage_id for a in root_view] == [world.stage_b.id]


def test_manager_may_log_on_behalf_of_assigned_marshal(db_session, world, ops, seconds):
    decision, _ = ops.record_arrival(
        db_session,
        world.ctx.manager,
        world.stage.id,
        vehicle_id="KBA 001A",
        actor_id=world.marshal.id,
        timestamp=seconds(world, 1),
    )

    assert decision.event.actor_id == world.marshal.id


def test_marshal_may_not_log_on_behalf_of_others(db_session, world, ops, seconds):
    with pytest.raises(InsufficientPrivilege):
        ops.record_arrival(
            db_session,
            world.ctx.marshal,
            world.stage.id,
            vehicle_id="KBA 001A",
            actor_id=world.marshal_off_shift.id,
            timestamp=seconds(world, 1),
        )


def test_on_behalf_logging_still_needs_assigned_actor(db_session, world, ops, seconds):
    for ctx in (world.ctx.manager, world.ctx.root):
        with pytest.raises(NotAssigned):
            ops.record_arrival(
                db_session,
                ctx,
                world.stage.id,
                vehicle_id="KBA 001A",
                actor_id=world.marshal_off_shift.id,
                timestamp=seconds(world, 1),
            )
