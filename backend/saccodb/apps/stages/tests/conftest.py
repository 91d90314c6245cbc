from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from saccodb.apps.accounts import models as account_models
from saccodb.apps.accounts.scope import TenantScopeResolver
from saccodb.apps.stages import models
from saccodb.apps.stages.services import StageOperations
from saccodb.utils.timezones import utcnow


def _user(db, email, *, sacco=None, role=None, is_superuser=False):
    user = account_models.User(
        email=email,
        full_name=email.split("@")[0].replace(".", " ").title(),
        is_active=True,
        is_superuser=is_superuser,
    )
    db.add(user)
    db.flush()
    if sacco is not None:
        db.add(
            account_models.SaccoMembership(
                user_id=user.id,
                sacco_id=sacco.id,
                role=role,
                status=account_models.MembershipStatus.ACTIVE,
            )
        )
    return user


def _stage(db, route, name, order=1):
    stage = models.Stage(route_id=route.id, name=name, sequence_order=order)
    db.add(stage)
    return stage


def build_world(db):
    """
    Two SACCOs with routes, stages and staff.

    SACCO A: admin, manager, two marshals (only `marshal` is on shift at
    `stage`), a conductor; an inactive route with its own stage.
    SACCO B: admin and an on-shift marshal at `stage_b`.
    `root` is a platform superuser with no membership.
    """
    now = utcnow()
    t0 = now - timedelta(hours=1)

    sacco_a = account_models.Sacco(code="SAC-A", name="Alpha Travellers")
    sacco_b = account_models.Sacco(code="SAC-B", name="Beta Movers")
    db.add_all([sacco_a, sacco_b])
    db.flush()

    role = account_models.SaccoRole
    admin = _user(db, "admin.alpha@example.com", sacco=sacco_a, role=role.ADMIN)
    manager = _user(db, "manager.alpha@example.com", sacco=sacco_a, role=role.MANAGER)
    marshal = _user(db, "marshal.alpha@example.com", sacco=sacco_a, role=role.STAGE_MARSHAL)
    marshal_off_shift = _user(db, "marshal.two@example.com", sacco=sacco_a, role=role.STAGE_MARSHAL)
    conductor = _user(db, "conductor.alpha@example.com", sacco=sacco_a, role=role.CONDUCTOR)
    admin_b = _user(db, "admin.beta@example.com", sacco=sacco_b, role=role.ADMIN)
    marshal_b = _user(db, "marshal.beta@example.com", sacco=sacco_b, role=role.STAGE_MARSHAL)
    root = _user(db, "root@example.com", is_superuser=True)

    route = models.Route(sacco_id=sacco_a.id, route_code="R-001", origin="Town", destination="Thika")
    route_closed = models.Route(
        sacco_id=sacco_a.id,
        route_code="R-002",
        origin="Town",
        destination="Kitengela",
        is_active=False,
    )
    route_b = models.Route(sacco_id=sacco_b.id, route_code="R-101", origin="Town", destination="Ngong")
    db.add_all([route, route_closed, route_b])
    db.flush()

    stage = _stage(db, route, "Odeon")
    stage_two = _stage(db, route, "Globe", order=2)
    stage_closed = _stage(db, route_closed, "Railways")
    stage_b = _stage(db, route_b, "Kencom")
    db.flush()

    shift_start = t0 - timedelta(hours=1)
    for marshal_user, assigned_stage in (
        (marshal, stage),
        (marshal, stage_closed),
        (marshal_b, stage_b),
    ):
        db.add(
            models.ShiftAssignment(
                stage_id=assigned_stage.id,
                marshal_id=marshal_user.id,
                shift_start=shift_start,
                active=True,
                created_by=admin.id,
            )
        )
    db.commit()

    resolver = TenantScopeResolver()
    ctx = SimpleNamespace(
        admin=resolver.build_context(db, admin),
        manager=resolver.build_context(db, manager),
        marshal=resolver.build_context(db, marshal),
        marshal_off_shift=resolver.build_context(db, marshal_off_shift),
        conductor=resolver.build_context(db, conductor),
        admin_b=resolver.build_context(db, admin_b),
        marshal_b=resolver.build_context(db, marshal_b),
        root=resolver.build_context(db, root),
    )

    return SimpleNamespace(
        now=now,
        t0=t0,
        sacco_a=sacco_a,
        sacco_b=sacco_b,
        admin=admin,
        manager=manager,
        marshal=marshal,
        marshal_off_shift=marshal_off_shift,
        conductor=conductor,
        admin_b=admin_b,
        marshal_b=marshal_b,
        root=root,
        route=route,
        route_closed=route_closed,
        stage=stage,
        stage_two=stage_two,
        stage_closed=stage_closed,
        stage_b=stage_b,
        ctx=ctx,
    )


@pytest.fixture()
def world(db_session):
    return build_world(db_session)


@pytest.fixture()
def world_builder():
    return build_world


@pytest.fixture()
def ops():
    return StageOperations()


@pytest.fixture()
def seconds():
    def _at(world, offset):
        return world.t0 + timedelta(seconds=offset)

    return _at
