from __future__ import annotations

import pytest
from sqlalchemy import inspect

from saccodb.apps.accounts import models as account_models
from saccodb.apps.accounts.models import SaccoRole, highest_role
from saccodb.apps.accounts.scope import RequestContext, ScopeState, TenantScopeResolver
from saccodb.apps.stages.errors import AccessDenied, InsufficientPrivilege


@pytest.fixture()
def sacco(db_session):
    sacco = account_models.Sacco(code="SAC-SCOPE", name="Scope Travellers")
    db_session.add(sacco)
    db_session.commit()
    return sacco


def _user(db, email, **kwargs):
    user = account_models.User(email=email, full_name=email.split("@")[0], **kwargs)
    db.add(user)
    db.flush()
    return user


def test_role_order_is_declaration_order():
    assert SaccoRole.CONDUCTOR.rank < SaccoRole.STAGE_MARSHAL.rank < SaccoRole.MANAGER.rank
    assert SaccoRole.ADMIN.allows(SaccoRole.MANAGER)
    assert not SaccoRole.STAGE_MARSHAL.allows(SaccoRole.MANAGER)
    assert SaccoRole.SUPER_ADMIN.allows(SaccoRole.ADMIN)
    assert highest_role([None, SaccoRole.DRIVER, SaccoRole.DIRECTOR]) is SaccoRole.DIRECTOR
    assert highest_role([None]) is None


@pytest.mark.parametrize("raw", ["manager", " MANAGER ", SaccoRole.MANAGER])
def test_role_parse_accepts_canonical_names(raw):
    assert SaccoRole.parse(raw) is SaccoRole.MANAGER


@pytest.mark.parametrize("raw", ["boss", "", "stage marshal", 3, None])
def test_role_parse_rejects_unknown_values(raw):
    with pytest.raises(ValueError):
        SaccoRole.parse(raw)


def test_context_for_member(db_session, sacco):
    user = _user(db_session, "member@example.com")
    db_session.add(
        account_models.SaccoMembership(user_id=user.id, sacco_id=sacco.id, role=SaccoRole.MANAGER)
    )
    db_session.commit()

    ctx = TenantScopeResolver().build_context(db_session, user)

    assert ctx.state is ScopeState.TENANT_BOUND
    assert ctx.tenant_id == sacco.id
    assert ctx.membership_role is SaccoRole.MANAGER
    assert ctx.highest_role is SaccoRole.MANAGER
    assert ctx.has_role(SaccoRole.STAGE_MARSHAL)
    assert not ctx.has_role(SaccoRole.ADMIN)


def test_suspended_membership_leaves_user_unscoped(db_session, sacco):
    user = _user(db_session, "suspended@example.com")
    db_session.add(
        account_models.SaccoMembership(
            user_id=user.id,
            sacco_id=sacco.id,
            role=SaccoRole.ADMIN,
            status=account_models.MembershipStatus.SUSPENDED,
        )
    )
    db_session.commit()

    ctx = TenantScopeResolver().build_context(db_session, user)

    assert ctx.state is ScopeState.UNSCOPED
    assert ctx.highest_role is None


def test_super_admin_from_role_grant(db_session, sacco):
    user = _user(db_session, "ops@example.com")
    db_session.add(account_models.UserRoleGrant(user_id=user.id, role=SaccoRole.SUPER_ADMIN))
    db_session.commit()

    ctx = TenantScopeResolver().build_context(db_session, user)

    assert ctx.is_super_admin
    assert ctx.state is ScopeState.SUPER_ADMIN
    assert ctx.highest_role is SaccoRole.SUPER_ADMIN


def test_super_admin_from_superuser_flag(db_session):
    user = _user(db_session, "root@example.com", is_superuser=True)
    db_session.commit()

    ctx = TenantScopeResolver().build_context(db_session, user)

    assert ctx.is_super_admin
    assert ctx.tenant_id is None


def test_resolve_tenant():
    resolver = TenantScopeResolver()
    member = RequestContext(principal_id="USR-1", tenant_id="SAC-A", highest_role=SaccoRole.ADMIN)
    root = RequestContext(principal_id="USR-2", is_super_admin=True)
    loner = RequestContext(principal_id="USR-3")

    assert resolver.resolve_tenant(member) == "SAC-A"
    assert resolver.resolve_tenant(member, "SAC-A") == "SAC-A"
    assert resolver.resolve_tenant(member, "  ") == "SAC-A"
    with pytest.raises(AccessDenied):
        resolver.resolve_tenant(member, "SAC-B")

    assert resolver.resolve_tenant(root) is None
    assert resolver.resolve_tenant(root, "SAC-B") == "SAC-B"

    with pytest.raises(AccessDenied) as excinfo:
        resolver.resolve_tenant(loner)
    assert excinfo.value.code == "unscoped"


def test_require_role():
    resolver = TenantScopeResolver()
    marshal = RequestContext(principal_id="USR-1", tenant_id="SAC-A", highest_role=SaccoRole.STAGE_MARSHAL)

    resolver.require_role(marshal, SaccoRole.CONDUCTOR)
    resolver.require_role(marshal, SaccoRole.STAGE_MARSHAL)
    with pytest.raises(InsufficientPrivilege) as excinfo:
        resolver.require_role(marshal, SaccoRole.ADMIN)
    assert excinfo.value.detail == {"required_role": "admin", "held_role": "stage_marshal"}

    resolver.require_role(RequestContext(principal_id="USR-2", is_super_admin=True), SaccoRole.SUPER_ADMIN)


@pytest.mark.parametrize(
    "model",
    [
        account_models.Sacco,
        account_models.User,
        account_models.SaccoMembership,
        account_models.UserRoleGrant,
    ],
)
def test_account_models_are_looked_up_explicitly(model):
    assert list(inspect(model).relationships) == []
