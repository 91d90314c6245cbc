# backend/saccodb/apps/accounts/scope.py

"""
Per-request tenant scope.

A `RequestContext` is built once from the authenticated principal and
passed explicitly to every stage operation. `TenantScopeResolver` gates
tenant access and minimum roles; the two checks are independent and both
must pass.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..stages.errors import AccessDenied, InsufficientPrivilege, StageNotFound
from ..stages.ownership import StageOwnership
from . import models, services

logger = logging.getLogger(__name__)


class ScopeState(str, enum.Enum):
    UNSCOPED = "unscoped"
    TENANT_BOUND = "tenant_bound"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class RequestContext:
    principal_id: str
    tenant_id: Optional[str] = None
    is_super_admin: bool = False
    membership_role: Optional[models.SaccoRole] = None
    highest_role: Optional[models.SaccoRole] = None

    @property
    def state(self) -> ScopeState:
        if self.is_super_admin:
            return ScopeState.SUPER_ADMIN
        if self.tenant_id:
            return ScopeState.TENANT_BOUND
        return ScopeState.UNSCOPED

    def has_role(self, minimum: models.SaccoRole) -> bool:
        if self.is_super_admin:
            return True
        return self.highest_role is not None and self.highest_role.allows(minimum)


class TenantScopeResolver:
    def __init__(self, ownership: Optional[StageOwnership] = None) -> None:
        self.ownership = ownership or StageOwnership()

    def build_context(self, db: Session, user: models.User) -> RequestContext:
        grants = services.list_role_grants(db, user.id)
        membership = services.get_active_membership(db, user.id)

        membership_role = membership.role if membership is not None else None
        is_super_admin = bool(getattr(user, "is_superuser", False)) or (
            models.SaccoRole.SUPER_ADMIN in grants
        )
        highest = models.highest_role([membership_role, *grants])
        if is_super_admin:
            highest = models.SaccoRole.SUPER_ADMIN

        return RequestContext(
            principal_id=user.id,
            tenant_id=membership.sacco_id if membership is not None else None,
            is_super_admin=is_super_admin,
            membership_role=membership_role,
            highest_role=highest,
        )

    def resolve_tenant(self, ctx: RequestContext, requested: Optional[str] = None) -> Optional[str]:
        """
        Return the tenant a request operates in.

        Super admins get whatever they asked for (None meaning every
        tenant). Tenant-bound callers always get their own tenant and may
        not name another one.
        """
        requested = (requested or "").strip() or None
        state = ctx.state

        if state is ScopeState.SUPER_ADMIN:
            return requested

        if state is ScopeState.UNSCOPED:
            raise AccessDenied(
                "No SACCO membership for this account",
                code="unscoped",
            )

        if requested is not None and requested != ctx.tenant_id:
            logger.warning(
                "Cross-tenant access attempt",
                extra={
                    "principal_id": ctx.principal_id,
                    "tenant_id": ctx.tenant_id,
                    "requested_tenant_id": requested,
                },
            )
            raise AccessDenied("Access to another SACCO is not allowed")
        return ctx.tenant_id

    def authorize_stage(
        self,
        db: Session,
        ctx: RequestContext,
        stage_id: str,
        requested_tenant: Optional[str] = None,
    ) -> str:
        """
        Check `ctx` may touch `stage_id` and return the owning tenant id.

        Unknown stages raise StageNotFound.
        """
        tenant_id = self.resolve_tenant(ctx, requested_tenant)
        owner = self.ownership.tenant_of(db, stage_id)
        if owner is None:
            raise StageNotFound(f"Stage {stage_id} not found", detail={"stage_id": stage_id})

        if tenant_id is not None and owner != tenant_id:
            logger.warning(
                "Stage access outside tenant",
                extra={
                    "principal_id": ctx.principal_id,
                    "stage_id": stage_id,
                    "tenant_id": tenant_id,
                },
            )
            raise AccessDenied("Stage belongs to another SACCO", detail={"stage_id": stage_id})
        return owner

    def require_role(self, ctx: RequestContext, minimum: models.SaccoRole) -> None:
        if ctx.has_role(minimum):
            return
        raise InsufficientPrivilege(
            f"Requires role {minimum.value} or higher",
            detail={
                "required_role": minimum.value,
                "held_role": ctx.highest_role.value if ctx.highest_role else None,
            },
        )
