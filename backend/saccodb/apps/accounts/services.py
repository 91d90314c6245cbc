# backend/saccodb/apps/accounts/services.py

"""
Read-side lookups over users, memberships and role grants.

User/SACCO CRUD lives outside this service; the stage engine only needs to
answer "who is this principal, which SACCO are they bound to and which
roles do they hold".
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy.orm import Session

from . import models


def get_user(db: Session, user_id: Optional[str]) -> Optional[models.User]:
    if user_id is None:
        return None
    normalised_id = str(user_id).strip()
    if not normalised_id:
        return None
    return db.query(models.User).filter(models.User.id == normalised_id).first()


def get_active_membership(db: Session, user_id: str) -> Optional[models.SaccoMembership]:
    """
    Return the user's ACTIVE membership.

    If data drift left more than one active row, the most recently joined
    SACCO wins so the result is deterministic.
    """
    return (
        db.query(models.SaccoMembership)
        .filter(
            models.SaccoMembership.user_id == user_id,
            models.SaccoMembership.status == models.MembershipStatus.ACTIVE,
        )
        .order_by(models.SaccoMembership.joined_at.desc(), models.SaccoMembership.id.desc())
        .first()
    )


def get_membership_in(
    db: Session,
    *,
    user_id: str,
    sacco_id: str,
    active_only: bool = True,
) -> Optional[models.SaccoMembership]:
    query = db.query(models.SaccoMembership).filter(
        models.SaccoMembership.user_id == user_id,
        models.SaccoMembership.sacco_id == sacco_id,
    )
    if active_only:
        query = query.filter(models.SaccoMembership.status == models.MembershipStatus.ACTIVE)
    return query.first()


def list_role_grants(db: Session, user_id: str) -> List[models.SaccoRole]:
    rows = (
        db.query(models.UserRoleGrant.role)
        .filter(models.UserRoleGrant.user_id == user_id)
        .all()
    )
    return [models.SaccoRole.parse(row[0]) for row in rows]
