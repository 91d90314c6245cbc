# backend/saccodb/apps/accounts/models.py

from __future__ import annotations

import enum
from typing import Iterable, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from ...database import Base
from ...utils import identifiers
from ...utils.timezones import utcnow


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------


class SaccoRole(str, enum.Enum):
    """Roles held inside a SACCO, lowest privilege first.

    Declaration order IS the privilege order; `ROLE_ORDER` below is derived
    from it and must not be re-sorted.
    """

    CONDUCTOR = "conductor"
    DRIVER = "driver"
    VEHICLE_OWNER = "vehicle_owner"
    STAGE_MARSHAL = "stage_marshal"
    MANAGER = "manager"
    DIRECTOR = "director"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return ROLE_ORDER[self]

    def allows(self, minimum: "SaccoRole") -> bool:
        return self.rank >= minimum.rank

    @classmethod
    def parse(cls, value: "SaccoRole | str") -> "SaccoRole":
        """
        Strict lookup of a canonical role name.

        Raises ValueError for anything that is not exactly one of the
        enumerated values (case and surrounding whitespace are ignored).
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown role {value!r}")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role {value!r}") from None


ROLE_ORDER: dict[SaccoRole, int] = {role: index for index, role in enumerate(SaccoRole)}


def highest_role(roles: Iterable[Optional[SaccoRole]]) -> Optional[SaccoRole]:
    held = [role for role in roles if role is not None]
    if not held:
        return None
    return max(held, key=lambda role: role.rank)


class MembershipStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    LEFT = "left"


# ---------------------------------------------------------------------------
# SACCO (TENANT)
# ---------------------------------------------------------------------------


class Sacco(Base):
    """
    Savings and credit cooperative operating a fleet.

    The unit of multi-tenant isolation: routes, stages, memberships and
    audit rows are always scoped to a SACCO.
    """

    __tablename__ = "saccos"

    id = Column(String(36), primary_key=True, default=identifiers.sacco_id)
    code = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Sacco {self.code} {self.name}>"


# ---------------------------------------------------------------------------
# USERS + ROLES
# ---------------------------------------------------------------------------


class User(Base):
    """
    Platform user (marshal, manager, admin...).

    A user belongs to at most one SACCO at a time through an ACTIVE
    `SaccoMembership`; platform-wide roles such as super_admin are held
    through `UserRoleGrant`.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=identifiers.user_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(64), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_superuser = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class SaccoMembership(Base):
    """One user's role inside one SACCO."""

    __tablename__ = "sacco_memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "sacco_id", name="uq_sacco_memberships_user_sacco"),
        Index("idx_sacco_memberships_sacco_status", "sacco_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=identifiers.generate_uuid7)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    sacco_id = Column(String(36), ForeignKey("saccos.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(SaccoRole, name="sacco_role_enum", native_enum=False), nullable=False)
    status = Column(
        Enum(MembershipStatus, name="membership_status_enum", native_enum=False),
        nullable=False,
        default=MembershipStatus.ACTIVE,
        index=True,
    )
    joined_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SaccoMembership user={self.user_id} sacco={self.sacco_id} role={self.role}>"


class UserRoleGrant(Base):
    """Platform-wide role held independently of any SACCO membership."""

    __tablename__ = "user_role_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_role_grants_user_role"),
    )

    id = Column(String(36), primary_key=True, default=identifiers.generate_uuid7)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(SaccoRole, name="sacco_role_enum", native_enum=False), nullable=False)
    granted_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    granted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
