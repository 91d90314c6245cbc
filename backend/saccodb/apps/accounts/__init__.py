"""
Accounts app

Responsible for:
- SACCO (tenant) definitions
- Users, SACCO memberships and platform role grants
- The closed role hierarchy (conductor .. super_admin)
- Per-request tenant scope resolution (see `scope`)
"""

from . import models, services  # noqa: F401

__all__ = ["models", "services"]
