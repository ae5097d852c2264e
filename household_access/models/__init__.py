"""
Models package: import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for Alembic autogenerate).
"""

from household_access.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from household_access.models.user import AccountType, User, UserStatus
from household_access.models.permission import Permission
from household_access.models.role import Role, RolePermission
from household_access.models.grant import GrantStatus, UserRole
from household_access.models.impersonation import ImpersonationSession, ImpersonationState

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "AccountType",
    "User",
    "UserStatus",
    "Permission",
    "Role",
    "RolePermission",
    "GrantStatus",
    "UserRole",
    "ImpersonationSession",
    "ImpersonationState",
]
