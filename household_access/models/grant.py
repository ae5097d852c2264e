from __future__ import annotations

"""
Role grant model (`user_roles`).

A grant confers a role's permissions on a user, optionally until
`expires_at`.  Rows are append-only: revocation flips `is_active` to
False and keeps the row for the audit trail.  Every query filters on
`is_active` / `expires_at`; row absence is never meaningful.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from household_access.models.base import Base, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from household_access.models.role import Role


class GrantStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class UserRole(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "user_roles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    role_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # ── Relationships ────────────────────────────────────────────────
    role: Mapped["Role"] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_user_roles_user_active", "user_id", "is_active"),
    )

    def status_at(self, now: datetime) -> GrantStatus:
        if not self.is_active:
            return GrantStatus.REVOKED
        if self.expires_at is not None and _aware(self.expires_at) <= now:
            return GrantStatus.EXPIRED
        return GrantStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<UserRole user={self.user_id} role={self.role_id} active={self.is_active}>"
