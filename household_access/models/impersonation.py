"""
Impersonation session model.

One row per impersonation.  A session is ACTIVE while `is_active` is
True and ENDED (terminal) once `ended_at` is stamped.  The partial
unique index on `admin_id WHERE is_active` is what makes "at most one
active session per administrator" hold under concurrent writers.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from household_access.models.base import Base, UUIDPrimaryKeyMixin, utcnow


class ImpersonationState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class ImpersonationSession(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "impersonation_sessions"

    admin_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        CheckConstraint("admin_id <> target_user_id", name="ck_impersonation_not_self"),
        Index(
            "uq_impersonation_sessions_admin_active",
            "admin_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    @property
    def state(self) -> ImpersonationState:
        return ImpersonationState.ACTIVE if self.is_active else ImpersonationState.ENDED

    def __repr__(self) -> str:
        return (
            f"<ImpersonationSession admin={self.admin_id} "
            f"target={self.target_user_id} active={self.is_active}>"
        )
