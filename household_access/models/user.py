from __future__ import annotations

"""
User model.

The platform's account table, reduced to what the access engine reads.
`account_type` is the coarse account classification (customer, staff,
admin); fine-grained rights come from role grants, never from this
column.  ADMIN / SUPER_ADMIN accounts are treated as elevated targets
for impersonation.
"""

import enum

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from household_access.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class AccountType(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    TECHNICIAN = "TECHNICIAN"
    SALESMAN = "SALESMAN"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ELEVATED_ACCOUNT_TYPES = frozenset({AccountType.ADMIN, AccountType.SUPER_ADMIN})


class UserStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(256), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        Enum(AccountType, name="account_type"),
        default=AccountType.CUSTOMER,
        nullable=False,
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus, name="user_status"),
        default=UserStatus.ACTIVE,
        nullable=False,
    )

    @property
    def is_elevated_account(self) -> bool:
        return self.account_type in ELEVATED_ACCOUNT_TYPES

    def __repr__(self) -> str:
        return f"<User {self.email}>"
