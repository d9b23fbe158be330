"""User model - the platform's user profile record.

Owned by the core platform; the lifecycle engine only reads it. Aggregate
fields such as total_earnings and wallet_balance are maintained elsewhere.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Numeric, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from lifecycle.database import Base


class User(Base):
    """User table storing profile and aggregate account facts."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    phone: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )

    email_verified: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    phone_verified: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Position level name (e.g. "Intern", "L1") and its daily task target
    position_level: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )

    tasks_per_day: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    total_earnings: Mapped[float] = mapped_column(
        Numeric(14, 2, asdecimal=False),
        default=0,
        nullable=False,
    )

    wallet_balance: Mapped[float] = mapped_column(
        Numeric(14, 2, asdecimal=False),
        default=0,
        nullable=False,
    )

    referred_by_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.id} name={self.name}>"
