"""ActivityLog model - the append-only lifecycle event store."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import BigInteger, Integer, String, Text, DateTime, ForeignKey, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column

from lifecycle.database import Base


class ActivityLog(Base):
    """
    One immutable lifecycle event per row.

    ``activity`` holds the event type, or STAGE_TRANSITION for stage changes.
    Rows are inserted, never updated or deleted. The autoincrement id breaks
    ties between events sharing a timestamp.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        # Latest STAGE_TRANSITION per user, per-type counts and histories
        Index("ix_activity_logs_user_activity_created", "user_id", "activity", "created_at"),
        Index("ix_activity_logs_activity_created", "activity", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    activity: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Column is "metadata"; the attribute name is reserved by declarative models.
    event_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )

    source: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
    )

    session_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    ip_address: Mapped[Optional[str]] = mapped_column(
        String(45),
        nullable=True,
    )

    user_agent: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    device_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    admin_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<ActivityLog {self.activity} user={self.user_id}>"
