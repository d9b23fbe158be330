"""Models package for database models."""

from lifecycle.models.user import User
from lifecycle.models.activity_log import ActivityLog

__all__ = [
    "User",
    "ActivityLog",
]
