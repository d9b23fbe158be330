"""
Lifecycle error types.

Write-side tracking never raises these to callers; read-side analytics and
admin overrides do.
"""


class LifecycleError(Exception):
    """Base class for lifecycle errors."""


class UserNotFoundError(LifecycleError):
    """Raised when an operation targets a user that does not exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class InvalidStageError(LifecycleError):
    """Raised when a stage value is not a known lifecycle stage."""

    def __init__(self, stage: object):
        self.stage = stage
        super().__init__(f"Invalid lifecycle stage: {stage!r}")


class StageLockTimeoutError(LifecycleError):
    """Raised when a user's stage lock cannot be acquired in time."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Timed out waiting for the stage lock of user {user_id}")


class AnalyticsQueryError(LifecycleError):
    """Raised when an analytics aggregation cannot be computed."""

    def __init__(self, section: str, cause: BaseException):
        self.section = section
        self.cause = cause
        super().__init__(f"Analytics section '{section}' failed: {cause}")
