"""Error taxonomy for the fasting tracker core."""


class FastingTrackerError(Exception):
    """Base class for all fasting tracker errors."""


class StoreConnectionError(FastingTrackerError, ConnectionError):
    """The embedded database could not be opened."""


class ConnectionExhaustedError(StoreConnectionError):
    """Every retry attempt for a connection failed."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Database connection failed after {attempts} attempts")
        self.attempts = attempts


class ValidationError(FastingTrackerError, ValueError):
    """A caller-supplied value is outside its domain."""


class StorageError(FastingTrackerError):
    """A statement failed on a validated connection."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class SessionAlreadyActiveError(FastingTrackerError):
    """A fasting session is already open."""


class DataIntegrityWarning(UserWarning):
    """Stored data violates an invariant but the app can keep running."""
