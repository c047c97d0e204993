"""Exception hierarchy for the lending engine."""


class LendingError(Exception):
    """Base exception for all lending engine errors."""


class ValidationError(LendingError, ValueError):
    """Raised when input is out of bounds, non-positive or missing."""


class NotFoundError(LendingError, LookupError):
    """Raised when a referenced product, application or loan does not exist."""


class StateConflictError(LendingError):
    """Raised when an operation is attempted from an invalid lifecycle state."""

    def __init__(self, message: str, current_state: str = None):
        super().__init__(message)
        self.current_state = current_state


class DuplicateReferenceError(StateConflictError):
    """Raised when a transaction reference has already been recorded."""

    def __init__(self, reference: str):
        super().__init__(f"Transaction reference {reference} has already been processed")
        self.reference = reference


class ConcurrentModificationError(StateConflictError):
    """Raised when a record changed underneath the caller since it was loaded."""


class ArithmeticInvariantViolation(LendingError):
    """Raised when computed figures fail to reconcile. Always a defect."""
