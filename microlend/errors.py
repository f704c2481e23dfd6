"""Exception hierarchy for the lending engine."""

from typing import Optional


class LendingError(Exception):
    """Base exception for all lending engine errors."""

    code = "lending_error"


class ValidationError(LendingError, ValueError):
    """Raised when an input violates a business rule before anything is mutated."""

    code = "validation_error"


class InsufficientFundsError(LendingError):
    """Raised when a wallet cannot cover a debit."""

    code = "insufficient_funds"

    def __init__(self, user_id: str, requested, available):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient funds for {user_id}: requested {requested.to_string()}, "
            f"available {available.to_string()}"
        )


class NotFoundError(LendingError):
    """Raised when a referenced entity does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class AlreadyPaidError(LendingError):
    """Raised when an installment is marked paid a second time."""

    code = "already_paid"


class InvalidStateError(LendingError):
    """Raised when an entity is in an invalid state for the operation."""

    code = "invalid_state"


class AdvisorySideEffectFailure(LendingError):
    """Wraps the failure of an advisory step; logged and never propagated to callers."""

    code = "advisory_failure"

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")


class CompensationError(LendingError):
    """Raised when undoing a partially applied operation fails.

    Carries both the error that triggered compensation and the error raised
    while compensating, so neither is lost.
    """

    code = "compensation_failed"

    def __init__(self, message: str, original: Exception,
                 compensation: Optional[Exception] = None):
        self.original = original
        self.compensation = compensation
        super().__init__(message)
