"""Error kinds raised by the circulation engine.

Every error is an expected, recoverable outcome: the API layer maps each
class to an HTTP status and the CLI prints its message.
"""


class CirculationError(Exception):
    """Base class for all circulation errors."""

    code = "circulation_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(CirculationError):
    code = "not_found"
    status_code = 404


class InvalidState(CirculationError):
    code = "invalid_state"
    status_code = 409


class NotAvailable(InvalidState):
    """The copy is not AVAILABLE at the requested library."""
    code = "not_available"


class CopiesAvailable(InvalidState):
    """A reservation was requested while a copy can be borrowed directly."""
    code = "copies_available"


class LimitExceeded(CirculationError):
    code = "limit_exceeded"
    status_code = 409


class ReservedForOther(CirculationError):
    code = "reserved_for_other"
    status_code = 409


class DuplicateLoan(CirculationError):
    code = "duplicate_loan"
    status_code = 409


class DuplicatePending(CirculationError):
    code = "duplicate_pending"
    status_code = 409


class ValidationError(CirculationError):
    code = "validation_error"
    status_code = 400


class Forbidden(CirculationError):
    code = "forbidden"
    status_code = 403
