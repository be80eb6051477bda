"""Exceptions raised by the telephone domain services."""


class TelephoneError(Exception):
    """Base class for call and record errors surfaced to HTTP callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TelephoneError):
    """A request is missing a required value."""

    status_code = 400


class CallNotFoundError(TelephoneError):
    """No active call exists for the given call ID."""

    status_code = 404

    def __init__(self, call_id: str):
        super().__init__(f"Call not found: {call_id}")
        self.call_id = call_id


class CallStateError(TelephoneError):
    """The call is not in a state that allows the requested transition."""

    status_code = 400


class PersistenceError(Exception):
    """Writing the record log to disk failed. Never reaches HTTP callers."""
