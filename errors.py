"""Typed failures raised by the rent accounting services.

Each error carries the HTTP status the JSON layer answers with, so route
handlers never have to translate exceptions themselves.
"""


class RentalError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RentalError):
    """Malformed or missing input.  Never retried."""
    status_code = 400


class NotFoundError(RentalError):
    """A referenced selection, wallet or plan does not exist."""
    status_code = 404


class ConcurrentModificationConflict(RentalError):
    """Another writer changed the record and the retry budget ran out."""
    status_code = 409
