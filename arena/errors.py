class ArenaError(Exception):
    """Base class for failures surfaced to API callers."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {'error': self.message, 'code': self.code}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(ArenaError):
    """Malformed input."""
    status_code = 400
    code = "validation_error"


class NotFoundError(ArenaError):
    """Resource not found."""
    status_code = 404
    code = "not_found"


class ConflictError(ArenaError):
    """Request conflicts with current state."""
    status_code = 409
    code = "conflict"


class CapacityExceededError(ConflictError):
    """No registration slot left."""
    code = "capacity_exceeded"


class InvalidStateError(ArenaError):
    """Operation not allowed in the current state."""
    status_code = 409
    code = "invalid_state"


class IntegrityError(ArenaError):
    """Signature mismatch."""
    status_code = 400
    code = "integrity_error"


class ExternalServiceError(ArenaError):
    """Payment gateway unavailable or rejected the request."""
    status_code = 502
    code = "external_service_error"
