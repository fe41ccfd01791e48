"""
Admissions error taxonomy.

Every operation of the core raises one of these; the HTTP layer maps them
onto status codes and the message is what the operator sees.
"""


class AdmissionsError(Exception):
    """Base class for all errors raised by the admissions core."""

    def __init__(self, message, original_error=None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


class InvalidState(AdmissionsError):
    """Transition not permitted from the entity's current status."""

    def __init__(self, message, current_status=None):
        self.current_status = current_status
        super().__init__(message)


class ValidationError(AdmissionsError):
    """Payload is missing required fields or carries invalid values."""

    def __init__(self, message, missing_fields=None):
        self.missing_fields = list(missing_fields or [])
        super().__init__(message)


class NotFound(AdmissionsError):
    pass


class ConflictError(AdmissionsError):
    """Duplicate admission attempt or a lost race with no fallback."""
    pass


class GatewayError(AdmissionsError):
    """Payment gateway returned an error. Retryable, never fatal."""
    pass


class GatewayTimeout(GatewayError):
    pass


class PersistenceError(AdmissionsError):
    """Store unavailable; the operation was rolled back in full."""
    pass
