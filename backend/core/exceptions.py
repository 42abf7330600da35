"""Custom exceptions for the clinic workflow engine."""


class WorkflowEngineException(Exception):
    """Base exception for the workflow engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(WorkflowEngineException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(WorkflowEngineException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class ConflictError(WorkflowEngineException):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class InvalidTransitionError(ConflictError):
    """An enrollment was asked to move to a state its current state forbids."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move enrollment from '{current}' to '{target}'")


class DefinitionError(ValidationError):
    """Malformed workflow definition (condition or action config)."""

    def __init__(self, message: str = "Invalid workflow definition"):
        super().__init__(message)


# ─── Provider errors ─────────────────────────────────────────

class ProviderError(WorkflowEngineException):
    """An external capability (messaging, CRM, appointments) failed."""

    retryable = False

    def __init__(self, message: str = "Provider error", status_code: int = 502):
        super().__init__(message, status_code)


class TransientProviderError(ProviderError):
    """Timeout, 5xx or throttling. The step may be retried."""

    retryable = True


class PermanentProviderError(ProviderError):
    """The provider rejected the request for good (invalid phone, 4xx)."""

    retryable = False


class LogWriteError(WorkflowEngineException):
    """The execution log row could not be written.

    The step it describes is treated as unconfirmed and runs again on a
    later tick.
    """

    def __init__(self, message: str = "Failed to write execution log"):
        super().__init__(message, 500)
