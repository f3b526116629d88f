"""Errors raised while talking to the factory REST API."""


class FloorApiError(Exception):
    """Base error for upstream API calls."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def __str__(self) -> str:
        return self.message


class RequestCancelled(FloorApiError):
    """The request's cancellation token fired; its result must be discarded."""

    name = "AbortError"

    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message)


class ApiResponseError(FloorApiError):
    """Non-2xx response or a body reporting ``success: false``."""


class InvalidResponseError(ApiResponseError):
    """Response body could not be parsed as JSON."""


class FormValidationError(Exception):
    """Form input rejected before any request was sent."""
