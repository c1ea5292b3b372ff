"""Structured errors for guarded provider calls.

Custom exception hierarchy for the seq backend.  Every failure surfaced by a
circuit-breaker-guarded call is one of the ``SeqBackendError`` subclasses
below, or the wrapped operation's own exception propagated unchanged.
"""

from pydantic import BaseModel


class SeqBackendError(Exception):
    """Base exception for all seq backend errors."""


class BreakerOpenError(SeqBackendError):
    """Raised when a circuit breaker refuses to attempt a call.

    Retryable later, not now.  Callers should apply their own backoff or
    fallback.

    Attributes:
        service_name: Name of the guarded service.
        retry_after:  Seconds until the breaker will admit a trial call.
    """

    def __init__(self, service_name: str, retry_after: float) -> None:
        self.service_name = service_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit breaker is open for '{service_name}' — retry after {self.retry_after:.1f}s")


class OperationTimeoutError(SeqBackendError, TimeoutError):
    """Raised when a guarded operation exceeds its deadline."""

    def __init__(self, service_name: str, timeout_ms: int) -> None:
        self.service_name = service_name
        self.timeout_ms = timeout_ms
        super().__init__(f"Request to '{service_name}' timed out after {timeout_ms}ms")


class BackendUnavailableError(SeqBackendError):
    """Raised when a provider cannot be reached or reports a transient outage."""

    def __init__(self, service_name: str, detail: str = "") -> None:
        self.service_name = service_name
        self.detail = detail
        msg = f"Backend unavailable: {service_name}"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


class ProviderResponseError(SeqBackendError):
    """Raised when a provider answers with an unusable response."""

    def __init__(self, service_name: str, status_code: int | None = None, detail: str = "") -> None:
        self.service_name = service_name
        self.status_code = status_code
        self.detail = detail
        msg = f"Unexpected response from {service_name}"
        if status_code is not None:
            msg += f" (HTTP {status_code})"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


class StructuredErrorResponse(BaseModel):
    """Structured error body: ``{"error", "code", "request_id"}``, no stack traces."""

    error: str
    code: str
    request_id: str

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> "StructuredErrorResponse":
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, BreakerOpenError):
            return cls(error=str(exc), code="CIRCUIT_OPEN", request_id=request_id)
        if isinstance(exc, OperationTimeoutError):
            return cls(error=str(exc), code="OPERATION_TIMEOUT", request_id=request_id)
        if isinstance(exc, BackendUnavailableError):
            return cls(error=str(exc), code="BACKEND_UNAVAILABLE", request_id=request_id)
        if isinstance(exc, ProviderResponseError):
            return cls(error=str(exc), code="PROVIDER_ERROR", request_id=request_id)
        if isinstance(exc, SeqBackendError):
            return cls(error=str(exc), code="BACKEND_ERROR", request_id=request_id)
        # Unhandled: never expose internal details
        return cls(
            error="An internal error occurred",
            code="INTERNAL_ERROR",
            request_id=request_id,
        )
