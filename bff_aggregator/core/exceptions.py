"""
Custom exceptions for the application

Two families live here:

- ``AppException`` subclasses terminate a request and are rendered by the
  exception handler registered in ``bff_aggregator.main``.
- ``CallFailure`` subclasses describe why a single upstream call failed.
  They never reach the client directly; the aggregation engine either
  absorbs them (optional calls) or wraps them in ``AggregationFailed``.
"""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    error_code: str = "internal_error"

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def extra(self) -> dict[str, Any]:
        """Additional fields merged into the error response body."""
        return {}


class NotFoundException(AppException):
    """Resource not found exception."""

    error_code = "not_found"

    def __init__(self, resource: str = "Resource", identifier: Any = None):
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with identifier '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class UnknownClientProfile(NotFoundException):
    """No client profile matches the request."""

    error_code = "unknown_client_profile"

    def __init__(self, identifier: Any = None):
        self.profile_id = identifier
        super().__init__(resource="Client profile", identifier=identifier)


class UnknownOperation(NotFoundException):
    """Neither a profile-specific nor a default plan exists for the operation."""

    error_code = "unknown_operation"

    def __init__(self, operation: str, profile_id: str | None = None):
        self.operation = operation
        self.profile_id = profile_id
        super().__init__(resource="Operation", identifier=operation)


class CatalogError(AppException):
    """The catalog file could not be loaded or failed validation."""

    error_code = "catalog_error"

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


# ═══════════════════════════════════════════════════════════════════════════════
# CALL-LEVEL FAILURES
# ═══════════════════════════════════════════════════════════════════════════════


class CallFailure(Exception):
    """A single upstream call did not produce a usable result."""

    kind: str = "call_failure"
    # Eligible for retry (subject to the call being idempotent)
    transient: bool = False
    # Recorded as a failure by the service's circuit breaker
    counts_against_circuit: bool = False

    def __init__(self, service_id: str | None = None, message: str | None = None):
        self.service_id = service_id
        self.message = message or self.kind
        super().__init__(self.message)

    def describe(self) -> str:
        return f"{self.kind}: {self.message}"


class UpstreamTimeout(CallFailure):
    kind = "timeout"
    transient = True
    counts_against_circuit = True


class ConnectionFailure(CallFailure):
    kind = "connection_failure"
    transient = True
    counts_against_circuit = True


class UpstreamError(CallFailure):
    """The upstream answered with an error status."""

    kind = "upstream_error"

    def __init__(self, service_id: str | None, status_code: int, message: str | None = None):
        self.status_code = status_code
        super().__init__(service_id, message or f"upstream returned HTTP {status_code}")

    @property
    def counts_against_circuit(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500


class CircuitOpen(CallFailure):
    """Rejected without a network attempt because the service's circuit is open."""

    kind = "circuit_open"

    def __init__(self, service_id: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(
            service_id,
            f"circuit for '{service_id}' is open, retry after {retry_after:.1f}s",
        )


class Overloaded(CallFailure):
    """The service's in-flight limit was reached and the admission wait expired."""

    kind = "overloaded"

    def __init__(self, service_id: str, max_in_flight: int):
        self.max_in_flight = max_in_flight
        super().__init__(
            service_id,
            f"'{service_id}' has {max_in_flight} calls in flight",
        )


class NormalizationError(CallFailure):
    kind = "normalization_error"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(None, f"field '{field}': {message}")


class BindingError(CallFailure):
    """A required input parameter could not be bound."""

    kind = "binding_error"

    def __init__(self, parameter: str, message: str):
        self.parameter = parameter
        super().__init__(None, f"parameter '{parameter}': {message}")


class DependencyFailed(CallFailure):
    kind = "dependency_failed"

    def __init__(self, dependency: str, cause: CallFailure):
        self.dependency = dependency
        self.cause = cause
        super().__init__(None, f"dependency '{dependency}' failed ({cause.kind})")


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION-LEVEL ERRORS
# ═══════════════════════════════════════════════════════════════════════════════


class AggregationFailed(AppException):
    """A required upstream call failed; the plan was aborted."""

    error_code = "aggregation_failed"

    def __init__(self, causing_call: str, reason: CallFailure):
        self.causing_call = causing_call
        self.reason = reason
        root = reason.cause if isinstance(reason, DependencyFailed) else reason
        if isinstance(root, (CircuitOpen, Overloaded)):
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            status_code = status.HTTP_502_BAD_GATEWAY
        super().__init__(
            status_code=status_code,
            detail=f"Required call '{causing_call}' failed: {reason.describe()}",
        )

    def extra(self) -> dict[str, Any]:
        return {"causing_call": self.causing_call, "reason": self.reason.kind}


class PayloadBudgetExceeded(AppException):
    """Required fields alone exceed the client profile's payload budget."""

    error_code = "payload_budget_exceeded"

    def __init__(self, profile_id: str, size: int, budget: int):
        self.size = size
        self.budget = budget
        super().__init__(
            status_code=413,
            detail=(
                f"Required fields need {size} bytes, profile '{profile_id}' "
                f"allows {budget}"
            ),
        )

    def extra(self) -> dict[str, Any]:
        return {"size": self.size, "budget": self.budget}
