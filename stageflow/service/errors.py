from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``. The same codes tag failed ``StageResult`` values so that a
    failure looks identical whether it was raised or returned:
    - validation_error (400)
    - not_found (404)
    - already_running (409)
    - cancelled (409)
    - domain_error (422)
    - config_error (500)
    - transport_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def retryable(self) -> bool:
        return False


class ValidationError(ServiceError):
    """Required stage input missing or malformed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested session or resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConfigError(ServiceError):
    """Node graph or node reference is invalid (500, 404 for unknown nodes)."""
    status_code = 500
    error_code = "config_error"


class TransportError(ServiceError):
    """Stage endpoint unreachable, timed out, or answered 5xx (502)."""
    status_code = 502
    error_code = "transport_error"

    @property
    def retryable(self) -> bool:
        return True


class DomainError(ServiceError):
    """Stage endpoint rejected the request or reported a failed run (422)."""
    status_code = 422
    error_code = "domain_error"


class AlreadyRunning(ServiceError):
    """The same (session, node) pair already has an execution in flight (409)."""
    status_code = 409
    error_code = "already_running"


class StageCancelled(ServiceError):
    """The caller cancelled an in-flight execution (409)."""
    status_code = 409
    error_code = "cancelled"


class AggregationDropped(ServiceError):
    """A usage event could not be aggregated; counted and logged, never raised."""
    status_code = 400
    error_code = "aggregation_dropped"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConfigError",
    "TransportError",
    "DomainError",
    "AlreadyRunning",
    "StageCancelled",
    "AggregationDropped",
]
