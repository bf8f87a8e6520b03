"""Standardized error payloads and the service exception hierarchy.

Exception hierarchy::

    ServiceError
    ├── ProviderError            rail rejected the request (4xx), never retried
    │   └── ProviderTransportError   network failure or rail 5xx
    ├── EarningsFetchError       earnings aggregation aborted, no partial snapshot
    ├── BudgetExceeded           spend rejected, ledger unchanged
    ├── BudgetNotConfigured      no budget row for the business
    ├── InvalidBudgetRequest     malformed cap, amount or window
    ├── NotFoundError            referenced record is missing
    └── InvalidStateTransition   a paid payment was asked to leave ``paid``
"""
from __future__ import annotations

from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class ServiceError(Exception):
    """Base class for errors raised by the reconciliation services."""

    default_error_code: str = "SERVICE_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return error_response(self.error_code, self.message, self.details)


class ProviderError(ServiceError):
    """A payment rail answered with a client error."""

    default_error_code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        rail: str,
        rail_code: str | None = None,
        http_status: int | None = None,
        payload: Any = None,
        error_code: str | None = None,
    ) -> None:
        self.rail = rail
        self.rail_code = rail_code
        self.http_status = http_status
        self.payload = payload
        details: dict[str, Any] = {"rail": rail}
        if rail_code:
            details["rail_code"] = rail_code
        if http_status is not None:
            details["http_status"] = http_status
        super().__init__(message, error_code=error_code, details=details)


class ProviderTransportError(ProviderError):
    """The rail could not be reached or failed on its side (5xx)."""

    default_error_code = "PROVIDER_UNAVAILABLE"
    status_code = 503


class EarningsFetchError(ServiceError):
    """Earnings aggregation aborted because a rail call failed."""

    default_error_code = "EARNINGS_FETCH_FAILED"
    status_code = 503

    def __init__(self, message: str, *, account_id: str, cause: ProviderError) -> None:
        self.account_id = account_id
        self.cause = cause
        self.rail_payload = cause.payload
        super().__init__(
            message,
            details={
                "account_id": account_id,
                "rail": cause.rail,
                "rail_code": cause.rail_code,
                "rail_error": cause.message,
            },
        )


class BudgetExceeded(ServiceError):
    """A spend would push usage past the configured cap."""

    default_error_code = "BUDGET_EXCEEDED"
    status_code = 409

    def __init__(self, *, business_id: int, amount: int, cap: int, used: int) -> None:
        self.business_id = business_id
        self.amount = amount
        self.cap = cap
        self.used = used
        super().__init__(
            "Spend would exceed the configured budget cap.",
            details={"business_id": business_id, "amount": amount, "cap": cap, "used": used},
        )


class InvalidBudgetRequest(ServiceError):
    default_error_code = "INVALID_BUDGET_REQUEST"
    status_code = 400


class BudgetNotConfigured(ServiceError):
    default_error_code = "BUDGET_NOT_CONFIGURED"
    status_code = 404


class NotFoundError(ServiceError):
    default_error_code = "NOT_FOUND"
    status_code = 404


class InvalidStateTransition(ServiceError):
    """Raised when a paid payment would move to another canonical state.

    The reconciler is total, so this signals corrupted stored signals rather
    than a recoverable condition.
    """

    default_error_code = "INVALID_STATE_TRANSITION"
    status_code = 500


__all__ = [
    "error_response",
    "ServiceError",
    "ProviderError",
    "ProviderTransportError",
    "EarningsFetchError",
    "BudgetExceeded",
    "BudgetNotConfigured",
    "InvalidBudgetRequest",
    "NotFoundError",
    "InvalidStateTransition",
]
