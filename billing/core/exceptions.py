from typing import Any, TypeVar

from fastapi import HTTPException, status

from billing.domain.results import Conflict, ErrorCode, Invalid, Ok, Result

T = TypeVar("T")


class BillingRuleError(HTTPException):
    """Raised when a billing rule rejects the request (non-retryable)."""

    def __init__(self, invalid: Invalid):
        detail: dict[str, Any] = {"code": invalid.code.value, "message": invalid.message}
        if invalid.data:
            detail["data"] = invalid.data
        super().__init__(status_code=invalid.status_code, detail=detail)
        self.code = invalid.code


class ConcurrentUpdateError(HTTPException):
    """Raised when a write kept losing optimistic-lock races. Safe to retry."""

    def __init__(self, resource: str = "Subscription"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": ErrorCode.CONCURRENT_UPDATE.value,
                "message": f"{resource} was modified concurrently, please retry",
            },
        )


class ProviderUnavailableError(HTTPException):
    """Raised when the payment provider failed on a primary path. Safe to retry."""

    def __init__(self, message: str = "Payment provider request failed"):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": ErrorCode.PROVIDER_ERROR.value, "message": message},
        )


def unwrap(result: Result[T]) -> T:
    """Return the value of an Ok result, or raise the matching HTTP error."""
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, Invalid):
        raise BillingRuleError(result)
    if isinstance(result, Conflict):
        raise ConcurrentUpdateError(result.resource)
    raise TypeError(f"Unexpected result type: {type(result).__name__}")
