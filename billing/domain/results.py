"""Outcome types for domain operations.

Expected business outcomes (a rule was violated, a write lost an
optimistic-lock race) are returned as values rather than raised, so callers
can retry conflicts and map rule violations to responses in one place.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Stable, client-visible codes for rejected operations."""

    # Request validation
    ORGANIZATION_NOT_FOUND = "ORGANIZATION_NOT_FOUND"
    DUPLICATE_ORGANIZATION = "DUPLICATE_ORGANIZATION"
    INVALID_MODULE_KEYS = "INVALID_MODULE_KEYS"
    INVALID_RESOURCE_TYPES = "INVALID_RESOURCE_TYPES"
    INVALID_USAGE_TYPE = "INVALID_USAGE_TYPE"
    INVALID_BUDGET = "INVALID_BUDGET"

    # Lifecycle
    ALREADY_SUBSCRIBED = "ALREADY_SUBSCRIBED"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    INVALID_STATUS = "INVALID_STATUS"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    NOT_CANCELLED = "NOT_CANCELLED"
    PERIOD_ENDED = "PERIOD_ENDED"
    PAYMENT_SETUP_INCOMPLETE = "PAYMENT_SETUP_INCOMPLETE"
    TRIAL_NO_PAYMENT = "TRIAL_NO_PAYMENT"

    # Add-ons and metering
    MODULE_NOT_FOUND = "MODULE_NOT_FOUND"
    MODULE_NOT_AVAILABLE = "MODULE_NOT_AVAILABLE"
    MODULE_NOT_ENABLED = "MODULE_NOT_ENABLED"
    ALREADY_ADDED = "ALREADY_ADDED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_NOT_AVAILABLE = "RESOURCE_NOT_AVAILABLE"
    USAGE_PRICING_NOT_FOUND = "USAGE_PRICING_NOT_FOUND"

    # Retryable
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    PROVIDER_ERROR = "PROVIDER_ERROR"


ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.ORGANIZATION_NOT_FOUND: 403,
    ErrorCode.DUPLICATE_ORGANIZATION: 400,
    ErrorCode.INVALID_MODULE_KEYS: 400,
    ErrorCode.INVALID_RESOURCE_TYPES: 400,
    ErrorCode.INVALID_USAGE_TYPE: 400,
    ErrorCode.INVALID_BUDGET: 400,
    ErrorCode.ALREADY_SUBSCRIBED: 409,
    ErrorCode.SUBSCRIPTION_NOT_FOUND: 404,
    ErrorCode.NO_SUBSCRIPTION: 404,
    ErrorCode.INVALID_STATUS: 400,
    ErrorCode.ALREADY_CANCELLED: 400,
    ErrorCode.NOT_CANCELLED: 400,
    ErrorCode.PERIOD_ENDED: 400,
    ErrorCode.PAYMENT_SETUP_INCOMPLETE: 400,
    ErrorCode.TRIAL_NO_PAYMENT: 403,
    ErrorCode.MODULE_NOT_FOUND: 404,
    ErrorCode.MODULE_NOT_AVAILABLE: 400,
    ErrorCode.MODULE_NOT_ENABLED: 403,
    ErrorCode.ALREADY_ADDED: 409,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.RESOURCE_NOT_AVAILABLE: 400,
    ErrorCode.USAGE_PRICING_NOT_FOUND: 404,
    ErrorCode.CONCURRENT_UPDATE: 409,
    ErrorCode.PROVIDER_ERROR: 502,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    """The operation succeeded and produced ``value``."""

    value: T


@dataclass(frozen=True)
class Invalid:
    """A business rule rejected the operation. Not retryable."""

    code: ErrorCode
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return ERROR_STATUS.get(self.code, 400)


@dataclass(frozen=True)
class Conflict:
    """A versioned write found the row at a different version. Retryable."""

    resource: str
    detail: str = ""


Result = Union[Ok[T], Invalid, Conflict]
