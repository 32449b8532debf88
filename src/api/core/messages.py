"""Centralized message codes and default messages for API responses."""

from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel


class MessageCode(str, Enum):
    """Centralized message codes for API responses."""

    # Success codes
    SUCCESS = "SUCCESS"
    CREATED = "CREATED"

    # Authentication & Authorization
    AUTH_REQUIRED = "AUTH_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_SERVICE_KEY = "INVALID_SERVICE_KEY"

    # Pricing
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    UNKNOWN_MODEL = "UNKNOWN_MODEL"

    # Ledger
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    SPEND_NOT_FOUND = "SPEND_NOT_FOUND"
    SPEND_RECORDED = "SPEND_RECORDED"
    SPEND_CORRECTED = "SPEND_CORRECTED"
    THROTTLE_RESET = "THROTTLE_RESET"
    CORRELATION_CONFLICT = "CORRELATION_CONFLICT"
    LEDGER_BUSY = "LEDGER_BUSY"

    # Cost throttling
    THROTTLED = "THROTTLED"

    # Webhooks
    WEBHOOK_PROCESSED = "WEBHOOK_PROCESSED"
    WEBHOOK_DUPLICATE = "WEBHOOK_DUPLICATE"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
    WEBHOOK_EVENT_UNSUPPORTED = "WEBHOOK_EVENT_UNSUPPORTED"

    # Billing
    PURCHASE_CREATED = "PURCHASE_CREATED"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Service Errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"


# Default messages for each message code
DEFAULT_MESSAGES = {
    # Success messages
    MessageCode.SUCCESS: "Operation completed successfully",
    MessageCode.CREATED: "Resource created successfully",
    # Authentication & Authorization
    MessageCode.AUTH_REQUIRED: "Authentication required",
    MessageCode.INVALID_TOKEN: "Invalid authentication token",
    MessageCode.INVALID_SERVICE_KEY: "Invalid or missing service key",
    # Pricing
    MessageCode.REQUEST_TOO_LARGE: "Estimated token count exceeds the per-request limit",
    MessageCode.UNKNOWN_MODEL: "Unknown model",
    # Ledger
    MessageCode.INSUFFICIENT_CREDITS: "Insufficient credits",
    MessageCode.ACCOUNT_NOT_FOUND: "Credit account not found",
    MessageCode.SPEND_NOT_FOUND: "No spend recorded for this correlation id",
    MessageCode.SPEND_RECORDED: "Credits spent successfully",
    MessageCode.SPEND_CORRECTED: "Spend corrected from actual usage",
    MessageCode.THROTTLE_RESET: "Cost window reset and throttle lifted",
    MessageCode.CORRELATION_CONFLICT: "Correlation id already used by another account",
    MessageCode.LEDGER_BUSY: "Ledger is busy, retry shortly",
    # Cost throttling
    MessageCode.THROTTLED: "Account usage is temporarily throttled",
    # Webhooks
    MessageCode.WEBHOOK_PROCESSED: "Webhook event processed",
    MessageCode.WEBHOOK_DUPLICATE: "Webhook event already processed",
    MessageCode.WEBHOOK_SIGNATURE_INVALID: "Invalid webhook signature",
    MessageCode.WEBHOOK_EVENT_UNSUPPORTED: "Unsupported webhook event type",
    # Billing
    MessageCode.PURCHASE_CREATED: "Purchase created successfully",
    MessageCode.SUBSCRIPTION_NOT_FOUND: "Subscription not found",
    MessageCode.SUBSCRIPTION_CANCELED: "Subscription will be canceled at period end",
    # Validation errors
    MessageCode.VALIDATION_ERROR: "Validation failed",
    MessageCode.INVALID_INPUT: "Invalid input provided",
    # Service Errors
    MessageCode.EXTERNAL_SERVICE_ERROR: "External service error",
    # Generic errors
    MessageCode.INTERNAL_ERROR: "Internal server error",
    MessageCode.INTERNAL_SERVER_ERROR: "Internal server error",
    MessageCode.BAD_REQUEST: "Bad request",
    MessageCode.NOT_FOUND: "Resource not found",
}

T = TypeVar("T")


class PaginationInfo(BaseModel):
    """Common pagination information."""

    total: int
    limit: int
    offset: int
    has_more: bool


class Paginated(BaseModel, Generic[T]):
    """Generic paginated response wrapper."""

    items: list[T]
    pagination: PaginationInfo


class APIResponse(BaseModel, Generic[T]):
    """Base API response model with consistent structure and proper typing."""

    message_code: MessageCode
    message: str
    data: T | None = None

    @classmethod
    def success(
        cls,
        message_code: MessageCode = MessageCode.SUCCESS,
        message: str | None = None,
        data: T | None = None,
    ) -> "APIResponse[T]":
        """Create a success response."""
        return cls(
            message_code=message_code,
            message=message or DEFAULT_MESSAGES.get(message_code, "Success"),
            data=data,
        )


def get_default_message(message_code: MessageCode) -> str:
    """Get default message for a message code."""
    return DEFAULT_MESSAGES.get(message_code, "Operation completed")
