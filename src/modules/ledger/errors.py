"""Ledger error taxonomy mapped onto API message codes."""

from datetime import datetime

from fastapi import status

from src.api.core.exceptions.base import CreditLedgerException
from src.api.core.messages import MessageCode


class LedgerError(CreditLedgerException):
    """Base class for ledger failures. Balances are never partially applied."""

    message_code: MessageCode = MessageCode.INTERNAL_ERROR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, details: dict | None = None, headers: dict | None = None):
        super().__init__(
            type(self).message_code,
            type(self).status_code,
            details=details,
            headers=headers,
        )


class InsufficientBalance(LedgerError):
    message_code = MessageCode.INSUFFICIENT_CREDITS
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class RequestTooLarge(LedgerError):
    message_code = MessageCode.REQUEST_TOO_LARGE
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class UnknownModel(LedgerError):
    message_code = MessageCode.UNKNOWN_MODEL
    status_code = status.HTTP_400_BAD_REQUEST


class Throttled(LedgerError):
    message_code = MessageCode.THROTTLED
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, reason: str | None, resets_at: datetime | None = None):
        details: dict = {"reason": reason}
        if resets_at is not None:
            details["resets_at"] = resets_at.isoformat()
        super().__init__(details=details)
        self.reason = reason


class ConcurrentMutationTimeout(LedgerError):
    message_code = MessageCode.LEDGER_BUSY
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, details: dict | None = None):
        super().__init__(details=details, headers={"Retry-After": "1"})


class AccountNotFound(LedgerError):
    message_code = MessageCode.ACCOUNT_NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class SpendNotFound(LedgerError):
    message_code = MessageCode.SPEND_NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class CorrelationConflict(LedgerError):
    message_code = MessageCode.CORRELATION_CONFLICT
    status_code = status.HTTP_409_CONFLICT


class WebhookSignatureInvalid(LedgerError):
    message_code = MessageCode.WEBHOOK_SIGNATURE_INVALID
    status_code = status.HTTP_400_BAD_REQUEST


class UnsupportedWebhookEvent(LedgerError):
    message_code = MessageCode.WEBHOOK_EVENT_UNSUPPORTED
    status_code = status.HTTP_400_BAD_REQUEST


class DuplicateEvent(LedgerError):
    """Not a failure: the event was already applied and is acknowledged as-is."""

    message_code = MessageCode.WEBHOOK_DUPLICATE
    status_code = status.HTTP_200_OK
