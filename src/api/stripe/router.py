"""Stripe webhook endpoint."""

from fastapi import APIRouter, Request, status

from src.api.core.constants import STRIPE_SIGNATURE_HEADER
from src.api.core.dependencies import WebhookReconcilerDep
from src.api.core.exceptions.base import CreditLedgerException
from src.api.core.messages import APIResponse, MessageCode
from src.modules.ledger.errors import DuplicateEvent
from src.utils.logger import get_logger
from src.utils.settings.app import AppSettings

logger = get_logger(__name__)

router = APIRouter(prefix="/stripe", tags=["stripe"])


@router.post("/webhook", response_model=APIResponse[dict])
async def stripe_webhook(
    request: Request,
    reconciler: WebhookReconcilerDep,
) -> APIResponse[dict]:
    """Verify and apply one Stripe event.

    A 2xx tells Stripe to stop redelivering, so only applied or duplicate
    events are acknowledged; anything else propagates as an error.
    """
    payload = await request.body()

    if not payload:
        raise CreditLedgerException(
            MessageCode.BAD_REQUEST,
            status.HTTP_400_BAD_REQUEST,
            details={"description": "Empty webhook payload"},
        )

    max_size = AppSettings().MAX_WEBHOOK_PAYLOAD_SIZE
    if len(payload) > max_size:
        raise CreditLedgerException(
            MessageCode.BAD_REQUEST,
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            details={"description": "Webhook payload too large"},
        )

    event = reconciler.verify(payload, request.headers.get(STRIPE_SIGNATURE_HEADER))

    try:
        await reconciler.reconcile(event)
    except DuplicateEvent:
        logger.info("Duplicate webhook ignored", event_id=event.id, type=event.type)
        return APIResponse.success(
            message_code=MessageCode.WEBHOOK_DUPLICATE,
            data={"event_id": event.id, "type": event.type},
        )

    return APIResponse.success(
        message_code=MessageCode.WEBHOOK_PROCESSED,
        data={"event_id": event.id, "type": event.type},
    )
