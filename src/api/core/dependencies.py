import hmac
from typing import Annotated, AsyncGenerator
from uuid import UUID

from fastapi import Depends, Header, Request, status
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.constants import JWT_ALGORITHM, SERVICE_KEY_HEADER
from src.api.core.exceptions.base import CreditLedgerException
from src.api.core.messages import MessageCode
from src.modules.billing.stripe.service import StripePaymentService
from src.modules.billing.webhooks.service import WebhookReconciler
from src.modules.ledger.pricing import PricingEngine
from src.modules.ledger.spend import SpendCoordinator
from src.modules.ledger.store import LedgerStore
from src.modules.ledger.throttle import CostThrottleGuard
from src.utils.logger import get_logger
from src.utils.settings.auth import AuthSettings
from src.utils.settings.ledger import LedgerSettings

logger = get_logger(__name__)


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session from app state."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_pricing_engine() -> PricingEngine:
    return PricingEngine.from_settings(LedgerSettings())


async def get_ledger_store(
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> LedgerStore:
    return LedgerStore(db)


async def get_spend_coordinator(
    db: Annotated[AsyncSession, Depends(get_db_session)],
    pricing: Annotated[PricingEngine, Depends(get_pricing_engine)],
) -> SpendCoordinator:
    return SpendCoordinator(db, pricing=pricing)


async def get_throttle_guard(
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> CostThrottleGuard:
    return CostThrottleGuard(db)


async def get_webhook_reconciler(
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> WebhookReconciler:
    return WebhookReconciler(db)


async def get_stripe_payment_service(
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> StripePaymentService:
    return StripePaymentService(db)


async def get_current_account_id(
    authorization: Annotated[str | None, Header()] = None,
) -> UUID:
    """Resolve the account from a `Bearer <jwt>` header; `sub` is the account id."""
    if not authorization:
        raise CreditLedgerException(
            MessageCode.AUTH_REQUIRED, status.HTTP_401_UNAUTHORIZED
        )

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise CreditLedgerException(
            MessageCode.INVALID_TOKEN,
            status.HTTP_401_UNAUTHORIZED,
            {"description": "Authorization header must be 'Bearer <token>'"},
        )

    settings = AuthSettings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET.get_secret_value(),
            algorithms=[JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
        return UUID(payload["sub"])
    except (JWTError, KeyError, ValueError) as e:
        logger.info("JWT rejected", error=str(e))
        raise CreditLedgerException(
            MessageCode.INVALID_TOKEN,
            status.HTTP_403_FORBIDDEN,
            {"description": "Invalid or expired authentication token"},
        ) from e


async def require_service_key(
    service_key: Annotated[str | None, Header(alias=SERVICE_KEY_HEADER)] = None,
) -> None:
    expected = AuthSettings().LEDGER_SERVICE_KEY.get_secret_value()
    if not service_key or not hmac.compare_digest(service_key, expected):
        raise CreditLedgerException(
            MessageCode.INVALID_SERVICE_KEY,
            status.HTTP_401_UNAUTHORIZED,
            {"description": f"Provide a valid '{SERVICE_KEY_HEADER}' header"},
        )


AsyncSessionDep = Annotated[AsyncSession, Depends(get_db_session)]
PricingEngineDep = Annotated[PricingEngine, Depends(get_pricing_engine)]
LedgerStoreDep = Annotated[LedgerStore, Depends(get_ledger_store)]
SpendCoordinatorDep = Annotated[SpendCoordinator, Depends(get_spend_coordinator)]
CostThrottleGuardDep = Annotated[CostThrottleGuard, Depends(get_throttle_guard)]
WebhookReconcilerDep = Annotated[WebhookReconciler, Depends(get_webhook_reconciler)]
StripePaymentServiceDep = Annotated[
    StripePaymentService, Depends(get_stripe_payment_service)
]
CurrentAccountDep = Annotated[UUID, Depends(get_current_account_id)]
