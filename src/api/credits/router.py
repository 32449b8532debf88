"""Credits domain router."""

import uuid
from collections.abc import Awaitable, Callable
from typing import Annotated, TypeVar

from fastapi import APIRouter, Depends, Header, Query, status

from src.api.core.constants import (
    DEFAULT_PAGE_SIZE,
    IDEMPOTENCY_KEY_HEADER,
    MAX_PAGE_SIZE,
)
from src.api.core.dependencies import (
    CostThrottleGuardDep,
    CurrentAccountDep,
    LedgerStoreDep,
    PricingEngineDep,
    SpendCoordinatorDep,
    StripePaymentServiceDep,
    require_service_key,
)
from src.api.core.messages import APIResponse, MessageCode, Paginated, PaginationInfo
from src.database.models import TransactionReason
from src.modules.billing.constants import CREDIT_PACKAGES
from src.modules.ledger.constants import DEFAULT_MODEL
from src.modules.ledger.store import with_lock_retry
from src.utils.logger import get_logger
from src.utils.settings.ledger import LedgerSettings
from src.utils.settings.stripe import StripeSettings
from .models import (
    BalanceModel,
    CostAlertModel,
    CorrectionModel,
    CreditPackageModel,
    EstimateModel,
    PoolBreakdownModel,
    PurchaseModel,
    SpendModel,
    ThrottleStatusModel,
    TransactionModel,
)
from .requests import (
    BalanceResponse,
    CorrectionResponse,
    CorrectRequest,
    CostAlertsResponse,
    CreditPackagesResponse,
    EstimateRequest,
    EstimateResponse,
    OpenAccountRequest,
    PurchaseRequest,
    PurchaseResponse,
    SpendRequest,
    SpendResponse,
    ThrottleStatusResponse,
    TransactionHistoryResponse,
)

T = TypeVar("T")

logger = get_logger(__name__)

router = APIRouter(
    prefix="/credits",
    tags=["credits"],
)

ServiceKey = [Depends(require_service_key)]


async def _retrying(operation: Callable[[], Awaitable[T]]) -> T:
    settings = LedgerSettings()
    return await with_lock_retry(
        operation,
        attempts=settings.LEDGER_LOCK_RETRY_ATTEMPTS,
        backoff_ms=settings.LEDGER_LOCK_RETRY_BACKOFF_MS,
    )


@router.post("/estimate", response_model=EstimateResponse, dependencies=ServiceKey)
async def estimate_cost(
    body: EstimateRequest,
    pricing: PricingEngineDep,
) -> EstimateResponse:
    """Quote the credit cost of a request without touching any balance."""
    cost = pricing.quote(body.estimated_tokens, body.model)
    return APIResponse.success(
        data=EstimateModel(
            model=body.model,
            estimated_tokens=body.estimated_tokens,
            multiplier=pricing.multiplier(body.model),
            cost=cost,
        )
    )


@router.post("/spend", response_model=SpendResponse, dependencies=ServiceKey)
async def spend_credits(
    body: SpendRequest,
    coordinator: SpendCoordinatorDep,
) -> SpendResponse:
    """Debit credits for one execution. Replays of a correlation id are no-ops."""
    if body.cost is None:
        result = await _retrying(
            lambda: coordinator.estimate_and_spend(
                body.account_id,
                body.estimated_tokens,
                body.correlation_id,
                model=body.model or DEFAULT_MODEL.value,
            )
        )
    else:
        result = await _retrying(
            lambda: coordinator.spend(
                body.account_id,
                body.cost,
                body.correlation_id,
                model=body.model,
                estimated_tokens=body.estimated_tokens,
            )
        )
    return APIResponse.success(
        message_code=MessageCode.SPEND_RECORDED,
        data=SpendModel(
            account_id=result.account_id,
            correlation_id=result.correlation_id,
            transaction_id=result.transaction_id,
            cost=result.cost,
            breakdown=PoolBreakdownModel(**result.breakdown.as_dict()),
            remaining_balance=result.remaining_balance,
            replayed=result.replayed,
        ),
    )


@router.post("/correct", response_model=CorrectionResponse, dependencies=ServiceKey)
async def correct_spend(
    body: CorrectRequest,
    coordinator: SpendCoordinatorDep,
) -> CorrectionResponse:
    result = await _retrying(
        lambda: coordinator.correct(body.correlation_id, body.actual_tokens)
    )
    return APIResponse.success(
        message_code=MessageCode.SPEND_CORRECTED,
        data=CorrectionModel.model_validate(result),
    )


@router.post(
    "/accounts",
    response_model=BalanceResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=ServiceKey,
)
async def open_account(
    body: OpenAccountRequest,
    store: LedgerStoreDep,
) -> BalanceResponse:
    """Signup hook: create the balance and its signup grant once."""
    snapshot = await store.open_account(body.account_id)
    return APIResponse.success(
        message_code=MessageCode.CREATED, data=BalanceModel.model_validate(snapshot)
    )


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    account_id: CurrentAccountDep,
    store: LedgerStoreDep,
) -> BalanceResponse:
    snapshot = await store.get_balance(account_id)
    return APIResponse.success(data=BalanceModel.model_validate(snapshot))


@router.get("/history", response_model=TransactionHistoryResponse)
async def get_transaction_history(
    account_id: CurrentAccountDep,
    store: LedgerStoreDep,
    reason: Annotated[TransactionReason | None, Query(alias="type")] = None,
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
) -> TransactionHistoryResponse:
    """Newest-first transaction log for the account, optionally by reason."""
    # Unknown accounts get a 404 rather than an empty page
    await store.get_balance(account_id)
    transactions, total = await store.list_transactions(
        account_id, reason=reason, limit=limit, offset=offset
    )
    items = [TransactionModel.model_validate(t) for t in transactions]
    pagination_info = PaginationInfo(
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(items) < total,
    )
    return APIResponse.success(
        data=Paginated[TransactionModel](items=items, pagination=pagination_info)
    )


@router.get("/throttle", response_model=ThrottleStatusResponse)
async def get_throttle_status(
    account_id: CurrentAccountDep,
    throttle: CostThrottleGuardDep,
) -> ThrottleStatusResponse:
    throttle_status = await throttle.get_status(account_id)
    return APIResponse.success(
        data=ThrottleStatusModel.model_validate(throttle_status)
    )


@router.get("/throttle/alerts", response_model=CostAlertsResponse)
async def list_cost_alerts(
    account_id: CurrentAccountDep,
    throttle: CostThrottleGuardDep,
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
) -> CostAlertsResponse:
    """Cost warnings and throttle events for the account, newest first."""
    alerts = await throttle.list_alerts(account_id, limit=limit)
    return APIResponse.success(
        data=[CostAlertModel.model_validate(alert) for alert in alerts]
    )


@router.post(
    "/throttle/{account_id}/reset",
    response_model=ThrottleStatusResponse,
    dependencies=ServiceKey,
)
async def reset_throttle(
    account_id: uuid.UUID,
    throttle: CostThrottleGuardDep,
) -> ThrottleStatusResponse:
    """Admin override: clear the cost window and lift the throttle."""
    await _retrying(lambda: throttle.reset(account_id))
    logger.info("Throttle reset by operator", account_id=str(account_id))
    throttle_status = await throttle.get_status(account_id)
    return APIResponse.success(
        message_code=MessageCode.THROTTLE_RESET,
        data=ThrottleStatusModel.model_validate(throttle_status),
    )


@router.get("/packages", response_model=CreditPackagesResponse)
async def list_credit_packages() -> CreditPackagesResponse:
    currency = StripeSettings().STRIPE_CURRENCY
    packages = [
        CreditPackageModel(
            package=package,
            credits=config.credits,
            amount_cents=config.amount_cents,
            currency=currency,
            description=config.description,
        )
        for package, config in CREDIT_PACKAGES.items()
    ]
    return APIResponse.success(data=packages)


@router.post(
    "/purchase",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def purchase_credits(
    body: PurchaseRequest,
    account_id: CurrentAccountDep,
    stripe_service: StripePaymentServiceDep,
    idempotency_key: Annotated[
        str | None, Header(alias=IDEMPOTENCY_KEY_HEADER)
    ] = None,
) -> PurchaseResponse:
    """Start a package purchase. Credits land when Stripe confirms payment."""
    intent = await stripe_service.create_credit_purchase(
        account_id,
        body.package,
        idempotency_key=idempotency_key or f"purchase:{account_id}:{uuid.uuid4().hex}",
    )
    purchase = intent.purchase
    return APIResponse.success(
        message_code=MessageCode.PURCHASE_CREATED,
        data=PurchaseModel(
            purchase_id=purchase.id,
            payment_intent_id=purchase.stripe_payment_intent_id,
            client_secret=intent.client_secret,
            package=purchase.package,
            credits=purchase.credits,
            amount_cents=purchase.amount_cents,
            status=purchase.status,
        ),
    )
