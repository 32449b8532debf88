"""Credits response models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from src.database.models import (
    CostAlertType,
    CreditPackage,
    PlanTier,
    PurchaseStatus,
    TransactionReason,
)


class EstimateModel(BaseModel):
    model: str
    estimated_tokens: int
    multiplier: Decimal
    cost: int


class PoolBreakdownModel(BaseModel):
    """Signed per-pool change."""

    monthly: int = 0
    rollover: int = 0
    purchased: int = 0


class SpendModel(BaseModel):
    account_id: UUID
    correlation_id: str
    transaction_id: int
    cost: int
    breakdown: PoolBreakdownModel
    remaining_balance: int
    replayed: bool = False


class CorrectionModel(BaseModel):
    account_id: UUID
    correlation_id: str
    charged_cost: int
    actual_cost: int
    adjustment: int
    shortfall: int
    remaining_balance: int
    transaction_id: int
    replayed: bool = False

    model_config = {"from_attributes": True}


class BalanceModel(BaseModel):
    account_id: UUID
    monthly: int
    rollover: int
    purchased: int
    total: int
    monthly_allotment: int
    monthly_reset_at: datetime | None
    rollover_expires_at: datetime | None

    model_config = {"from_attributes": True}


class TransactionModel(BaseModel):
    id: int
    amount: int
    monthly_delta: int
    rollover_delta: int
    purchased_delta: int
    balance_after: int
    reason: TransactionReason
    correlation_id: str | None
    description: str | None
    metadata: dict = Field(default_factory=dict, validation_alias="details")
    created_at: datetime

    model_config = {"from_attributes": True}


class ThrottleStatusModel(BaseModel):
    plan_tier: PlanTier
    current_cost: Decimal
    limit: Decimal
    percent_used: float
    is_throttled: bool
    throttled_reason: str | None
    window_resets_at: datetime | None

    model_config = {"from_attributes": True}


class CostAlertModel(BaseModel):
    id: UUID
    alert_type: CostAlertType
    threshold_percent: int | None
    limit_usd: Decimal
    current_cost_usd: Decimal
    reason: str | None
    window_resets_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class CreditPackageModel(BaseModel):
    package: CreditPackage
    credits: int
    amount_cents: int
    currency: str
    description: str


class PurchaseModel(BaseModel):
    purchase_id: UUID
    payment_intent_id: str
    client_secret: str | None
    package: CreditPackage
    credits: int
    amount_cents: int
    status: PurchaseStatus
