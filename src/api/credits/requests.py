"""Credits domain requests and responses."""

from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from src.api.core.messages import APIResponse, Paginated
from src.database.models import CreditPackage
from src.modules.ledger.constants import DEFAULT_MODEL
from .models import (
    BalanceModel,
    CostAlertModel,
    CorrectionModel,
    CreditPackageModel,
    EstimateModel,
    PurchaseModel,
    SpendModel,
    ThrottleStatusModel,
    TransactionModel,
)


class EstimateRequest(BaseModel):
    model: str = DEFAULT_MODEL.value
    estimated_tokens: int = Field(ge=0)


class SpendRequest(BaseModel):
    """Either an explicit `cost`, or `estimated_tokens` to be quoted and charged."""

    account_id: UUID
    cost: int | None = Field(default=None, gt=0)
    correlation_id: str = Field(min_length=1, max_length=255)
    model: str | None = None
    estimated_tokens: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def require_cost_or_estimate(self) -> "SpendRequest":
        if self.cost is None and self.estimated_tokens is None:
            raise ValueError("Either cost or estimated_tokens is required")
        return self


class CorrectRequest(BaseModel):
    correlation_id: str = Field(min_length=1, max_length=255)
    actual_tokens: int = Field(ge=0)


class OpenAccountRequest(BaseModel):
    account_id: UUID


class PurchaseRequest(BaseModel):
    package: CreditPackage


# Response Models
EstimateResponse = APIResponse[EstimateModel]
SpendResponse = APIResponse[SpendModel]
CorrectionResponse = APIResponse[CorrectionModel]
BalanceResponse = APIResponse[BalanceModel]
TransactionHistoryResponse = APIResponse[Paginated[TransactionModel]]
ThrottleStatusResponse = APIResponse[ThrottleStatusModel]
CreditPackagesResponse = APIResponse[list[CreditPackageModel]]
PurchaseResponse = APIResponse[PurchaseModel]
CostAlertsResponse = APIResponse[list[CostAlertModel]]
