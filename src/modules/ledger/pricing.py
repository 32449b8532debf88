"""Pure credit pricing for metered LLM executions."""

import math
from decimal import Decimal
from fractions import Fraction

from src.modules.ledger.constants import (
    DEFAULT_MODEL,
    INPUT_TOKEN_SHARE,
    MODEL_MULTIPLIERS,
    MODEL_PRICING,
    USD_QUANTUM,
    ModelPricing,
)
from src.modules.ledger.errors import RequestTooLarge, UnknownModel
from src.utils.settings.ledger import LedgerSettings


class PricingEngine:
    """Maps (token count, model) to a credit cost.

    Stateless apart from its configuration, so a single instance can be
    shared freely. The per-request token ceiling is enforced on quotes only;
    corrections from actual usage are priced without it.
    """

    def __init__(
        self,
        tokens_per_credit: int = 5000,
        max_tokens_per_request: int = 20000,
        multipliers: dict[str, Decimal] | None = None,
        pricing: dict[str, ModelPricing] | None = None,
    ):
        if tokens_per_credit <= 0:
            raise ValueError("tokens_per_credit must be positive")
        self.tokens_per_credit = tokens_per_credit
        self.max_tokens_per_request = max_tokens_per_request
        self.multipliers = multipliers if multipliers is not None else MODEL_MULTIPLIERS
        self.pricing = pricing if pricing is not None else MODEL_PRICING

    @classmethod
    def from_settings(cls, settings: LedgerSettings | None = None) -> "PricingEngine":
        settings = settings or LedgerSettings()
        return cls(
            tokens_per_credit=settings.TOKENS_PER_CREDIT,
            max_tokens_per_request=settings.MAX_TOKENS_PER_REQUEST,
        )

    @property
    def models(self) -> list[str]:
        return sorted(self.multipliers)

    def multiplier(self, model: str) -> Decimal:
        try:
            return self.multipliers[model]
        except KeyError:
            raise UnknownModel(
                details={"model": model, "supported_models": self.models}
            ) from None

    def quote(self, estimated_tokens: int, model: str = DEFAULT_MODEL.value) -> int:
        """Credit cost for an estimated request, rejecting oversized ones."""
        self._validate_tokens(estimated_tokens)
        if estimated_tokens > self.max_tokens_per_request:
            raise RequestTooLarge(
                details={
                    "estimated_tokens": estimated_tokens,
                    "max_tokens": self.max_tokens_per_request,
                }
            )
        return self._credits(estimated_tokens, model)

    def actual_cost(self, actual_tokens: int, model: str = DEFAULT_MODEL.value) -> int:
        """Credit cost for tokens actually consumed."""
        self._validate_tokens(actual_tokens)
        return self._credits(actual_tokens, model)

    def provider_cost_usd(
        self, tokens: int, model: str = DEFAULT_MODEL.value
    ) -> Decimal:
        """Real dollar cost charged by the model provider for `tokens`."""
        self._validate_tokens(tokens)
        try:
            pricing = self.pricing[model]
        except KeyError:
            raise UnknownModel(details={"model": model}) from None

        total = Decimal(tokens)
        input_tokens = total * INPUT_TOKEN_SHARE
        output_tokens = total - input_tokens
        cost = (
            input_tokens * pricing.input_per_million
            + output_tokens * pricing.output_per_million
        ) / Decimal(1_000_000)
        return cost.quantize(USD_QUANTUM)

    def _credits(self, tokens: int, model: str) -> int:
        # Exact arithmetic: float rounding must never push a cost over a boundary
        base = Fraction(tokens, self.tokens_per_credit)
        cost = math.ceil(base * Fraction(self.multiplier(model)))
        return max(cost, 1)

    @staticmethod
    def _validate_tokens(tokens: int) -> None:
        if tokens < 0:
            raise ValueError("token count must be non-negative")
