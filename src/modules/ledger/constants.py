"""Model pricing tables for the playground."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class ModelName(str, Enum):
    SONNET = "sonnet"
    OPUS = "opus"
    GPT_4O = "gpt-4o"
    GPT_4O_MINI = "gpt-4o-mini"
    GPT_4_TURBO = "gpt-4-turbo"


DEFAULT_MODEL = ModelName.SONNET

# Credit multipliers keep the realized margin in band across request sizes
MODEL_MULTIPLIERS: dict[str, Decimal] = {
    ModelName.GPT_4O_MINI.value: Decimal("0.5"),
    ModelName.SONNET.value: Decimal("1.0"),
    ModelName.GPT_4O.value: Decimal("2.0"),
    ModelName.GPT_4_TURBO.value: Decimal("2.0"),
    ModelName.OPUS.value: Decimal("5.0"),
}


@dataclass(frozen=True)
class ModelPricing:
    """Provider list price in USD per million tokens."""

    input_per_million: Decimal
    output_per_million: Decimal


MODEL_PRICING: dict[str, ModelPricing] = {
    ModelName.SONNET.value: ModelPricing(Decimal("3.0"), Decimal("15.0")),
    ModelName.OPUS.value: ModelPricing(Decimal("15.0"), Decimal("75.0")),
    ModelName.GPT_4O.value: ModelPricing(Decimal("5.0"), Decimal("20.0")),
    ModelName.GPT_4O_MINI.value: ModelPricing(Decimal("0.6"), Decimal("2.4")),
    ModelName.GPT_4_TURBO.value: ModelPricing(Decimal("10.0"), Decimal("30.0")),
}

# Token counts are reported as a single total; assume this input share
INPUT_TOKEN_SHARE = Decimal("0.6")
USD_QUANTUM = Decimal("0.000001")
