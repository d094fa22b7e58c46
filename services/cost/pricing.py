"""Per-model token pricing.

Prices are USD per one million tokens. Models missing from the table are
treated as free, which covers self-hosted Ollama models.
"""

import enum
from decimal import Decimal

from pydantic import BaseModel

TOKENS_PER_PRICE_UNIT = Decimal(1_000_000)


class CostUnit(str, enum.Enum):
    USD = "USD"


class ModelPrice(BaseModel):
    """Input and output price per million tokens."""

    model_config = {"frozen": True}

    input_price_per_million: Decimal
    output_price_per_million: Decimal


DEFAULT_PRICES: dict[str, ModelPrice] = {
    "gpt-4o": ModelPrice(
        input_price_per_million=Decimal("2.50"), output_price_per_million=Decimal("10.00")
    ),
    "gpt-4o-mini": ModelPrice(
        input_price_per_million=Decimal("0.15"), output_price_per_million=Decimal("0.60")
    ),
    "gpt-4.1": ModelPrice(
        input_price_per_million=Decimal("2.00"), output_price_per_million=Decimal("8.00")
    ),
    "gpt-4.1-mini": ModelPrice(
        input_price_per_million=Decimal("0.40"), output_price_per_million=Decimal("1.60")
    ),
}


class ModelPricer:
    """Converts token counts into a monetary cost."""

    def __init__(self, prices: dict[str, ModelPrice] | None = None) -> None:
        self._prices = dict(DEFAULT_PRICES if prices is None else prices)

    def get_price(self, model_id: str) -> ModelPrice | None:
        return self._prices.get(model_id)

    def set_price(self, model_id: str, price: ModelPrice) -> None:
        self._prices[model_id] = price

    def calculate_cost(self, model_id: str, input_tokens: int, output_tokens: int) -> Decimal:
        """Cost of one model call.

        Args:
            model_id: Model identifier as reported by the model client
            input_tokens: Prompt tokens
            output_tokens: Completion tokens

        Returns:
            Cost in USD, or zero for models without a price
        """
        price = self.get_price(model_id)
        if price is None:
            return Decimal(0)

        input_cost = Decimal(input_tokens) * price.input_price_per_million / TOKENS_PER_PRICE_UNIT
        output_cost = (
            Decimal(output_tokens) * price.output_price_per_million / TOKENS_PER_PRICE_UNIT
        )
        return input_cost + output_cost
