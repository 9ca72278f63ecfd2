"""
Pricing calculations.

Converts token usage into monetary cost using fixed per-1000-token rates.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Union

from .token_counter import TokenUsage

# Costs are carried to the micro-dollar; anything finer is rounded up.
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class TokenPricing:
    """Per-token pricing for the backing model."""
    input_cost_per_1k: Decimal = Decimal("0.0010")
    output_cost_per_1k: Decimal = Decimal("0.0020")

    def __post_init__(self):
        """Validate prices are non-negative."""
        if self.input_cost_per_1k < 0:
            raise ValueError("input_cost_per_1k cannot be negative")
        if self.output_cost_per_1k < 0:
            raise ValueError("output_cost_per_1k cannot be negative")


def to_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    """Convert a configured amount to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_cost(usage: TokenUsage, pricing: TokenPricing) -> Decimal:
    """Calculate total cost for token usage with conservative rounding.

    Args:
        usage: Token usage data
        pricing: Per-1000-token prices

    Returns:
        Total cost rounded UP to the micro-dollar
    """
    # (tokens / 1000) * cost_per_1k
    input_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.input_cost_per_1k
    output_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.output_cost_per_1k

    total_cost = input_cost + output_cost
    return total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)
