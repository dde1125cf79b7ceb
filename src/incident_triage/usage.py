"""Token usage accounting and cost estimates."""
import math
from typing import Iterable

from .models import TokenUsage


# USD per million tokens
COST_PER_MILLION_INPUT_TOKENS_USD = {
    "claude-haiku-4-5": 1.00,
    "claude-sonnet-4-5": 3.00,
    "DEFAULT": 3.00,
}

COST_PER_MILLION_OUTPUT_TOKENS_USD = {
    "claude-haiku-4-5": 5.00,
    "claude-sonnet-4-5": 15.00,
    "DEFAULT": 15.00,
}

USD_TO_BRL_RATE = 5.6


def percentage(part: int, total: int) -> int:
    """Whole percentage of part in total, halves rounded up."""
    if total <= 0:
        return 0
    return round_half_up(part / total * 100)


def sum_usage(usages: Iterable[TokenUsage | None]) -> TokenUsage:
    """Component-wise sum, skipping missing entries."""
    total = TokenUsage()
    for usage in usages:
        if usage is not None:
            total = total + usage
    return total


def calculate_token_cost(usage: TokenUsage, model_id: str) -> tuple[float, float]:
    """Estimated cost of the usage as (USD, BRL)."""
    input_rate = COST_PER_MILLION_INPUT_TOKENS_USD.get(
        model_id, COST_PER_MILLION_INPUT_TOKENS_USD["DEFAULT"]
    )
    output_rate = COST_PER_MILLION_OUTPUT_TOKENS_USD.get(
        model_id, COST_PER_MILLION_OUTPUT_TOKENS_USD["DEFAULT"]
    )

    cost_usd = (
        usage.prompt_tokens / 1_000_000 * input_rate
        + usage.completion_tokens / 1_000_000 * output_rate
    )
    return cost_usd, cost_usd * USD_TO_BRL_RATE


def round_half_up(value: float) -> int:
    """Round like JavaScript Math.round for non-negative values."""
    return math.floor(value + 0.5)
