"""Cost estimation from token usage and model pricing.

Provides a static pricing table for the models the coach backend calls
and a function to estimate the USD cost of one request from its prompt
and completion token counts.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    """Pricing per 1000 tokens for a single model."""

    input_per_1k: float
    output_per_1k: float


# Static pricing table. Prices are in USD per 1000 tokens.
PRICING_TABLE: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(input_per_1k=0.0025, output_per_1k=0.01),
    "gpt-4o-mini": ModelPricing(input_per_1k=0.00015, output_per_1k=0.0006),
    "gpt-4.1": ModelPricing(input_per_1k=0.0025, output_per_1k=0.01),
    "text-embedding-3-small": ModelPricing(input_per_1k=0.00002, output_per_1k=0.0),
    "claude-sonnet-4-5": ModelPricing(input_per_1k=0.003, output_per_1k=0.015),
    "claude-haiku-4-5": ModelPricing(input_per_1k=0.001, output_per_1k=0.005),
}

# Aliases for dated model versions that share pricing with their base model.
MODEL_ALIASES: dict[str, str] = {
    "gpt-4.1-2025-04-14": "gpt-4.1",
    "gpt-4o-2024-08-06": "gpt-4o",
    "gpt-4o-mini-2024-07-18": "gpt-4o-mini",
    "claude-sonnet-4-5-20250929": "claude-sonnet-4-5",
    "claude-haiku-4-5-20251001": "claude-haiku-4-5",
}


def estimate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> float | None:
    """Estimate the USD cost of one request based on token usage.

    Looks up the model in the pricing table (resolving aliases first),
    then calculates: (prompt_tokens / 1000 * input_price)
    + (completion_tokens / 1000 * output_price).

    Args:
        model: The model name (e.g., "gpt-4o-mini").
        prompt_tokens: Number of input/prompt tokens.
        completion_tokens: Number of output/completion tokens.

    Returns:
        Estimated cost in USD rounded to 6 decimal places,
        or None if the model is not in the pricing table.
    """
    resolved = MODEL_ALIASES.get(model, model)

    pricing = PRICING_TABLE.get(resolved)
    if pricing is None:
        return None

    cost = (
        (prompt_tokens / 1000) * pricing.input_per_1k
        + (completion_tokens / 1000) * pricing.output_per_1k
    )

    return round(cost, 6)
