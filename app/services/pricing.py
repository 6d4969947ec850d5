"""
Token Pricing - Static model pricing table.

Provider cost per 1k tokens (USD) plus a markup multiplier per model.
Pure functions, no state.
"""

from dataclasses import dataclass
from decimal import Decimal

_ONE_THOUSAND = Decimal("1000")
DEFAULT_MARKUP = Decimal("2.5")


@dataclass(frozen=True)
class ModelPricing:
    """Provider cost per 1k tokens and the markup applied on top."""

    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal
    thinking_cost_per_1k: Decimal | None = None
    markup_multiplier: Decimal = DEFAULT_MARKUP


def _pricing(
    input_cost: str, output_cost: str, thinking_cost: str | None = None
) -> ModelPricing:
    return ModelPricing(
        input_cost_per_1k=Decimal(input_cost),
        output_cost_per_1k=Decimal(output_cost),
        thinking_cost_per_1k=Decimal(thinking_cost) if thinking_cost is not None else None,
    )


# Approximate provider pricing; update alongside provider price changes
MODEL_PRICING: dict[str, ModelPricing] = {
    # OpenAI
    "gpt-5.2-2025-12-11": _pricing("0.01", "0.03"),
    "gpt-5.2-thinking-2025-12-11": _pricing("0.01", "0.03", "0.02"),
    "gpt-5.1-2025-11-13": _pricing("0.01", "0.03"),
    "gpt-5-mini-2025-08-07": _pricing("0.002", "0.006"),
    "gpt-5-nano-2025-08-07": _pricing("0.001", "0.003"),
    "gpt-4.1-2025-04-14": _pricing("0.01", "0.03"),
    "gpt-4o-2024-08-06": _pricing("0.005", "0.015"),
    "gpt-4o-mini-2024-07-18": _pricing("0.00015", "0.0006"),
    # Anthropic
    "claude-sonnet-4-5-20250929": _pricing("0.003", "0.015"),
    "claude-sonnet-4-5-thinking-20250929": _pricing("0.003", "0.015", "0.01"),
    "claude-haiku-4-5-20251001": _pricing("0.00025", "0.00125"),
    "claude-opus-4-5-20251101": _pricing("0.015", "0.075"),
    "claude-opus-4-5-thinking-20251101": _pricing("0.015", "0.075", "0.05"),
    # xAI
    "grok-4-1-fast-reasoning": _pricing("0.002", "0.008", "0.005"),
    "grok-4-1-fast-non-reasoning": _pricing("0.002", "0.008"),
    # Google
    "gemini-3-pro-preview": _pricing("0.00125", "0.005", "0.003"),
    "gemini-2.5-flash": _pricing("0.000075", "0.0003"),
    "gemini-2.5-pro": _pricing("0.00125", "0.005", "0.003"),
    "gemini-2.5-flash-lite": _pricing("0.0000375", "0.00015"),
}

# Used for models missing from the table; no thinking rate
DEFAULT_PRICING = _pricing("0.01", "0.03")


def get_pricing_config(model: str) -> ModelPricing | None:
    """Get pricing configuration for a model, or None if unknown."""
    return MODEL_PRICING.get(model)


def calculate_token_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    thinking_tokens: int = 0,
) -> Decimal:
    """
    Calculate the user-facing cost of one turn in USD.

    Each token kind costs (tokens / 1000) x provider cost x markup. Thinking
    tokens are free for models without a thinking rate. Unknown models fall
    back to DEFAULT_PRICING.

    Raises:
        ValueError: If any token count is negative
    """
    if input_tokens < 0 or output_tokens < 0 or thinking_tokens < 0:
        raise ValueError(
            f"Token counts cannot be negative: input={input_tokens}, "
            f"output={output_tokens}, thinking={thinking_tokens}"
        )

    pricing = MODEL_PRICING.get(model, DEFAULT_PRICING)
    markup = pricing.markup_multiplier

    input_cost = Decimal(input_tokens) / _ONE_THOUSAND * pricing.input_cost_per_1k * markup
    output_cost = Decimal(output_tokens) / _ONE_THOUSAND * pricing.output_cost_per_1k * markup
    thinking_cost = Decimal("0")
    if pricing.thinking_cost_per_1k is not None:
        thinking_cost = (
            Decimal(thinking_tokens) / _ONE_THOUSAND * pricing.thinking_cost_per_1k * markup
        )

    return input_cost + output_cost + thinking_cost
