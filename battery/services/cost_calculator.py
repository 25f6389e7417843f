"""
Deterministic battery cost calculator.

Pure function: calculate_battery_usage(model, input_tokens, output_tokens, cached) -> int.
No I/O. Derives costs from MODEL_BATTERY_USAGE.

Pricing rules:
  provider model id → normalized price key (normalize_model_id)
  cached=True and a "<key>-cached" entry exists → cached rate
  key not in the table → DEFAULT_BATTERY_PER_K_TOKEN (metering never blocks)
  cost = ceil(total_tokens / 1000 * rate), so any nonzero usage costs >= 1 BU
"""

import math

import structlog

from battery.constants import (
    CACHED_SUFFIX,
    CLAUDE_MODEL_ALIASES,
    DEFAULT_BATTERY_PER_K_TOKEN,
    GEMINI_FAMILIES,
    MODEL_BATTERY_USAGE,
    TOKENS_PER_K,
)
from battery.models.billing import ModelPricing

logger = structlog.get_logger(__name__)


def normalize_model_id(model_id: str) -> str:
    """Map a provider model id to its price table key.

    e.g. ``claude-3-5-haiku-20241022`` → ``claude-haiku-3.5``,
    ``gemini-2-5-pro-preview`` → ``gemini-2.5-pro``. Ids with no known alias
    are returned unchanged.
    """
    if model_id.startswith("claude-"):
        for fragments, key in CLAUDE_MODEL_ALIASES:
            if all(fragment in model_id for fragment in fragments):
                return key
        return model_id

    for family in GEMINI_FAMILIES:
        if family in model_id or family.replace(".", "-") in model_id:
            return family

    if "deepseek-chat" in model_id:
        return "deepseek-chat"

    return model_id


def _price_key(model: str, cached: bool) -> str:
    key = normalize_model_id(model)
    if cached and f"{key}{CACHED_SUFFIX}" in MODEL_BATTERY_USAGE:
        return f"{key}{CACHED_SUFFIX}"
    return key


def resolve_pricing(model: str, cached: bool = False) -> ModelPricing | None:
    """Price table entry for ``model``, or None when it is not listed."""
    return MODEL_BATTERY_USAGE.get(_price_key(model, cached))


def battery_rate(
    model: str,
    cached: bool = False,
    default_rate: float = DEFAULT_BATTERY_PER_K_TOKEN,
) -> float:
    """BU per 1K tokens for ``model``; unknown models get ``default_rate``."""
    pricing = resolve_pricing(model, cached)
    if pricing is None:
        logger.warning(
            "battery_pricing_unknown_model",
            model=model,
            price_key=_price_key(model, cached),
            default_rate=default_rate,
        )
        return default_rate
    return pricing.battery_per_k_token


def calculate_battery_usage(
    model: str,
    input_tokens: int,
    output_tokens: int,
    cached: bool = False,
    default_rate: float = DEFAULT_BATTERY_PER_K_TOKEN,
) -> int:
    """Integer battery cost of one AI call. Always rounds up.

    Raises:
        ValueError: If a token count is negative.
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts must be non-negative")

    total_tokens = input_tokens + output_tokens
    if total_tokens == 0:
        return 0

    rate = battery_rate(model, cached, default_rate)
    cost = math.ceil(total_tokens * rate / TOKENS_PER_K)
    return max(1, cost)


def estimate_cost(
    model: str,
    estimated_tokens: int,
    default_rate: float = DEFAULT_BATTERY_PER_K_TOKEN,
) -> int:
    """Pre-flight estimate assuming a 50/50 input/output split."""
    half = estimated_tokens // 2
    return calculate_battery_usage(model, half, half, cached=False, default_rate=default_rate)


def estimate_remaining_messages(battery_units: int) -> dict[str, int]:
    """Average messages ``battery_units`` covers, per priced model."""
    estimates: dict[str, int] = {}
    for key, pricing in MODEL_BATTERY_USAGE.items():
        if pricing.estimated_per_message > 0:
            estimates[key] = math.floor(battery_units / pricing.estimated_per_message)
    return estimates
