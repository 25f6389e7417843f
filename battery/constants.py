"""
Business constants for the battery ledger.

Price table and plan catalog are stable across environments and do not need
env-var overrides. Stripe price ids and operational knobs (default plan,
reset interval, concurrency) live in config.py.

1 Battery Unit (BU) = $0.001. Model rates include the provider cost plus
markup and a safety buffer.
"""

from battery.models.billing import (
    BatteryTopUp,
    ModelPricing,
    ModelTier,
    Plan,
    PlanId,
)

API_TITLE = "Battery Ledger API"
API_VERSION = "0.1.0"

# --- Pricing fallbacks ---
DEFAULT_BATTERY_PER_K_TOKEN = 10.0  # Unknown models, never free
DEFAULT_ESTIMATED_TOKENS = 500      # Pre-flight estimate when the caller gives none
TOKENS_PER_K = 1000

# Suffix of the cached-prompt variant of a price table key
CACHED_SUFFIX = "-cached"

# Models served from the local Ollama runtime are not metered
FREE_MODEL_PREFIXES: tuple[str, ...] = ("ollama/",)

# --- Model price table ---
MODEL_BATTERY_USAGE: dict[str, ModelPricing] = {
    # Budget
    "deepseek-chat": ModelPricing(
        battery_per_k_token=2.23, estimated_per_message=0.56,
        tier=ModelTier.BUDGET, display_name="DeepSeek Chat",
    ),
    "deepseek-chat-cached": ModelPricing(
        battery_per_k_token=1.91, estimated_per_message=0.48,
        tier=ModelTier.BUDGET, display_name="DeepSeek Chat (Cached)",
    ),
    "gpt-4.1-nano": ModelPricing(
        battery_per_k_token=0.82, estimated_per_message=0.21,
        tier=ModelTier.BUDGET, display_name="GPT-4.1 Nano",
    ),
    "gpt-4o-mini": ModelPricing(
        battery_per_k_token=1.22, estimated_per_message=0.31,
        tier=ModelTier.BUDGET, display_name="GPT-4o Mini",
    ),
    "gemini-1.5-flash": ModelPricing(
        battery_per_k_token=0.61, estimated_per_message=0.16,
        tier=ModelTier.BUDGET, display_name="Gemini Flash",
    ),
    "gemini-2.0-flash": ModelPricing(
        battery_per_k_token=0.82, estimated_per_message=0.21,
        tier=ModelTier.BUDGET, display_name="Gemini 2.0 Flash",
    ),
    "gemini-2.5-flash": ModelPricing(
        battery_per_k_token=1.22, estimated_per_message=0.31,
        tier=ModelTier.BUDGET, display_name="Gemini 2.5 Flash",
    ),
    # Mid
    "gpt-4.1-mini": ModelPricing(
        battery_per_k_token=3.25, estimated_per_message=0.82,
        tier=ModelTier.MID, display_name="GPT-4.1 Mini",
    ),
    "gpt-4o": ModelPricing(
        battery_per_k_token=20.32, estimated_per_message=5.08,
        tier=ModelTier.MID, display_name="GPT-4o",
    ),
    "grok-3-mini": ModelPricing(
        battery_per_k_token=1.3, estimated_per_message=0.33,
        tier=ModelTier.MID, display_name="Grok 3 Mini",
    ),
    "claude-haiku-3.5": ModelPricing(
        battery_per_k_token=7.8, estimated_per_message=1.95,
        tier=ModelTier.MID, display_name="Claude Haiku 3.5",
    ),
    "claude-sonnet-3.5": ModelPricing(
        battery_per_k_token=29.25, estimated_per_message=7.32,
        tier=ModelTier.MID, display_name="Claude Sonnet 3.5",
    ),
    "claude-sonnet-3": ModelPricing(
        battery_per_k_token=29.25, estimated_per_message=7.32,
        tier=ModelTier.MID, display_name="Claude Sonnet 3",
    ),
    # Premium
    "gpt-4.1": ModelPricing(
        battery_per_k_token=16.25, estimated_per_message=4.07,
        tier=ModelTier.PREMIUM, display_name="GPT-4.1",
    ),
    "o3-mini": ModelPricing(
        battery_per_k_token=8.94, estimated_per_message=2.24,
        tier=ModelTier.PREMIUM, display_name="OpenAI o3 Mini",
    ),
    "gemini-1.5-pro": ModelPricing(
        battery_per_k_token=10.16, estimated_per_message=2.54,
        tier=ModelTier.PREMIUM, display_name="Gemini Pro",
    ),
    "gemini-2.5-pro": ModelPricing(
        battery_per_k_token=18.29, estimated_per_message=4.58,
        tier=ModelTier.PREMIUM, display_name="Gemini 2.5 Pro",
    ),
    "grok-3": ModelPricing(
        battery_per_k_token=29.25, estimated_per_message=7.32,
        tier=ModelTier.PREMIUM, display_name="Grok 3",
    ),
    "claude-opus-3": ModelPricing(
        battery_per_k_token=146.25, estimated_per_message=36.57,
        tier=ModelTier.PREMIUM, display_name="Claude Opus 3",
    ),
    # Ultra
    "claude-sonnet-4": ModelPricing(
        battery_per_k_token=29.25, estimated_per_message=7.32,
        tier=ModelTier.ULTRA, display_name="Claude Sonnet",
    ),
    "claude-opus-4": ModelPricing(
        battery_per_k_token=146.25, estimated_per_message=36.57,
        tier=ModelTier.ULTRA, display_name="Claude Opus",
    ),
    "o3": ModelPricing(
        battery_per_k_token=16.25, estimated_per_message=4.07,
        tier=ModelTier.ULTRA, display_name="OpenAI o3",
    ),
    # Local models: server cost only
    "llama3.3:latest": ModelPricing(
        battery_per_k_token=0.1, estimated_per_message=0.025,
        tier=ModelTier.BUDGET, display_name="Llama 3.3 (Local)",
    ),
    "qwen2.5:latest": ModelPricing(
        battery_per_k_token=0.1, estimated_per_message=0.025,
        tier=ModelTier.BUDGET, display_name="Qwen 2.5 (Local)",
    ),
}

# --- Claude id fragments → price key (first match wins, order matters) ---
CLAUDE_MODEL_ALIASES: list[tuple[tuple[str, ...], str]] = [
    (("haiku", "3-5"), "claude-haiku-3.5"),
    (("opus-4",), "claude-opus-4"),
    (("sonnet-4",), "claude-sonnet-4"),
    (("3-7-sonnet",), "claude-sonnet-4"),  # priced as Sonnet 4
    (("3-5-sonnet",), "claude-sonnet-3.5"),
    (("3-opus",), "claude-opus-3"),
    (("3-sonnet",), "claude-sonnet-3"),
]

# --- Gemini families; ids may use dashes or dots in the version ---
GEMINI_FAMILIES: tuple[str, ...] = (
    "gemini-1.5-flash",
    "gemini-1.5-pro",
    "gemini-2.0-flash",
    "gemini-2.5-flash",
    "gemini-2.5-pro",
)

# --- Subscription plans ---
ANNUAL_DISCOUNT = 0.2  # 20% off twelve monthly payments


def _annual_price(monthly: float) -> float:
    return round(monthly * 12 * (1 - ANNUAL_DISCOUNT), 2)


SUBSCRIPTION_PLANS: dict[PlanId, Plan] = {
    PlanId.STARTER: Plan(
        id=PlanId.STARTER,
        name="Starter",
        total_battery_per_month=6000,
        daily_battery=200,
        price_monthly=4.99,
        price_annual=_annual_price(4.99),
        features=(
            "200 battery units per day",
            "Rolls over unused daily battery",
            "All AI models",
        ),
    ),
    PlanId.DAILY: Plan(
        id=PlanId.DAILY,
        name="Daily",
        total_battery_per_month=18000,
        daily_battery=600,
        price_monthly=12.99,
        price_annual=_annual_price(12.99),
        features=(
            "600 battery units per day",
            "Rolls over unused daily battery",
            "Priority processing",
        ),
    ),
    PlanId.POWER: Plan(
        id=PlanId.POWER,
        name="Power",
        total_battery_per_month=45000,
        daily_battery=1500,
        price_monthly=29.99,
        price_annual=_annual_price(29.99),
        features=(
            "1,500 battery units per day",
            "Battery rollover",
            "Usage analytics",
        ),
    ),
    PlanId.ULTIMATE: Plan(
        id=PlanId.ULTIMATE,
        name="Ultimate",
        total_battery_per_month=150000,
        daily_battery=5000,
        price_monthly=79.99,
        price_annual=_annual_price(79.99),
        features=(
            "5,000 battery units per day",
            "Battery rollover",
            "Dedicated support",
        ),
    ),
}

# --- One-off battery packs ---
BATTERY_TOPUPS: list[BatteryTopUp] = [
    BatteryTopUp(units=1000, price=1.49, label="Quick Boost"),
    BatteryTopUp(units=5000, price=5.99, label="Week Pack"),
    BatteryTopUp(units=15000, price=14.99, label="Month Pack"),
    BatteryTopUp(units=50000, price=44.99, label="Mega Pack"),
]

# --- Subscription lifecycle ---
DEFAULT_PERIOD_DAYS = 30                      # When the gateway omits the period
RENEWAL_BILLING_REASON = "subscription_cycle"  # Only cycle invoices refill the battery
DAILY_ALLOWANCE_DESCRIPTION = "Daily battery allowance"
