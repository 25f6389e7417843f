"""Battery ledger, plan and billing event models."""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    """Kinds of balance transactions."""

    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    BONUS = "bonus"
    REFUND = "refund"
    USAGE = "usage"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class UserTier(str, Enum):
    FREE = "free"
    PAID = "paid"


class ModelTier(str, Enum):
    """Price tier of an AI model."""

    BUDGET = "budget"
    MID = "mid"
    PREMIUM = "premium"
    ULTRA = "ultra"


class PlanId(str, Enum):
    """Subscription plans in the catalog."""

    STARTER = "starter"
    DAILY = "daily"
    POWER = "power"
    ULTIMATE = "ultimate"


class BillingEventType(str, Enum):
    """Gateway events the subscription state machine consumes."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class CheckoutMode(str, Enum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class EventOutcome(str, Enum):
    """What happened to a billing event."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SKIPPED = "skipped"


ACTIVE_SUBSCRIPTION_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class ModelPricing(BaseModel):
    """Price table entry for one model."""

    battery_per_k_token: float = Field(gt=0)
    estimated_per_message: float = Field(ge=0)
    tier: ModelTier
    display_name: str


class Plan(BaseModel, frozen=True):
    """Subscription plan definition."""

    id: PlanId
    name: str
    total_battery_per_month: int = Field(ge=0)
    daily_battery: int = Field(ge=0)
    price_monthly: float
    price_annual: float
    features: tuple[str, ...] = ()


class BatteryTopUp(BaseModel, frozen=True):
    """One-off battery pack."""

    units: int = Field(gt=0)
    price: float
    label: str


# ---------------------------------------------------------------------------
# Ledger state
# ---------------------------------------------------------------------------


class UserBalance(BaseModel):
    """Persisted battery balance for a user."""

    user_id: str
    total_balance: int = Field(default=0, ge=0)
    daily_allowance: int = Field(default=0, ge=0)
    last_daily_reset: date
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BalanceTransaction(BaseModel, frozen=True):
    """Append-only ledger entry."""

    id: str
    user_id: str
    type: TransactionType
    amount: int
    balance_after: int = Field(ge=0)
    description: str
    created_at: datetime
    external_payment_ref: str | None = None
    details: dict[str, str] = Field(default_factory=dict)


class DailyUsageSummary(BaseModel):
    """Usage aggregate for one user and day."""

    user_id: str
    date: date
    total_credits_used: int = Field(default=0, ge=0)
    total_messages: int = Field(default=0, ge=0)
    models_used: dict[str, int] = Field(default_factory=dict)

    def top_models(self, limit: int = 3) -> list[tuple[str, int]]:
        """Most used models of the day, highest count first."""
        ranked = sorted(self.models_used.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]


class Subscription(BaseModel):
    """Current subscription for a user (one row per user)."""

    user_id: str
    plan_id: PlanId
    external_customer_ref: str | None = None
    external_subscription_ref: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Inbound feeds
# ---------------------------------------------------------------------------


class UsageRecord(BaseModel):
    """One completed AI call reported by the request pipeline."""

    user_id: str
    conversation_id: str
    message_id: str
    model: str = Field(min_length=1)
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    cached: bool = False


class BillingEvent(BaseModel):
    """Gateway event normalized for the subscription state machine."""

    event_id: str | None = None
    type: BillingEventType
    user_id: str | None = None
    plan_id: str | None = None
    price_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    status: SubscriptionStatus | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    billing_interval: BillingInterval | None = None
    checkout_mode: CheckoutMode | None = None
    battery_units: int | None = None
    payment_ref: str | None = None
    billing_reason: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class BalanceCheck(BaseModel):
    """Pre-flight balance check for an AI call."""

    has_balance: bool
    current_balance: int
    estimated_cost: int
    daily_allowance: int


class LedgerResult(BaseModel):
    """Outcome of a debit or credit."""

    user_id: str
    new_balance: int
    transaction: BalanceTransaction


class UsageResult(BaseModel):
    """Outcome of tracking one AI call."""

    battery_used: int
    new_balance: int | None = None


class ResetResult(BaseModel):
    """Outcome of a daily allowance run."""

    date: date
    users_checked: int = 0
    users_updated: int = 0


class EventResult(BaseModel):
    """Outcome of handling one billing event."""

    event_id: str | None = None
    event_type: BillingEventType
    outcome: EventOutcome
    user_id: str | None = None
    credited: int = 0
