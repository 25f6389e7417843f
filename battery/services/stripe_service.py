"""Stripe API wrapper: webhook verification and event normalization."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from battery.config import StripeConfig
from battery.models.billing import (
    BillingEvent,
    BillingEventType,
    BillingInterval,
    CheckoutMode,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)

# Stripe statuses outside our lifecycle, folded onto the nearest state
_STATUS_ALIASES = {
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

_RECURRING_INTERVALS = {
    "month": BillingInterval.MONTHLY,
    "year": BillingInterval.ANNUAL,
}


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _as_dict(obj: dict | Any) -> dict:
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


def _metadata_value(metadata: dict | None, *keys: str) -> str | None:
    for key in keys:
        value = (metadata or {}).get(key)
        if value:
            return str(value)
    return None


def _parse_status(raw: str | None) -> SubscriptionStatus | None:
    if not raw:
        return None
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        pass
    if raw in _STATUS_ALIASES:
        return _STATUS_ALIASES[raw]
    logger.warning("stripe_unknown_subscription_status", status=raw)
    return None


def _parse_units(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("stripe_invalid_battery_units", battery_units=raw)
        return None


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


class StripeService:
    """Encapsulates Stripe SDK calls used by the billing routes."""

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        """Check the signature and parse the event.

        Raises:
            ValueError: If the webhook secret or the signature header is missing,
                or the payload is not valid JSON.
            stripe.SignatureVerificationError: If the signature does not match.
        """
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _as_dict(event)

    async def fetch_subscription(self, subscription_id: str) -> dict:
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        return _as_dict(subscription)

    # -----------------------------------------------------------------------
    # Normalization
    # -----------------------------------------------------------------------

    def billing_event_from_stripe(self, event: dict) -> BillingEvent | None:
        """Normalize a verified Stripe event; None for types we do not consume."""
        try:
            event_type = BillingEventType(event.get("type"))
        except ValueError:
            return None

        obj = _as_dict(event.get("data", {}).get("object", {}))
        event_id = event.get("id")

        match event_type:
            case BillingEventType.CHECKOUT_COMPLETED:
                return self._from_checkout_session(event_id, obj)
            case (
                BillingEventType.SUBSCRIPTION_CREATED
                | BillingEventType.SUBSCRIPTION_UPDATED
                | BillingEventType.SUBSCRIPTION_DELETED
            ):
                return self._from_subscription(event_id, event_type, obj)
            case (
                BillingEventType.INVOICE_PAYMENT_SUCCEEDED
                | BillingEventType.INVOICE_PAYMENT_FAILED
            ):
                return self._from_invoice(event_id, event_type, obj)

    def _from_checkout_session(self, event_id: str | None, session: dict) -> BillingEvent:
        metadata = session.get("metadata") or {}
        mode = session.get("mode")
        return BillingEvent(
            event_id=event_id,
            type=BillingEventType.CHECKOUT_COMPLETED,
            user_id=_metadata_value(metadata, "userId", "user_id")
            or session.get("client_reference_id"),
            plan_id=_metadata_value(metadata, "planId", "plan_id"),
            subscription_id=session.get("subscription"),
            customer_id=session.get("customer"),
            checkout_mode=CheckoutMode(mode) if mode in {m.value for m in CheckoutMode} else None,
            battery_units=_parse_units(_metadata_value(metadata, "batteryUnits", "battery_units")),
            payment_ref=session.get("payment_intent") or session.get("id"),
        )

    def _subscription_fields(self, subscription: dict) -> dict[str, Any]:
        item = _first_item(subscription)
        price = item.get("price") or {}
        price_id = price.get("id")
        recurring = (price.get("recurring") or {}).get("interval")
        metadata = subscription.get("metadata") or {}

        # Newer API versions moved the billing period onto the subscription items
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")

        return {
            "user_id": _metadata_value(metadata, "userId", "user_id"),
            "plan_id": _metadata_value(metadata, "planId", "plan_id"),
            "price_id": price_id,
            "subscription_id": subscription.get("id"),
            "customer_id": subscription.get("customer"),
            "status": _parse_status(subscription.get("status")),
            "current_period_start": _to_datetime(period_start),
            "current_period_end": _to_datetime(period_end),
            "cancel_at": _to_datetime(subscription.get("cancel_at")),
            "canceled_at": _to_datetime(subscription.get("canceled_at")),
            "billing_interval": _RECURRING_INTERVALS.get(recurring),
        }

    def _from_subscription(
        self, event_id: str | None, event_type: BillingEventType, subscription: dict
    ) -> BillingEvent:
        return BillingEvent(
            event_id=event_id,
            type=event_type,
            **self._subscription_fields(subscription),
        )

    def _from_invoice(
        self, event_id: str | None, event_type: BillingEventType, invoice: dict
    ) -> BillingEvent:
        details = invoice.get("subscription_details") or (
            (invoice.get("parent") or {}).get("subscription_details") or {}
        )
        subscription_id = invoice.get("subscription") or details.get("subscription")

        lines = (invoice.get("lines") or {}).get("data") or []
        period = (lines[0].get("period") or {}) if lines else {}

        return BillingEvent(
            event_id=event_id,
            type=event_type,
            user_id=_metadata_value(details.get("metadata"), "userId", "user_id"),
            subscription_id=subscription_id,
            customer_id=invoice.get("customer"),
            current_period_start=_to_datetime(period.get("start")),
            current_period_end=_to_datetime(period.get("end")),
            payment_ref=invoice.get("payment_intent") or invoice.get("id"),
            billing_reason=invoice.get("billing_reason"),
        )

    async def enrich_checkout_event(self, event: BillingEvent) -> BillingEvent:
        """Fill a subscription checkout with the live subscription's plan and period."""
        if event.type != BillingEventType.CHECKOUT_COMPLETED or not event.subscription_id:
            return event
        if event.checkout_mode == CheckoutMode.PAYMENT:
            return event

        subscription = await self.fetch_subscription(event.subscription_id)
        fields = self._subscription_fields(subscription)
        return event.model_copy(
            update={
                "user_id": event.user_id or fields["user_id"],
                "plan_id": event.plan_id or fields["plan_id"],
                "price_id": fields["price_id"],
                "status": fields["status"],
                "current_period_start": fields["current_period_start"],
                "current_period_end": fields["current_period_end"],
                "cancel_at": fields["cancel_at"],
                "billing_interval": fields["billing_interval"],
            }
        )
