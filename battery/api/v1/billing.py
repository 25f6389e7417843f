"""Billing API endpoints."""

import stripe
import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

from battery.auth import CurrentUser
from battery.constants import BATTERY_TOPUPS
from battery.models.billing import (
    BatteryTopUp,
    EventOutcome,
    Plan,
    Subscription,
    UserTier,
)
from battery.services.ledger import BatteryLedger
from battery.services.plan_catalog import get_plan, list_plans
from battery.services.stripe_service import StripeService
from battery.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class SubscriptionResponse(BaseModel):
    """Current subscription with its catalog plan."""

    subscription: Subscription
    plan: Plan
    tier: UserTier | None = None


class PlansResponse(BaseModel):
    """Plan catalog and one-off battery packs."""

    plans: list[Plan]
    topups: list[BatteryTopUp]


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool
    outcome: EventOutcome | None = None


def _get_ledger(request: Request) -> BatteryLedger:
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(status_code=503, detail="Battery ledger unavailable")
    return ledger


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe not configured")
    return service


@router.get("/subscription", response_model=SubscriptionResponse)
async def current_subscription(request: Request, user: CurrentUser) -> SubscriptionResponse:
    """Return the authenticated user's subscription."""
    ledger = _get_ledger(request)
    subscription = await ledger.store.get_subscription(user.id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="No subscription found")

    return SubscriptionResponse(
        subscription=subscription,
        plan=get_plan(subscription.plan_id),
        tier=await ledger.store.get_user_tier(user.id),
    )


@router.get("/plans", response_model=PlansResponse)
async def plans() -> PlansResponse:
    """Public plan catalog."""
    return PlansResponse(plans=list_plans(), topups=list(BATTERY_TOPUPS))


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify a Stripe webhook and apply it to subscriptions and balances.

    Storage failures are not caught: the 500 makes Stripe redeliver.
    """
    subscription_service = _get_subscription_service(request)
    stripe_service = _get_stripe_service(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    if not event_id:
        raise HTTPException(status_code=400, detail="Stripe event has no id")

    billing_event = stripe_service.billing_event_from_stripe(event)
    if billing_event is None:
        logger.info("stripe_webhook_unhandled_type", event_id=event_id, event_type=event_type)
        return WebhookResponse(received=True, processed=False)

    billing_event = await stripe_service.enrich_checkout_event(billing_event)
    result = await subscription_service.handle_event(billing_event)

    logger.info(
        "stripe_webhook_processed",
        event_id=event_id,
        event_type=event_type,
        outcome=result.outcome.value,
    )
    return WebhookResponse(
        received=True,
        processed=result.outcome == EventOutcome.PROCESSED,
        outcome=result.outcome,
    )
