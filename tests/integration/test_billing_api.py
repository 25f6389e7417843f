"""Integration tests for billing API endpoints."""

from datetime import UTC, datetime

import pytest
import stripe

from battery.auth import AuthenticatedUser, get_current_user
from battery.config import BillingConfig
from battery.models.billing import (
    BillingEvent,
    BillingEventType,
    CheckoutMode,
    PlanId,
    Subscription,
    SubscriptionStatus,
    UserTier,
)
from battery.services.ledger import BatteryLedger
from battery.services.ledger_store import InMemoryBatteryStore
from battery.services.plan_catalog import PlanCatalog
from battery.services.subscription_service import SubscriptionService


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="user@example.com")


class FakeStripeService:
    """Returns canned events instead of talking to Stripe."""

    def __init__(self, event: dict):
        self.event = event
        self.enriched: list[BillingEvent] = []

    def verify_webhook_event(self, _payload, signature):
        if signature is None:
            raise ValueError("Missing Stripe-Signature header")
        if signature == "bad":
            raise stripe.SignatureVerificationError("bad signature", signature)
        return self.event

    def billing_event_from_stripe(self, event):
        if event["type"] != "checkout.session.completed":
            return None
        session = event["data"]["object"]
        return BillingEvent(
            event_id=event.get("id"),
            type=BillingEventType.CHECKOUT_COMPLETED,
            user_id=session["metadata"].get("userId"),
            checkout_mode=CheckoutMode.PAYMENT,
            battery_units=int(session["metadata"]["batteryUnits"]),
            payment_ref=session.get("payment_intent"),
        )

    async def enrich_checkout_event(self, event):
        self.enriched.append(event)
        return event


def _purchase_event(event_id: str | None = "evt_1") -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "payment_intent": "pi_1",
                "metadata": {"userId": "user-1", "batteryUnits": "5000"},
            }
        },
    }


@pytest.fixture
def billing(client, clock):
    store = InMemoryBatteryStore()
    ledger = BatteryLedger(store, BillingConfig(), now_provider=clock.now)
    client.app.state.ledger = ledger
    client.app.state.subscription_service = SubscriptionService(
        ledger, PlanCatalog(), now_provider=clock.now
    )
    client.app.dependency_overrides[get_current_user] = _fake_user
    yield client, store
    client.app.dependency_overrides.clear()
    client.app.state.stripe_service = None


class TestSubscriptionEndpoint:
    def test_no_subscription_is_404(self, billing):
        client, _ = billing

        response = client.get("/api/v1/billing/subscription")

        assert response.status_code == 404

    def test_returns_subscription_with_plan(self, billing):
        client, store = billing
        store.subscriptions["user-1"] = Subscription(
            user_id="user-1",
            plan_id=PlanId.STARTER,
            external_subscription_ref="sub_1",
            status=SubscriptionStatus.ACTIVE,
            current_period_start=datetime(2026, 2, 1, tzinfo=UTC),
            current_period_end=datetime(2026, 3, 3, tzinfo=UTC),
        )
        store.user_tiers["user-1"] = UserTier.PAID

        response = client.get("/api/v1/billing/subscription")

        assert response.status_code == 200
        data = response.json()
        assert data["subscription"]["external_subscription_ref"] == "sub_1"
        assert data["plan"]["name"] == "Starter"
        assert data["plan"]["daily_battery"] == 200
        assert data["tier"] == "paid"


class TestPlansEndpoint:
    def test_lists_plans_without_auth(self, client):
        response = client.get("/api/v1/billing/plans")

        assert response.status_code == 200
        data = response.json()
        monthly = [plan["total_battery_per_month"] for plan in data["plans"]]
        assert monthly == sorted(monthly)
        assert [plan["id"] for plan in data["plans"]][0] == "starter"
        assert data["topups"]


class TestWebhookEndpoint:
    def _post(self, client, signature: str | None = "sig"):
        headers = {"Stripe-Signature": signature} if signature is not None else {}
        return client.post("/api/v1/billing/webhook", content=b"{}", headers=headers)

    def test_processes_battery_purchase(self, billing):
        client, store = billing
        client.app.state.stripe_service = FakeStripeService(_purchase_event())

        response = self._post(client)

        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": True, "outcome": "processed"}
        assert store.balances["user-1"].total_balance == 5000
        assert store.transactions["user-1"][0].description == "Purchased 5,000 battery units"
        assert "evt_1" in store.processed_events

    def test_redelivery_is_duplicate(self, billing):
        client, store = billing
        client.app.state.stripe_service = FakeStripeService(_purchase_event())

        self._post(client)
        response = self._post(client)

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"
        assert response.json()["processed"] is False
        assert store.balances["user-1"].total_balance == 5000

    def test_bad_signature_is_400(self, billing):
        client, store = billing
        client.app.state.stripe_service = FakeStripeService(_purchase_event())

        response = self._post(client, signature="bad")

        assert response.status_code == 400
        assert "user-1" not in store.balances

    def test_missing_signature_is_400(self, billing):
        client, _ = billing
        client.app.state.stripe_service = FakeStripeService(_purchase_event())

        response = self._post(client, signature=None)

        assert response.status_code == 400

    def test_event_without_id_is_400(self, billing):
        client, _ = billing
        client.app.state.stripe_service = FakeStripeService(_purchase_event(event_id=None))

        response = self._post(client)

        assert response.status_code == 400

    def test_unhandled_type_is_acknowledged(self, billing):
        client, store = billing
        fake = FakeStripeService({"id": "evt_2", "type": "customer.created", "data": {}})
        client.app.state.stripe_service = fake

        response = self._post(client)

        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": False, "outcome": None}
        assert fake.enriched == []
        assert store.processed_events == set()

    def test_stripe_not_configured_is_503(self, billing):
        client, _ = billing
        client.app.state.stripe_service = None

        response = self._post(client)

        assert response.status_code == 503
