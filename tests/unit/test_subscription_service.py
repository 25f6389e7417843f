"""Unit tests for the subscription lifecycle state machine."""

from datetime import UTC, datetime, timedelta

import pytest

from battery.config import StripeConfig
from battery.constants import SUBSCRIPTION_PLANS
from battery.models.billing import (
    BillingEvent,
    BillingEventType,
    BillingInterval,
    CheckoutMode,
    EventOutcome,
    PlanId,
    SubscriptionStatus,
    TransactionType,
    UserTier,
)
from battery.services.plan_catalog import PlanCatalog
from battery.services.subscription_service import SubscriptionService, calculate_proration

PERIOD_START = datetime(2026, 2, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 3, 3, tzinfo=UTC)  # 30 days


def make_service(ledger, clock) -> SubscriptionService:
    prices = StripeConfig(
        price_starter_monthly="price_starter_m",
        price_daily_monthly="price_daily_m",
        price_power_annual="price_power_y",
    ).plan_prices()
    return SubscriptionService(ledger, PlanCatalog(prices), now_provider=clock.now)


def checkout_event(**overrides) -> BillingEvent:
    fields = dict(
        event_id="evt_checkout",
        type=BillingEventType.CHECKOUT_COMPLETED,
        user_id="user-a",
        plan_id="starter",
        subscription_id="sub_1",
        customer_id="cus_1",
        checkout_mode=CheckoutMode.SUBSCRIPTION,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    )
    fields.update(overrides)
    return BillingEvent(**fields)


def update_event(**overrides) -> BillingEvent:
    fields = dict(
        event_id="evt_update",
        type=BillingEventType.SUBSCRIPTION_UPDATED,
        user_id="user-a",
        price_id="price_daily_m",
        subscription_id="sub_1",
        customer_id="cus_1",
        status=SubscriptionStatus.ACTIVE,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    )
    fields.update(overrides)
    return BillingEvent(**fields)


def renewal_event(**overrides) -> BillingEvent:
    fields = dict(
        event_id="evt_renewal",
        type=BillingEventType.INVOICE_PAYMENT_SUCCEEDED,
        subscription_id="sub_1",
        billing_reason="subscription_cycle",
        payment_ref="pi_renewal",
    )
    fields.update(overrides)
    return BillingEvent(**fields)


class TestCalculateProration:
    def test_midpoint_upgrade(self):
        starter = SUBSCRIPTION_PLANS[PlanId.STARTER]
        daily = SUBSCRIPTION_PLANS[PlanId.DAILY]
        now = PERIOD_START + timedelta(days=15)

        assert calculate_proration(starter, daily, PERIOD_START, PERIOD_END, now) == 6000

    def test_full_period_remaining_grants_full_delta(self):
        starter = SUBSCRIPTION_PLANS[PlanId.STARTER]
        power = SUBSCRIPTION_PLANS[PlanId.POWER]

        assert calculate_proration(starter, power, PERIOD_START, PERIOD_END, PERIOD_START) == 39000

    def test_no_time_remaining_grants_nothing(self):
        starter = SUBSCRIPTION_PLANS[PlanId.STARTER]
        daily = SUBSCRIPTION_PLANS[PlanId.DAILY]

        assert calculate_proration(starter, daily, PERIOD_START, PERIOD_END, PERIOD_END) == 0
        late = PERIOD_END + timedelta(days=3)
        assert calculate_proration(starter, daily, PERIOD_START, PERIOD_END, late) == 0

    def test_early_now_is_clamped(self):
        starter = SUBSCRIPTION_PLANS[PlanId.STARTER]
        daily = SUBSCRIPTION_PLANS[PlanId.DAILY]
        early = PERIOD_START - timedelta(days=10)

        assert calculate_proration(starter, daily, PERIOD_START, PERIOD_END, early) == 12000

    def test_partial_day_rounds_up(self):
        starter = SUBSCRIPTION_PLANS[PlanId.STARTER]
        daily = SUBSCRIPTION_PLANS[PlanId.DAILY]
        now = PERIOD_END - timedelta(hours=1)

        # one day remaining out of 30
        assert calculate_proration(starter, daily, PERIOD_START, PERIOD_END, now) == 400

    def test_downgrade_and_empty_period(self):
        starter = SUBSCRIPTION_PLANS[PlanId.STARTER]
        daily = SUBSCRIPTION_PLANS[PlanId.DAILY]

        assert calculate_proration(daily, starter, PERIOD_START, PERIOD_END, PERIOD_START) == 0
        assert calculate_proration(starter, daily, PERIOD_END, PERIOD_END, PERIOD_END) == 0


class TestCheckoutCompleted:
    async def test_subscription_checkout_provisions_plan(self, ledger, store, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(checkout_event())

        assert result.outcome == EventOutcome.PROCESSED
        assert result.credited == 6000
        subscription = await store.get_subscription("user-a")
        assert subscription.plan_id == PlanId.STARTER
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == PERIOD_END
        assert await store.get_user_tier("user-a") == UserTier.PAID

        balance = await store.get_balance("user-a")
        assert balance.total_balance == 6000
        assert balance.daily_allowance == 200
        (entry,) = await store.list_transactions("user-a")
        assert entry.type == TransactionType.SUBSCRIPTION
        assert entry.description == "Starter subscription activated"

    async def test_missing_period_defaults_to_thirty_days(self, ledger, store, clock):
        service = make_service(ledger, clock)

        await service.handle_event(
            checkout_event(current_period_start=None, current_period_end=None, status=None)
        )

        subscription = await store.get_subscription("user-a")
        assert subscription.current_period_start == clock.now()
        assert subscription.current_period_end == clock.now() + timedelta(days=30)
        assert subscription.status == SubscriptionStatus.ACTIVE

    async def test_unknown_plan_falls_back_to_default(self, ledger, store, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(checkout_event(plan_id="platinum"))

        assert result.outcome == EventOutcome.PROCESSED
        assert (await store.get_subscription("user-a")).plan_id == PlanId.STARTER

    async def test_plan_resolved_from_price_and_interval(self, ledger, store, clock):
        service = make_service(ledger, clock)

        await service.handle_event(checkout_event(plan_id=None, price_id="price_power_y"))

        subscription = await store.get_subscription("user-a")
        assert subscription.plan_id == PlanId.POWER
        assert subscription.billing_interval == BillingInterval.ANNUAL

    async def test_configured_price_interval_wins_over_event(self, ledger, store, clock):
        service = make_service(ledger, clock)

        await service.handle_event(
            checkout_event(
                plan_id=None,
                price_id="price_power_y",
                billing_interval=BillingInterval.MONTHLY,
            )
        )

        subscription = await store.get_subscription("user-a")
        assert subscription.billing_interval == BillingInterval.ANNUAL

    async def test_unmapped_price_uses_event_interval(self, ledger, store, clock):
        service = make_service(ledger, clock)

        await service.handle_event(
            checkout_event(price_id="price_unknown", billing_interval=BillingInterval.ANNUAL)
        )

        subscription = await store.get_subscription("user-a")
        assert subscription.billing_interval == BillingInterval.ANNUAL

    async def test_missing_user_is_skipped(self, ledger, store, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(checkout_event(user_id=None, subscription_id="sub_x"))

        assert result.outcome == EventOutcome.SKIPPED
        assert store.balances == {}

    async def test_missing_subscription_id_is_skipped(self, ledger, store, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(
            checkout_event(subscription_id=None, event_id="evt_no_sub")
        )

        assert result.outcome == EventOutcome.SKIPPED
        assert store.subscriptions == {}
        assert "evt_no_sub" not in store.processed_events

    async def test_battery_purchase(self, ledger, store, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(
            checkout_event(
                checkout_mode=CheckoutMode.PAYMENT,
                subscription_id=None,
                plan_id=None,
                battery_units=5000,
                payment_ref="pi_123",
            )
        )

        assert result.credited == 5000
        (entry,) = await store.list_transactions("user-a")
        assert entry.type == TransactionType.PURCHASE
        assert entry.description == "Purchased 5,000 battery units"
        assert entry.external_payment_ref == "pi_123"
        assert await store.get_subscription("user-a") is None

    async def test_purchase_without_units_is_skipped(self, ledger, store, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(
            checkout_event(checkout_mode=CheckoutMode.PAYMENT, subscription_id=None)
        )

        assert result.outcome == EventOutcome.SKIPPED


class TestSubscriptionUpdated:
    async def test_midpoint_upgrade_is_prorated(self, ledger, store, clock):
        service = make_service(ledger, clock)
        clock.set(PERIOD_START)
        await service.handle_event(checkout_event())

        clock.set(PERIOD_START + timedelta(days=15))
        result = await service.handle_event(update_event())

        assert result.credited == 6000
        subscription = await store.get_subscription("user-a")
        assert subscription.plan_id == PlanId.DAILY
        balance = await store.get_balance("user-a")
        assert balance.total_balance == 12000
        assert balance.daily_allowance == 600
        upgrade = (await store.list_transactions("user-a"))[-1]
        assert upgrade.type == TransactionType.SUBSCRIPTION_UPGRADE
        assert upgrade.amount == 6000

    async def test_downgrade_grants_nothing_but_lowers_allowance(self, ledger, store, clock):
        service = make_service(ledger, clock)
        clock.set(PERIOD_START)
        await service.handle_event(checkout_event(plan_id="daily"))

        result = await service.handle_event(update_event(price_id="price_starter_m"))

        assert result.credited == 0
        balance = await store.get_balance("user-a")
        assert balance.total_balance == 18000
        assert balance.daily_allowance == 200

    async def test_upgrade_while_past_due_grants_nothing(self, ledger, store, clock):
        service = make_service(ledger, clock)
        clock.set(PERIOD_START)
        await service.handle_event(checkout_event())

        result = await service.handle_event(update_event(status=SubscriptionStatus.PAST_DUE))

        assert result.credited == 0
        assert (await store.get_balance("user-a")).daily_allowance == 600
        assert await store.get_user_tier("user-a") == UserTier.FREE

    async def test_status_and_cancel_markers_synced(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())
        cancel_at = PERIOD_END

        await service.handle_event(
            update_event(price_id="price_starter_m", cancel_at=cancel_at)
        )

        subscription = await store.get_subscription("user-a")
        assert subscription.cancel_at == cancel_at
        assert subscription.status == SubscriptionStatus.ACTIVE

    async def test_user_resolved_from_subscription_ref(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())

        result = await service.handle_event(update_event(user_id=None))

        assert result.outcome == EventOutcome.PROCESSED
        assert result.user_id == "user-a"

    async def test_unknown_subscription_without_user_is_skipped(self, ledger, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(update_event(user_id=None, subscription_id="sub_zzz"))

        assert result.outcome == EventOutcome.SKIPPED

    async def test_created_event_is_ignored(self, ledger, store, clock):
        service = make_service(ledger, clock)

        result = await service.handle_event(
            update_event(type=BillingEventType.SUBSCRIPTION_CREATED)
        )

        assert result.outcome == EventOutcome.IGNORED
        assert store.subscriptions == {}


class TestSubscriptionDeleted:
    async def test_cancel_keeps_balance(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())
        clock.advance(timedelta(days=3))

        await service.handle_event(
            BillingEvent(
                event_id="evt_delete",
                type=BillingEventType.SUBSCRIPTION_DELETED,
                user_id="user-a",
                subscription_id="sub_1",
            )
        )

        subscription = await store.get_subscription("user-a")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.canceled_at == clock.now()
        balance = await store.get_balance("user-a")
        assert balance.total_balance == 6000
        assert balance.daily_allowance == 0
        assert await store.get_user_tier("user-a") == UserTier.FREE

    async def _cancel(self, service):
        await service.handle_event(checkout_event())
        await service.handle_event(
            BillingEvent(
                event_id="evt_delete",
                type=BillingEventType.SUBSCRIPTION_DELETED,
                user_id="user-a",
                subscription_id="sub_1",
            )
        )

    async def test_late_update_does_not_reactivate(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await self._cancel(service)

        result = await service.handle_event(update_event(event_id="evt_late_update"))

        assert result.outcome == EventOutcome.IGNORED
        subscription = await store.get_subscription("user-a")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.plan_id == PlanId.STARTER
        assert (await store.get_balance("user-a")).daily_allowance == 0
        assert await store.get_user_tier("user-a") == UserTier.FREE
        assert "evt_late_update" not in store.processed_events

    async def test_late_payment_failure_keeps_canceled(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await self._cancel(service)

        result = await service.handle_event(
            BillingEvent(
                event_id="evt_late_failed",
                type=BillingEventType.INVOICE_PAYMENT_FAILED,
                subscription_id="sub_1",
            )
        )

        assert result.outcome == EventOutcome.IGNORED
        assert (await store.get_subscription("user-a")).status == SubscriptionStatus.CANCELED

    async def test_late_renewal_credits_nothing(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await self._cancel(service)

        result = await service.handle_event(renewal_event())

        assert result.outcome == EventOutcome.IGNORED
        assert (await store.get_balance("user-a")).total_balance == 6000

    async def test_new_checkout_reprovisions(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await self._cancel(service)

        result = await service.handle_event(
            checkout_event(event_id="evt_checkout_2", subscription_id="sub_2", plan_id="daily")
        )

        assert result.outcome == EventOutcome.PROCESSED
        subscription = await store.get_subscription("user-a")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.external_subscription_ref == "sub_2"
        assert (await store.get_balance("user-a")).daily_allowance == 600
        assert await store.get_user_tier("user-a") == UserTier.PAID

        updated = await service.handle_event(
            update_event(event_id="evt_update_2", subscription_id="sub_2")
        )
        assert updated.outcome == EventOutcome.PROCESSED


class TestInvoices:
    async def test_renewal_credits_stored_plan(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())
        next_end = PERIOD_END + timedelta(days=30)

        result = await service.handle_event(
            renewal_event(current_period_start=PERIOD_END, current_period_end=next_end)
        )

        assert result.credited == 6000
        assert (await store.get_balance("user-a")).total_balance == 12000
        entry = (await store.list_transactions("user-a"))[-1]
        assert entry.description == "Starter subscription renewed"
        assert (await store.get_subscription("user-a")).current_period_end == next_end

    async def test_first_invoice_is_ignored(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())

        result = await service.handle_event(renewal_event(billing_reason="subscription_create"))

        assert result.outcome == EventOutcome.IGNORED
        assert (await store.get_balance("user-a")).total_balance == 6000

    async def test_renewal_replay_without_event_id_credits_twice(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())

        await service.handle_event(renewal_event(event_id=None))
        await service.handle_event(renewal_event(event_id=None))

        assert (await store.get_balance("user-a")).total_balance == 18000

    async def test_payment_failed_marks_past_due(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())

        result = await service.handle_event(
            BillingEvent(
                event_id="evt_failed",
                type=BillingEventType.INVOICE_PAYMENT_FAILED,
                subscription_id="sub_1",
            )
        )

        assert result.outcome == EventOutcome.PROCESSED
        assert (await store.get_subscription("user-a")).status == SubscriptionStatus.PAST_DUE
        assert (await store.get_balance("user-a")).total_balance == 6000


class TestDeduplication:
    async def test_redelivered_event_is_applied_once(self, ledger, store, clock):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())

        first = await service.handle_event(renewal_event())
        second = await service.handle_event(renewal_event())

        assert first.outcome == EventOutcome.PROCESSED
        assert second.outcome == EventOutcome.DUPLICATE
        assert (await store.get_balance("user-a")).total_balance == 12000

    async def test_failed_handler_leaves_event_unclaimed(self, ledger, store, clock, monkeypatch):
        service = make_service(ledger, clock)
        await service.handle_event(checkout_event())

        async def _broken(*_args, **_kwargs):
            raise RuntimeError("storage write failed")

        monkeypatch.setattr(service.ledger, "apply_credit", _broken)

        with pytest.raises(RuntimeError):
            await service.handle_event(renewal_event())

        assert "evt_renewal" not in store.processed_events
        assert (await store.get_balance("user-a")).total_balance == 6000
