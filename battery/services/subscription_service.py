"""
Subscription lifecycle state machine.

Consumes normalized billing events and keeps the subscription row, the user
tier and the battery ledger in step:

  checkout (subscription) → subscription row + tier paid + monthly battery + allowance
  checkout (payment)      → one-off purchase credit
  subscription updated    → status/period/plan sync, prorated credit on upgrade
  subscription deleted    → canceled, allowance 0, tier free (balance kept)
  invoice paid (cycle)    → monthly battery for the stored plan
  invoice failed          → past_due

Canceled is terminal: later updates and invoices for the same subscription
id are ignored, and only a new checkout provisions the user again.

Every handler runs in one per-user store transaction together with the
event-id claim, so a redelivered event is reported as a duplicate and a
failed handler leaves nothing behind for the gateway's retry.
"""

import math
from datetime import UTC, datetime, timedelta
from typing import Awaitable, Callable, assert_never

import structlog

from battery.constants import DEFAULT_PERIOD_DAYS, RENEWAL_BILLING_REASON
from battery.models.billing import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    BillingEvent,
    BillingEventType,
    BillingInterval,
    CheckoutMode,
    EventOutcome,
    EventResult,
    Plan,
    Subscription,
    SubscriptionStatus,
    TransactionType,
    UserTier,
)
from battery.services.ledger import BatteryLedger
from battery.services.ledger_store import LedgerSession
from battery.services.plan_catalog import PlanCatalog, get_plan

logger = structlog.get_logger(__name__)

Handler = Callable[[LedgerSession, BillingEvent, str, datetime], Awaitable[int]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MissingIdentifiersError(ValueError):
    """A billing event lacks the identifiers its handler needs."""

    def __init__(self, event_type: BillingEventType, missing: list[str]):
        super().__init__(f"{event_type.value} is missing {', '.join(missing)}")
        self.event_type = event_type
        self.missing = missing


class CanceledSubscriptionError(Exception):
    """A late event targets a subscription that was already canceled."""

    def __init__(self, subscription_ref: str):
        super().__init__(f"Subscription {subscription_ref} is canceled")
        self.subscription_ref = subscription_ref


def calculate_proration(
    old_plan: Plan,
    new_plan: Plan,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> int:
    """Battery owed for upgrading ``old_plan`` → ``new_plan`` at ``now``.

    Remaining and total period lengths are whole days rounded up; the
    remaining share is clamped to the period, so the result lies between 0
    and the full difference in monthly battery. Downgrades yield 0.
    """
    delta = new_plan.total_battery_per_month - old_plan.total_battery_per_month
    total_days = math.ceil((period_end - period_start) / timedelta(days=1))
    if delta <= 0 or total_days <= 0:
        return 0

    remaining_days = math.ceil((period_end - now) / timedelta(days=1))
    remaining_days = min(max(remaining_days, 0), total_days)
    return delta * remaining_days // total_days


class SubscriptionService:
    """Applies billing events to subscriptions, tiers and balances."""

    def __init__(
        self,
        ledger: BatteryLedger,
        catalog: PlanCatalog,
        now_provider=_utcnow,
    ) -> None:
        self.ledger = ledger
        self.store = ledger.store
        self.catalog = catalog
        self.now_provider = now_provider

    async def handle_event(self, event: BillingEvent) -> EventResult:
        """Dispatch one billing event.

        Storage errors propagate so the webhook answers 5xx and the gateway
        redelivers.
        """
        handler: Handler
        match event.type:
            case BillingEventType.CHECKOUT_COMPLETED:
                if self._is_payment_checkout(event):
                    handler = self._apply_purchase
                else:
                    handler = self._apply_checkout_subscription
            case BillingEventType.SUBSCRIPTION_CREATED:
                return self._ignored(event, "provisioned_by_checkout")
            case BillingEventType.SUBSCRIPTION_UPDATED:
                handler = self._apply_subscription_updated
            case BillingEventType.SUBSCRIPTION_DELETED:
                handler = self._apply_subscription_deleted
            case BillingEventType.INVOICE_PAYMENT_SUCCEEDED:
                if event.billing_reason != RENEWAL_BILLING_REASON:
                    return self._ignored(event, "not_a_renewal")
                handler = self._apply_renewal
            case BillingEventType.INVOICE_PAYMENT_FAILED:
                handler = self._apply_payment_failed
            case _:
                assert_never(event.type)

        try:
            user_id = await self._resolve_user_id(event)
            return await self._run(event, user_id, handler)
        except MissingIdentifiersError as exc:
            logger.warning(
                "billing_event_missing_identifiers",
                event_id=event.event_id,
                event_type=event.type.value,
                missing=exc.missing,
                subscription_id=event.subscription_id,
            )
            return EventResult(
                event_id=event.event_id,
                event_type=event.type,
                outcome=EventOutcome.SKIPPED,
                user_id=event.user_id,
            )
        except CanceledSubscriptionError:
            # the transaction rolled back, so the event id stays unclaimed
            return self._ignored(event, "subscription_canceled")

    @staticmethod
    def _is_payment_checkout(event: BillingEvent) -> bool:
        if event.checkout_mode is not None:
            return event.checkout_mode == CheckoutMode.PAYMENT
        return event.subscription_id is None

    def _ignored(self, event: BillingEvent, reason: str) -> EventResult:
        logger.info(
            "billing_event_ignored",
            event_id=event.event_id,
            event_type=event.type.value,
            reason=reason,
        )
        return EventResult(
            event_id=event.event_id,
            event_type=event.type,
            outcome=EventOutcome.IGNORED,
            user_id=event.user_id,
        )

    async def _resolve_user_id(self, event: BillingEvent) -> str:
        if event.user_id:
            return event.user_id
        if event.subscription_id:
            subscription = await self.store.find_subscription_by_ref(event.subscription_id)
            if subscription is not None:
                return subscription.user_id
        raise MissingIdentifiersError(event.type, ["user_id"])

    async def _run(self, event: BillingEvent, user_id: str, handler: Handler) -> EventResult:
        now = self.now_provider()
        async with self.store.transaction(user_id) as session:
            if event.event_id and not await session.claim_event(event.event_id, event.type.value):
                logger.info(
                    "billing_event_duplicate",
                    event_id=event.event_id,
                    event_type=event.type.value,
                    user_id=user_id,
                )
                return EventResult(
                    event_id=event.event_id,
                    event_type=event.type,
                    outcome=EventOutcome.DUPLICATE,
                    user_id=user_id,
                )
            credited = await handler(session, event, user_id, now)

        logger.info(
            "billing_event_processed",
            event_id=event.event_id,
            event_type=event.type.value,
            user_id=user_id,
            credited=credited,
        )
        return EventResult(
            event_id=event.event_id,
            event_type=event.type,
            outcome=EventOutcome.PROCESSED,
            user_id=user_id,
            credited=credited,
        )

    @staticmethod
    def _ensure_not_canceled(existing: Subscription | None, event: BillingEvent) -> None:
        """Canceled is terminal for its subscription id; only a new checkout reopens it."""
        if existing is None or existing.status != SubscriptionStatus.CANCELED:
            return
        if event.subscription_id in (None, existing.external_subscription_ref):
            raise CanceledSubscriptionError(existing.external_subscription_ref)

    async def _set_allowance(
        self, session: LedgerSession, user_id: str, daily_battery: int, now: datetime
    ) -> None:
        balance = await session.lock_balance(user_id, now.date())
        balance.daily_allowance = daily_battery
        balance.updated_at = now
        await session.save_balance(balance)

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    async def _apply_checkout_subscription(
        self, session: LedgerSession, event: BillingEvent, user_id: str, now: datetime
    ) -> int:
        if not event.subscription_id:
            raise MissingIdentifiersError(event.type, ["subscription_id"])

        plan = self.catalog.resolve(plan_id=event.plan_id, price_id=event.price_id)
        period_start = event.current_period_start or now
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            external_customer_ref=event.customer_id,
            external_subscription_ref=event.subscription_id,
            status=event.status or SubscriptionStatus.ACTIVE,
            current_period_start=period_start,
            current_period_end=event.current_period_end
            or period_start + timedelta(days=DEFAULT_PERIOD_DAYS),
            billing_interval=self.catalog.interval_for_price(event.price_id)
            or event.billing_interval
            or BillingInterval.MONTHLY,
            cancel_at=event.cancel_at,
            updated_at=now,
        )
        await session.save_subscription(subscription)
        await session.set_user_tier(user_id, UserTier.PAID)

        await self.ledger.apply_credit(
            session,
            user_id,
            plan.total_battery_per_month,
            TransactionType.SUBSCRIPTION,
            f"{plan.name} subscription activated",
            external_ref=event.payment_ref,
        )
        await self._set_allowance(session, user_id, plan.daily_battery, now)

        logger.info(
            "subscription_activated",
            user_id=user_id,
            plan_id=plan.id.value,
            subscription_id=event.subscription_id,
        )
        return plan.total_battery_per_month

    async def _apply_purchase(
        self, session: LedgerSession, event: BillingEvent, user_id: str, now: datetime
    ) -> int:
        units = event.battery_units or 0
        if units <= 0:
            raise MissingIdentifiersError(event.type, ["battery_units"])

        await self.ledger.apply_credit(
            session,
            user_id,
            units,
            TransactionType.PURCHASE,
            f"Purchased {units:,} battery units",
            external_ref=event.payment_ref,
        )
        return units

    async def _apply_subscription_updated(
        self, session: LedgerSession, event: BillingEvent, user_id: str, now: datetime
    ) -> int:
        existing = await session.get_subscription(user_id)
        self._ensure_not_canceled(existing, event)
        subscription_ref = event.subscription_id or (
            existing.external_subscription_ref if existing else None
        )
        if not subscription_ref:
            raise MissingIdentifiersError(event.type, ["subscription_id"])

        new_plan = self.catalog.resolve_for_update(price_id=event.price_id, plan_id=event.plan_id)
        status = event.status or (existing.status if existing else SubscriptionStatus.ACTIVE)
        period_start = event.current_period_start or (
            existing.current_period_start if existing else now
        )
        period_end = event.current_period_end or (
            existing.current_period_end
            if existing
            else period_start + timedelta(days=DEFAULT_PERIOD_DAYS)
        )
        interval = (
            self.catalog.interval_for_price(event.price_id)
            or event.billing_interval
            or (existing.billing_interval if existing else BillingInterval.MONTHLY)
        )

        await session.save_subscription(
            Subscription(
                user_id=user_id,
                plan_id=new_plan.id,
                external_customer_ref=event.customer_id
                or (existing.external_customer_ref if existing else None),
                external_subscription_ref=subscription_ref,
                status=status,
                current_period_start=period_start,
                current_period_end=period_end,
                billing_interval=interval,
                cancel_at=event.cancel_at,
                canceled_at=event.canceled_at,
                updated_at=now,
            )
        )
        tier = UserTier.PAID if status in ACTIVE_SUBSCRIPTION_STATUSES else UserTier.FREE
        await session.set_user_tier(user_id, tier)

        credited = 0
        if existing is not None and existing.plan_id != new_plan.id:
            old_plan = get_plan(existing.plan_id)
            if (
                new_plan.total_battery_per_month > old_plan.total_battery_per_month
                and status == SubscriptionStatus.ACTIVE
            ):
                credited = calculate_proration(old_plan, new_plan, period_start, period_end, now)
                if credited > 0:
                    await self.ledger.apply_credit(
                        session,
                        user_id,
                        credited,
                        TransactionType.SUBSCRIPTION_UPGRADE,
                        f"Upgraded from {old_plan.name} to {new_plan.name} (prorated)",
                    )
            logger.info(
                "subscription_plan_changed",
                user_id=user_id,
                from_plan=old_plan.id.value,
                to_plan=new_plan.id.value,
                status=status.value,
                prorated_credit=credited,
            )

        await self._set_allowance(session, user_id, new_plan.daily_battery, now)
        return credited

    async def _apply_subscription_deleted(
        self, session: LedgerSession, event: BillingEvent, user_id: str, now: datetime
    ) -> int:
        existing = await session.get_subscription(user_id)
        if existing is not None:
            existing.status = SubscriptionStatus.CANCELED
            existing.canceled_at = now
            existing.updated_at = now
            await session.save_subscription(existing)
        else:
            logger.warning(
                "subscription_deleted_without_record",
                user_id=user_id,
                subscription_id=event.subscription_id,
            )

        await session.set_user_tier(user_id, UserTier.FREE)
        await self._set_allowance(session, user_id, 0, now)
        return 0

    async def _apply_renewal(
        self, session: LedgerSession, event: BillingEvent, user_id: str, now: datetime
    ) -> int:
        existing = await session.get_subscription(user_id)
        if existing is None:
            raise MissingIdentifiersError(event.type, ["subscription"])
        self._ensure_not_canceled(existing, event)

        plan = get_plan(existing.plan_id)
        await self.ledger.apply_credit(
            session,
            user_id,
            plan.total_battery_per_month,
            TransactionType.SUBSCRIPTION,
            f"{plan.name} subscription renewed",
            external_ref=event.payment_ref,
        )

        if event.current_period_start and event.current_period_end:
            existing.current_period_start = event.current_period_start
            existing.current_period_end = event.current_period_end
            existing.updated_at = now
            await session.save_subscription(existing)

        return plan.total_battery_per_month

    async def _apply_payment_failed(
        self, session: LedgerSession, event: BillingEvent, user_id: str, now: datetime
    ) -> int:
        existing = await session.get_subscription(user_id)
        if existing is None:
            raise MissingIdentifiersError(event.type, ["subscription"])
        self._ensure_not_canceled(existing, event)

        existing.status = SubscriptionStatus.PAST_DUE
        existing.updated_at = now
        await session.save_subscription(existing)
        logger.warning(
            "subscription_payment_failed",
            user_id=user_id,
            subscription_id=existing.external_subscription_ref,
        )
        return 0
