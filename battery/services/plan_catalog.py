"""Plan catalog lookups and gateway price → plan resolution."""

import structlog

from battery.constants import SUBSCRIPTION_PLANS
from battery.models.billing import BillingInterval, Plan, PlanId

logger = structlog.get_logger(__name__)


class UnknownPlanError(LookupError):
    """A plan id that is not in the catalog."""

    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan '{plan_id}'")
        self.plan_id = plan_id


def get_plan(plan_id: str | PlanId) -> Plan:
    """Catalog entry for ``plan_id`` (case-insensitive).

    Raises:
        UnknownPlanError: If the id is not a catalog plan.
    """
    raw = plan_id.value if isinstance(plan_id, PlanId) else str(plan_id).strip().lower()
    try:
        return SUBSCRIPTION_PLANS[PlanId(raw)]
    except ValueError:
        raise UnknownPlanError(str(plan_id)) from None


def list_plans() -> list[Plan]:
    """Plans ordered by monthly battery, smallest first."""
    return sorted(SUBSCRIPTION_PLANS.values(), key=lambda plan: plan.total_battery_per_month)


class PlanCatalog:
    """Resolves billing-event plan references to catalog plans.

    Event metadata may name the plan directly; subscription updates usually
    only carry the gateway price id, which goes through the reverse map.
    Anything unmapped falls back to ``default_plan_id`` so the event is still
    applied.
    """

    def __init__(
        self,
        price_mapping: dict[str, tuple[PlanId, BillingInterval]] | None = None,
        default_plan_id: PlanId = PlanId.STARTER,
    ) -> None:
        self.price_mapping = dict(price_mapping or {})
        self.default_plan = get_plan(default_plan_id)

    def plan_for_price(self, price_id: str | None) -> Plan | None:
        if not price_id or price_id not in self.price_mapping:
            return None
        plan_id, _ = self.price_mapping[price_id]
        return get_plan(plan_id)

    def interval_for_price(self, price_id: str | None) -> BillingInterval | None:
        if not price_id or price_id not in self.price_mapping:
            return None
        return self.price_mapping[price_id][1]

    def resolve(self, *, plan_id: str | None = None, price_id: str | None = None) -> Plan:
        """Plan for an event: explicit plan id, then price id, then the default."""
        if plan_id:
            try:
                return get_plan(plan_id)
            except UnknownPlanError:
                pass

        mapped = self.plan_for_price(price_id)
        if mapped is not None:
            return mapped

        logger.warning(
            "billing_unknown_plan",
            plan_id=plan_id,
            price_id=price_id,
            fallback_plan=self.default_plan.id.value,
        )
        return self.default_plan

    def resolve_for_update(self, *, price_id: str | None, plan_id: str | None) -> Plan:
        """Plan for a subscription update: the price reference wins over metadata."""
        mapped = self.plan_for_price(price_id)
        if mapped is not None:
            return mapped
        return self.resolve(plan_id=plan_id, price_id=price_id)
