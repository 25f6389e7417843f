"""Once-per-day battery allowance top-up."""

import asyncio
from datetime import date

import structlog

from battery.config import DailyResetConfig
from battery.constants import DAILY_ALLOWANCE_DESCRIPTION
from battery.models.billing import ResetResult, TransactionType
from battery.services.ledger import BatteryLedger

logger = structlog.get_logger(__name__)


class DailyAllowanceService:
    """Credits each user's daily allowance at most once per calendar day.

    The ``last_daily_reset`` marker is re-read inside the user's transaction,
    so overlapping runs and concurrent debits never double-credit. Unused
    allowance stays in the balance.
    """

    def __init__(self, ledger: BatteryLedger, config: DailyResetConfig) -> None:
        self.ledger = ledger
        self.config = config

    async def _reset_user(self, user_id: str, today: date) -> bool:
        async with self.ledger.store.transaction(user_id) as session:
            balance = await session.lock_balance(user_id, today)
            if balance.daily_allowance <= 0 or balance.last_daily_reset == today:
                return False

            result = await self.ledger.apply_credit(
                session,
                user_id,
                balance.daily_allowance,
                TransactionType.SUBSCRIPTION,
                DAILY_ALLOWANCE_DESCRIPTION,
            )

            # apply_credit saved the new total; stamp the marker on top of it
            balance = await session.lock_balance(user_id, today)
            balance.last_daily_reset = today
            await session.save_balance(balance)

        logger.info(
            "daily_allowance_credited",
            user_id=user_id,
            amount=result.transaction.amount,
            new_balance=result.new_balance,
            date=today.isoformat(),
        )
        return True

    async def reset_daily_allowances(self, today: date | None = None) -> ResetResult:
        """Top up every user with a positive allowance whose marker is stale."""
        today = today or self.ledger.now_provider().date()
        user_ids = await self.ledger.store.list_users_with_allowance()
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_users))

        async def _bounded(user_id: str) -> bool:
            async with semaphore:
                return await self._reset_user(user_id, today)

        # a failing user cancels the rest of the batch; committed users stay committed
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(_bounded(user_id)) for user_id in user_ids]
        updated = [task.result() for task in tasks]
        result = ResetResult(
            date=today,
            users_checked=len(user_ids),
            users_updated=sum(updated),
        )
        logger.info(
            "daily_reset_completed",
            date=today.isoformat(),
            users_checked=result.users_checked,
            users_updated=result.users_updated,
        )
        return result

    async def run_periodically(self, stop_event: asyncio.Event) -> None:
        """Run resets every ``interval_seconds`` until ``stop_event`` is set."""
        logger.info("daily_reset_loop_started", interval_seconds=self.config.interval_seconds)
        while not stop_event.is_set():
            try:
                await self.reset_daily_allowances()
            except Exception:
                logger.exception("daily_reset_failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.interval_seconds)
            except TimeoutError:
                continue
        logger.info("daily_reset_loop_stopped")
