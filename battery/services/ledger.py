"""Battery balance ledger: balance checks, debits, credits and usage history."""

import uuid
from datetime import UTC, date, datetime, timedelta

import structlog

from battery.config import BillingConfig
from battery.constants import FREE_MODEL_PREFIXES
from battery.models.billing import (
    BalanceCheck,
    BalanceTransaction,
    DailyUsageSummary,
    LedgerResult,
    TransactionType,
    UsageRecord,
    UsageResult,
    UserBalance,
)
from battery.services.cost_calculator import calculate_battery_usage, estimate_cost
from battery.services.ledger_store import BatteryStore, LedgerSession

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InsufficientBalanceError(Exception):
    """A debit asked for more battery than the user holds."""

    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient battery balance: required {required}, available {available}"
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class BatteryLedger:
    """Owns every write to a user's battery balance.

    Each public write runs in one store transaction covering the balance
    row, the appended transaction and (for debits) the daily usage summary.
    ``apply_debit``/``apply_credit`` run the same logic inside a session the
    caller already holds, so other services can group several ledger writes
    with their own.
    """

    def __init__(
        self,
        store: BatteryStore,
        config: BillingConfig,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.now_provider = now_provider

    def _today(self) -> date:
        return self.now_provider().date()

    def _new_transaction(
        self,
        balance: UserBalance,
        type_: TransactionType,
        amount: int,
        description: str,
        *,
        external_ref: str | None = None,
        details: dict[str, str] | None = None,
    ) -> BalanceTransaction:
        return BalanceTransaction(
            id=str(uuid.uuid4()),
            user_id=balance.user_id,
            type=type_,
            amount=amount,
            balance_after=balance.total_balance,
            description=description,
            created_at=self.now_provider(),
            external_payment_ref=external_ref,
            details=details or {},
        )

    async def ensure_balance(self, user_id: str) -> UserBalance:
        """Current balance, created empty (no allowance) on first access."""
        async with self.store.transaction(user_id) as session:
            balance = await session.lock_balance(user_id, self._today())
            if balance.created_at is None:
                now = self.now_provider()
                balance.created_at = now
                balance.updated_at = now
                await session.save_balance(balance)
        return balance

    async def check_balance(
        self,
        user_id: str,
        model: str,
        estimated_tokens: int | None = None,
    ) -> BalanceCheck:
        """Pre-flight check for an AI call. Never raises for an unknown user."""
        tokens = self.config.default_estimated_tokens if estimated_tokens is None else estimated_tokens
        estimated = estimate_cost(
            model, tokens, default_rate=self.config.default_battery_per_k_token
        )
        balance = await self.ensure_balance(user_id)

        return BalanceCheck(
            has_balance=balance.total_balance >= estimated,
            current_balance=balance.total_balance,
            estimated_cost=estimated,
            daily_allowance=balance.daily_allowance,
        )

    async def apply_debit(
        self,
        session: LedgerSession,
        user_id: str,
        cost: int,
        model: str,
        metadata: dict[str, str] | None = None,
        description: str | None = None,
    ) -> LedgerResult:
        if cost < 0:
            raise ValueError("Debit cost must be non-negative")

        today = self._today()
        balance = await session.lock_balance(user_id, today)
        if cost > balance.total_balance:
            raise InsufficientBalanceError(user_id, cost, balance.total_balance)

        balance.total_balance -= cost
        balance.updated_at = self.now_provider()
        await session.save_balance(balance)

        transaction = self._new_transaction(
            balance,
            TransactionType.USAGE,
            -cost,
            description or f"Used {model}",
            details=metadata,
        )
        await session.append_transaction(transaction)

        summary = await session.get_daily_summary(user_id, today)
        if summary is None:
            summary = DailyUsageSummary(user_id=user_id, date=today)
        summary.total_credits_used += cost
        summary.total_messages += 1
        summary.models_used[model] = summary.models_used.get(model, 0) + 1
        await session.save_daily_summary(summary)

        return LedgerResult(
            user_id=user_id,
            new_balance=balance.total_balance,
            transaction=transaction,
        )

    async def debit(
        self,
        user_id: str,
        cost: int,
        model: str,
        metadata: dict[str, str] | None = None,
        description: str | None = None,
    ) -> LedgerResult:
        """Charge ``cost`` battery for one AI call.

        Raises:
            InsufficientBalanceError: If ``cost`` exceeds the balance. Nothing is written.
            ValueError: If ``cost`` is negative.
        """
        try:
            async with self.store.transaction(user_id) as session:
                result = await self.apply_debit(
                    session, user_id, cost, model, metadata, description
                )
        except InsufficientBalanceError as exc:
            logger.info(
                "battery_insufficient",
                user_id=user_id,
                required=exc.required,
                available=exc.available,
                model=model,
            )
            raise

        logger.info(
            "battery_debited",
            user_id=user_id,
            cost=cost,
            model=model,
            new_balance=result.new_balance,
        )
        return result

    async def apply_credit(
        self,
        session: LedgerSession,
        user_id: str,
        amount: int,
        type_: TransactionType,
        description: str,
        external_ref: str | None = None,
    ) -> LedgerResult:
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        if type_ == TransactionType.USAGE:
            raise ValueError("Usage transactions are recorded through debit")

        balance = await session.lock_balance(user_id, self._today())
        balance.total_balance += amount
        balance.updated_at = self.now_provider()
        await session.save_balance(balance)

        transaction = self._new_transaction(
            balance, type_, amount, description, external_ref=external_ref
        )
        await session.append_transaction(transaction)

        return LedgerResult(
            user_id=user_id,
            new_balance=balance.total_balance,
            transaction=transaction,
        )

    async def credit(
        self,
        user_id: str,
        amount: int,
        type_: TransactionType,
        description: str,
        external_ref: str | None = None,
    ) -> LedgerResult:
        """Add ``amount`` battery and record why.

        Raises:
            ValueError: If ``amount`` is not positive or ``type_`` is usage.
        """
        async with self.store.transaction(user_id) as session:
            result = await self.apply_credit(
                session, user_id, amount, type_, description, external_ref
            )

        logger.info(
            "battery_credited",
            user_id=user_id,
            amount=amount,
            type=type_.value,
            new_balance=result.new_balance,
        )
        return result

    async def track_usage(self, record: UsageRecord) -> UsageResult:
        """Price one completed AI call and debit it."""
        if record.model.startswith(FREE_MODEL_PREFIXES):
            logger.debug("battery_usage_free_model", user_id=record.user_id, model=record.model)
            return UsageResult(battery_used=0)

        cost = calculate_battery_usage(
            record.model,
            record.input_tokens,
            record.output_tokens,
            cached=record.cached,
            default_rate=self.config.default_battery_per_k_token,
        )
        total_tokens = record.input_tokens + record.output_tokens
        result = await self.debit(
            record.user_id,
            cost,
            record.model,
            metadata={
                "conversation_id": record.conversation_id,
                "message_id": record.message_id,
                "model": record.model,
                "input_tokens": str(record.input_tokens),
                "output_tokens": str(record.output_tokens),
                "cached": "true" if record.cached else "false",
            },
            description=f"Used {record.model} - {total_tokens} tokens",
        )
        return UsageResult(battery_used=cost, new_balance=result.new_balance)

    async def get_balance(self, user_id: str) -> UserBalance | None:
        return await self.store.get_balance(user_id)

    async def get_usage_history(
        self, user_id: str, start: date, end: date
    ) -> list[DailyUsageSummary]:
        if start > end:
            raise ValueError("start must not be after end")
        return await self.store.list_daily_summaries(user_id, start, end)

    async def get_recent_usage(self, user_id: str, days: int = 7) -> list[DailyUsageSummary]:
        """Summaries for the last ``days`` days, today included."""
        today = self._today()
        start = today - timedelta(days=max(days, 1) - 1)
        return await self.store.list_daily_summaries(user_id, start, today)

    async def list_transactions(
        self, user_id: str, limit: int | None = None
    ) -> list[BalanceTransaction]:
        return await self.store.list_transactions(user_id, limit)
