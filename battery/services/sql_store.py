"""
SQL storage backend for the battery ledger (SQLAlchemy async Core).

Each ledger transaction is one ``engine.begin()`` block. The balance row is
created with INSERT ... ON CONFLICT DO NOTHING and then re-read with
SELECT ... FOR UPDATE, so concurrent writers for one user queue on the row
lock in PostgreSQL. SQLite ignores FOR UPDATE; an in-process per-user lock
covers single-process deployments on either dialect.
"""

import json
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    select,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from battery.models.billing import (
    BalanceTransaction,
    BillingInterval,
    DailyUsageSummary,
    PlanId,
    Subscription,
    SubscriptionStatus,
    TransactionType,
    UserBalance,
    UserTier,
)
from battery.services.ledger_store import UserLocks

logger = structlog.get_logger(__name__)

metadata = MetaData()

user_battery = Table(
    "user_battery",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("total_balance", Integer, nullable=False, default=0),
    Column("daily_allowance", Integer, nullable=False, default=0),
    Column("last_daily_reset", Date, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

battery_transactions = Table(
    "battery_transactions",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), nullable=False, unique=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("type", String(32), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("balance_after", Integer, nullable=False),
    Column("description", Text, nullable=False),
    Column("external_payment_ref", String(255), nullable=True),
    Column("details", Text, nullable=False, default="{}"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

daily_usage_summary = Table(
    "daily_usage_summary",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("date", Date, primary_key=True),
    Column("total_credits_used", Integer, nullable=False, default=0),
    Column("total_messages", Integer, nullable=False, default=0),
    Column("models_used", Text, nullable=False, default="{}"),
)

user_subscriptions = Table(
    "user_subscriptions",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("plan_id", String(32), nullable=False),
    Column("external_customer_ref", String(255), nullable=True),
    Column("external_subscription_ref", String(255), nullable=False),
    Column("status", String(32), nullable=False),
    Column("current_period_start", DateTime(timezone=True), nullable=False),
    Column("current_period_end", DateTime(timezone=True), nullable=False),
    Column("billing_interval", String(16), nullable=False),
    Column("cancel_at", DateTime(timezone=True), nullable=True),
    Column("canceled_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    Index("ix_user_subscriptions_external_ref", "external_subscription_ref"),
)

user_tiers = Table(
    "user_tiers",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("tier", String(16), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

processed_billing_events = Table(
    "processed_billing_events",
    metadata,
    Column("event_id", String(255), primary_key=True),
    Column("event_type", String(64), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _insert(conn: AsyncConnection, table: Table):
    dialect = conn.dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


async def _upsert(
    conn: AsyncConnection,
    table: Table,
    values: dict[str, Any],
    key_columns: list[str],
) -> None:
    stmt = _insert(conn, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=key_columns,
        set_={name: stmt.excluded[name] for name in values if name not in key_columns},
    )
    await conn.execute(stmt)


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _balance_from_row(row) -> UserBalance:
    return UserBalance(
        user_id=row["user_id"],
        total_balance=row["total_balance"],
        daily_allowance=row["daily_allowance"],
        last_daily_reset=row["last_daily_reset"],
        created_at=_as_utc(row["created_at"]),
        updated_at=_as_utc(row["updated_at"]),
    )


def _transaction_from_row(row) -> BalanceTransaction:
    return BalanceTransaction(
        id=row["id"],
        user_id=row["user_id"],
        type=TransactionType(row["type"]),
        amount=row["amount"],
        balance_after=row["balance_after"],
        description=row["description"],
        external_payment_ref=row["external_payment_ref"],
        details=json.loads(row["details"] or "{}"),
        created_at=_as_utc(row["created_at"]),
    )


def _summary_from_row(row) -> DailyUsageSummary:
    return DailyUsageSummary(
        user_id=row["user_id"],
        date=row["date"],
        total_credits_used=row["total_credits_used"],
        total_messages=row["total_messages"],
        models_used=json.loads(row["models_used"] or "{}"),
    )


def _subscription_from_row(row) -> Subscription:
    return Subscription(
        user_id=row["user_id"],
        plan_id=PlanId(row["plan_id"]),
        external_customer_ref=row["external_customer_ref"],
        external_subscription_ref=row["external_subscription_ref"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=_as_utc(row["current_period_start"]),
        current_period_end=_as_utc(row["current_period_end"]),
        billing_interval=BillingInterval(row["billing_interval"]),
        cancel_at=_as_utc(row["cancel_at"]),
        canceled_at=_as_utc(row["canceled_at"]),
        updated_at=_as_utc(row["updated_at"]),
    )


class _SqlLedgerSession:
    """LedgerSession bound to one open connection/transaction."""

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    async def lock_balance(self, user_id: str, today: date) -> UserBalance:
        now = _utcnow()
        await self._conn.execute(
            _insert(self._conn, user_battery)
            .values(
                user_id=user_id,
                total_balance=0,
                daily_allowance=0,
                last_daily_reset=today,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        result = await self._conn.execute(
            select(user_battery).where(user_battery.c.user_id == user_id).with_for_update()
        )
        return _balance_from_row(result.mappings().one())

    async def save_balance(self, balance: UserBalance) -> None:
        await self._conn.execute(
            user_battery.update()
            .where(user_battery.c.user_id == balance.user_id)
            .values(
                total_balance=balance.total_balance,
                daily_allowance=balance.daily_allowance,
                last_daily_reset=balance.last_daily_reset,
                updated_at=balance.updated_at or _utcnow(),
            )
        )

    async def append_transaction(self, transaction: BalanceTransaction) -> None:
        await self._conn.execute(
            battery_transactions.insert().values(
                id=transaction.id,
                user_id=transaction.user_id,
                type=transaction.type.value,
                amount=transaction.amount,
                balance_after=transaction.balance_after,
                description=transaction.description,
                external_payment_ref=transaction.external_payment_ref,
                details=json.dumps(transaction.details, sort_keys=True),
                created_at=transaction.created_at,
            )
        )

    async def get_daily_summary(self, user_id: str, day: date) -> DailyUsageSummary | None:
        result = await self._conn.execute(
            select(daily_usage_summary)
            .where(
                daily_usage_summary.c.user_id == user_id,
                daily_usage_summary.c.date == day,
            )
            .with_for_update()
        )
        row = result.mappings().first()
        return _summary_from_row(row) if row else None

    async def save_daily_summary(self, summary: DailyUsageSummary) -> None:
        await _upsert(
            self._conn,
            daily_usage_summary,
            {
                "user_id": summary.user_id,
                "date": summary.date,
                "total_credits_used": summary.total_credits_used,
                "total_messages": summary.total_messages,
                "models_used": json.dumps(summary.models_used, sort_keys=True),
            },
            ["user_id", "date"],
        )

    async def get_subscription(self, user_id: str) -> Subscription | None:
        result = await self._conn.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .with_for_update()
        )
        row = result.mappings().first()
        return _subscription_from_row(row) if row else None

    async def save_subscription(self, subscription: Subscription) -> None:
        await _upsert(
            self._conn,
            user_subscriptions,
            {
                "user_id": subscription.user_id,
                "plan_id": subscription.plan_id.value,
                "external_customer_ref": subscription.external_customer_ref,
                "external_subscription_ref": subscription.external_subscription_ref,
                "status": subscription.status.value,
                "current_period_start": subscription.current_period_start,
                "current_period_end": subscription.current_period_end,
                "billing_interval": subscription.billing_interval.value,
                "cancel_at": subscription.cancel_at,
                "canceled_at": subscription.canceled_at,
                "updated_at": subscription.updated_at or _utcnow(),
            },
            ["user_id"],
        )

    async def set_user_tier(self, user_id: str, tier: UserTier) -> None:
        await _upsert(
            self._conn,
            user_tiers,
            {"user_id": user_id, "tier": tier.value, "updated_at": _utcnow()},
            ["user_id"],
        )

    async def claim_event(self, event_id: str, event_type: str) -> bool:
        result = await self._conn.execute(
            _insert(self._conn, processed_billing_events)
            .values(event_id=event_id, event_type=event_type, processed_at=_utcnow())
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        return result.rowcount == 1


class SqlBatteryStore:
    """BatteryStore on PostgreSQL (asyncpg) or SQLite (aiosqlite)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.locks = UserLocks()

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlBatteryStore":
        return cls(create_async_engine(url, echo=echo))

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("battery_tables_ready", dialect=self.engine.dialect.name)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self, user_id: str) -> AsyncIterator[_SqlLedgerSession]:
        async with self.locks.hold(user_id):
            async with self.engine.begin() as conn:
                yield _SqlLedgerSession(conn)

    async def get_balance(self, user_id: str) -> UserBalance | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(user_battery).where(user_battery.c.user_id == user_id)
            )
            row = result.mappings().first()
        return _balance_from_row(row) if row else None

    async def get_subscription(self, user_id: str) -> Subscription | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
            )
            row = result.mappings().first()
        return _subscription_from_row(row) if row else None

    async def find_subscription_by_ref(self, subscription_ref: str) -> Subscription | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(user_subscriptions).where(
                    user_subscriptions.c.external_subscription_ref == subscription_ref
                )
            )
            row = result.mappings().first()
        return _subscription_from_row(row) if row else None

    async def get_user_tier(self, user_id: str) -> UserTier | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(user_tiers.c.tier).where(user_tiers.c.user_id == user_id)
            )
            tier = result.scalar_one_or_none()
        return UserTier(tier) if tier else None

    async def list_transactions(
        self, user_id: str, limit: int | None = None
    ) -> list[BalanceTransaction]:
        query = select(battery_transactions).where(battery_transactions.c.user_id == user_id)
        if limit is not None:
            query = query.order_by(battery_transactions.c.seq.desc()).limit(max(limit, 0))
        else:
            query = query.order_by(battery_transactions.c.seq)

        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()

        entries = [_transaction_from_row(row) for row in rows]
        if limit is not None:
            entries.reverse()
        return entries

    async def list_daily_summaries(
        self, user_id: str, start: date, end: date
    ) -> list[DailyUsageSummary]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(daily_usage_summary)
                .where(
                    daily_usage_summary.c.user_id == user_id,
                    daily_usage_summary.c.date >= start,
                    daily_usage_summary.c.date <= end,
                )
                .order_by(daily_usage_summary.c.date)
            )
            rows = result.mappings().all()
        return [_summary_from_row(row) for row in rows]

    async def list_users_with_allowance(self) -> list[str]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(user_battery.c.user_id)
                .where(user_battery.c.daily_allowance > 0)
                .order_by(user_battery.c.user_id)
            )
            return list(result.scalars().all())
