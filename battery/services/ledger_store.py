"""Storage contract for the battery ledger and the in-memory implementation."""

import asyncio
from collections import defaultdict
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date
from typing import AsyncIterator, Protocol

from battery.models.billing import (
    BalanceTransaction,
    DailyUsageSummary,
    Subscription,
    UserBalance,
    UserTier,
)


class UserLocks:
    """Per-user asyncio locks that exist only while someone holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] == 0:
                del self._holders[user_id]
                del self._locks[user_id]


class LedgerSession(Protocol):
    """Transactional handle scoped to one user.

    Every write goes through a session. Writes become visible together when
    the owning ``BatteryStore.transaction`` block exits normally and are
    discarded when it raises.
    """

    async def lock_balance(self, user_id: str, today: date) -> UserBalance:
        """Read the balance for update, creating a zero balance if absent."""

    async def save_balance(self, balance: UserBalance) -> None:
        """Persist balance state."""

    async def append_transaction(self, transaction: BalanceTransaction) -> None:
        """Append a ledger entry."""

    async def get_daily_summary(self, user_id: str, day: date) -> DailyUsageSummary | None:
        """Read the usage aggregate for one day."""

    async def save_daily_summary(self, summary: DailyUsageSummary) -> None:
        """Create or replace the usage aggregate for one day."""

    async def get_subscription(self, user_id: str) -> Subscription | None:
        """Read the user's subscription for update."""

    async def save_subscription(self, subscription: Subscription) -> None:
        """Upsert the user's subscription."""

    async def set_user_tier(self, user_id: str, tier: UserTier) -> None:
        """Record whether the user is on a paid plan."""

    async def claim_event(self, event_id: str, event_type: str) -> bool:
        """Record a billing event id.

        Returns True when the event is new; False if already processed.
        """


class BatteryStore(Protocol):
    """Storage port used by the ledger, the daily reset and the state machine."""

    def transaction(self, user_id: str) -> AbstractAsyncContextManager[LedgerSession]:
        """Open a transaction serialized against other transactions for ``user_id``."""

    async def get_balance(self, user_id: str) -> UserBalance | None:
        """Read a balance without locking."""

    async def get_subscription(self, user_id: str) -> Subscription | None:
        """Read a subscription without locking."""

    async def find_subscription_by_ref(self, subscription_ref: str) -> Subscription | None:
        """Look up a subscription by gateway subscription id."""

    async def get_user_tier(self, user_id: str) -> UserTier | None:
        """Read the recorded tier."""

    async def list_transactions(
        self, user_id: str, limit: int | None = None
    ) -> list[BalanceTransaction]:
        """Ledger entries oldest first; ``limit`` keeps only the most recent ones."""

    async def list_daily_summaries(
        self, user_id: str, start: date, end: date
    ) -> list[DailyUsageSummary]:
        """Usage aggregates with ``start <= date <= end``, ordered by date."""

    async def list_users_with_allowance(self) -> list[str]:
        """Ids of users whose daily allowance is positive."""


class _InMemorySession:
    """Stages writes until the owning transaction commits."""

    def __init__(self, store: "InMemoryBatteryStore") -> None:
        self._store = store
        self._balances: dict[str, UserBalance] = {}
        self._transactions: list[BalanceTransaction] = []
        self._summaries: dict[tuple[str, date], DailyUsageSummary] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._tiers: dict[str, UserTier] = {}
        self._events: set[str] = set()

    async def lock_balance(self, user_id: str, today: date) -> UserBalance:
        staged = self._balances.get(user_id)
        if staged is not None:
            return staged.model_copy(deep=True)
        stored = self._store.balances.get(user_id)
        if stored is not None:
            return stored.model_copy(deep=True)
        balance = UserBalance(user_id=user_id, last_daily_reset=today)
        self._balances[user_id] = balance
        return balance.model_copy(deep=True)

    async def save_balance(self, balance: UserBalance) -> None:
        self._balances[balance.user_id] = balance.model_copy(deep=True)

    async def append_transaction(self, transaction: BalanceTransaction) -> None:
        self._transactions.append(transaction)

    async def get_daily_summary(self, user_id: str, day: date) -> DailyUsageSummary | None:
        summary = self._summaries.get((user_id, day)) or self._store.summaries.get((user_id, day))
        return summary.model_copy(deep=True) if summary else None

    async def save_daily_summary(self, summary: DailyUsageSummary) -> None:
        self._summaries[(summary.user_id, summary.date)] = summary.model_copy(deep=True)

    async def get_subscription(self, user_id: str) -> Subscription | None:
        subscription = self._subscriptions.get(user_id) or self._store.subscriptions.get(user_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def save_subscription(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.user_id] = subscription.model_copy(deep=True)

    async def set_user_tier(self, user_id: str, tier: UserTier) -> None:
        self._tiers[user_id] = tier

    async def claim_event(self, event_id: str, event_type: str) -> bool:
        if event_id in self._events or event_id in self._store.processed_events:
            return False
        self._events.add(event_id)
        return True

    def commit(self) -> None:
        store = self._store
        store.balances.update(self._balances)
        for transaction in self._transactions:
            store.transactions[transaction.user_id].append(transaction)
        store.summaries.update(self._summaries)
        for user_id, subscription in self._subscriptions.items():
            previous = store.subscriptions.get(user_id)
            if previous is not None:
                store.subscription_refs.pop(previous.external_subscription_ref, None)
            store.subscriptions[user_id] = subscription
            store.subscription_refs[subscription.external_subscription_ref] = user_id
        store.user_tiers.update(self._tiers)
        store.processed_events.update(self._events)


class InMemoryBatteryStore:
    """In-memory store used for tests and local fallback.

    A per-user lock serializes transactions for the same user;
    writes are staged and applied only when the transaction block completes.
    """

    def __init__(self) -> None:
        self.balances: dict[str, UserBalance] = {}
        self.transactions: dict[str, list[BalanceTransaction]] = defaultdict(list)
        self.summaries: dict[tuple[str, date], DailyUsageSummary] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.subscription_refs: dict[str, str] = {}
        self.user_tiers: dict[str, UserTier] = {}
        self.processed_events: set[str] = set()
        self.locks = UserLocks()

    @asynccontextmanager
    async def transaction(self, user_id: str) -> AsyncIterator[_InMemorySession]:
        async with self.locks.hold(user_id):
            session = _InMemorySession(self)
            yield session
            session.commit()

    async def get_balance(self, user_id: str) -> UserBalance | None:
        balance = self.balances.get(user_id)
        return balance.model_copy(deep=True) if balance else None

    async def get_subscription(self, user_id: str) -> Subscription | None:
        subscription = self.subscriptions.get(user_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def find_subscription_by_ref(self, subscription_ref: str) -> Subscription | None:
        user_id = self.subscription_refs.get(subscription_ref)
        if not user_id:
            return None
        return await self.get_subscription(user_id)

    async def get_user_tier(self, user_id: str) -> UserTier | None:
        return self.user_tiers.get(user_id)

    async def list_transactions(
        self, user_id: str, limit: int | None = None
    ) -> list[BalanceTransaction]:
        entries = list(self.transactions.get(user_id, []))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    async def list_daily_summaries(
        self, user_id: str, start: date, end: date
    ) -> list[DailyUsageSummary]:
        rows = [
            summary.model_copy(deep=True)
            for (owner, day), summary in self.summaries.items()
            if owner == user_id and start <= day <= end
        ]
        return sorted(rows, key=lambda summary: summary.date)

    async def list_users_with_allowance(self) -> list[str]:
        return [user_id for user_id, balance in self.balances.items() if balance.daily_allowance > 0]
