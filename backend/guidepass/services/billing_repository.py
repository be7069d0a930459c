"""Billing state repositories.

All writes are conditional: ledger and subscription rows carry a `version`
and are only replaced when the caller's expected version still matches, and
idempotency keys, package purchases and processed provider events rely on
uniqueness constraints. Callers re-read and retry on a failed write.
"""

from datetime import UTC, datetime
from typing import Protocol

import structlog

from guidepass.config import SupabaseTablesConfig
from guidepass.errors import LedgerConflict
from guidepass.models.billing import PackagePurchase, SubscriptionRecord
from guidepass.models.ledger import LedgerRecord, UsageRecord

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingRepository(Protocol):
    """Storage contract for billing state."""

    async def get_ledger(self, account_id: str) -> LedgerRecord | None:
        """Fetch the ledger row for an account."""

    async def create_ledger(self, record: LedgerRecord) -> LedgerRecord:
        """Insert a ledger row unless one exists; return the stored row."""

    async def compare_and_set_ledger(
        self, record: LedgerRecord, expected_version: int
    ) -> LedgerRecord | None:
        """Replace the ledger row if its version is still `expected_version`.

        Returns the stored row (version bumped) or None on conflict.
        """

    async def claim_usage(self, usage: UsageRecord) -> UsageRecord | None:
        """Insert an idempotency record.

        Returns None when the claim succeeded, or the existing record when the
        key was already claimed.
        """

    async def complete_usage(self, usage: UsageRecord) -> None:
        """Store the result of a claimed usage."""

    async def abandon_usage(self, account_id: str, idempotency_key: str) -> None:
        """Delete a claim that was never completed."""

    async def release_usage(self, account_id: str, idempotency_key: str) -> UsageRecord | None:
        """Delete a completed usage record, returning it.

        Returns None when the key is unknown or its usage is still in flight.
        """

    async def get_subscription(self, account_id: str) -> SubscriptionRecord | None:
        """Fetch the subscription row for an account."""

    async def compare_and_set_subscription(
        self, record: SubscriptionRecord, expected_version: int | None
    ) -> SubscriptionRecord | None:
        """Write a subscription row.

        With `expected_version=None` the row is only inserted when absent.
        Returns the stored row or None on conflict.
        """

    async def add_package_purchase(self, purchase: PackagePurchase) -> bool:
        """Record a package purchase. False if the transaction id is known."""

    async def list_package_purchases(self, account_id: str) -> list[PackagePurchase]:
        """All package purchases on record for an account."""

    async def is_event_processed(self, event_id: str) -> bool:
        """Whether a provider event was already applied."""

    async def mark_event_processed(
        self, event_id: str, *, event_type: str, account_id: str, transaction_id: str
    ) -> bool:
        """Record a processed provider event.

        Returns True when the id is new; False if already recorded.
        """


class InMemoryBillingRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.ledgers: dict[str, LedgerRecord] = {}
        self.usage: dict[tuple[str, str], UsageRecord] = {}
        self.subscriptions: dict[str, SubscriptionRecord] = {}
        self.package_purchases: dict[str, PackagePurchase] = {}
        self.processed_events: dict[str, dict] = {}

    async def get_ledger(self, account_id: str) -> LedgerRecord | None:
        record = self.ledgers.get(account_id)
        return record.model_copy(deep=True) if record else None

    async def create_ledger(self, record: LedgerRecord) -> LedgerRecord:
        if record.account_id not in self.ledgers:
            self.ledgers[record.account_id] = record.model_copy(update={"version": 1})
        return self.ledgers[record.account_id].model_copy(deep=True)

    async def compare_and_set_ledger(
        self, record: LedgerRecord, expected_version: int
    ) -> LedgerRecord | None:
        current = self.ledgers.get(record.account_id)
        if current is None or current.version != expected_version:
            return None
        stored = record.model_copy(update={"version": expected_version + 1})
        self.ledgers[record.account_id] = stored
        return stored.model_copy(deep=True)

    async def claim_usage(self, usage: UsageRecord) -> UsageRecord | None:
        key = (usage.account_id, usage.idempotency_key)
        existing = self.usage.get(key)
        if existing is not None:
            return existing.model_copy(deep=True)
        self.usage[key] = usage.model_copy(deep=True)
        return None

    async def complete_usage(self, usage: UsageRecord) -> None:
        key = (usage.account_id, usage.idempotency_key)
        if key in self.usage:
            self.usage[key] = usage.model_copy(deep=True)

    async def abandon_usage(self, account_id: str, idempotency_key: str) -> None:
        key = (account_id, idempotency_key)
        existing = self.usage.get(key)
        if existing is not None and not existing.completed:
            del self.usage[key]

    async def release_usage(self, account_id: str, idempotency_key: str) -> UsageRecord | None:
        key = (account_id, idempotency_key)
        existing = self.usage.get(key)
        if existing is None or not existing.completed:
            return None
        return self.usage.pop(key)

    async def get_subscription(self, account_id: str) -> SubscriptionRecord | None:
        record = self.subscriptions.get(account_id)
        return record.model_copy(deep=True) if record else None

    async def compare_and_set_subscription(
        self, record: SubscriptionRecord, expected_version: int | None
    ) -> SubscriptionRecord | None:
        current = self.subscriptions.get(record.account_id)
        if expected_version is None:
            if current is not None:
                return None
            next_version = 1
        else:
            if current is None or current.version != expected_version:
                return None
            next_version = expected_version + 1
        stored = record.model_copy(update={"version": next_version})
        self.subscriptions[record.account_id] = stored
        return stored.model_copy(deep=True)

    async def add_package_purchase(self, purchase: PackagePurchase) -> bool:
        if purchase.transaction_id in self.package_purchases:
            return False
        self.package_purchases[purchase.transaction_id] = purchase.model_copy(deep=True)
        return True

    async def list_package_purchases(self, account_id: str) -> list[PackagePurchase]:
        return [
            purchase.model_copy(deep=True)
            for purchase in self.package_purchases.values()
            if purchase.account_id == account_id
        ]

    async def is_event_processed(self, event_id: str) -> bool:
        return event_id in self.processed_events

    async def mark_event_processed(
        self, event_id: str, *, event_type: str, account_id: str, transaction_id: str
    ) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events[event_id] = {
            "event_type": event_type,
            "account_id": account_id,
            "transaction_id": transaction_id,
            "processed_at": _utcnow(),
        }
        return True


class SupabaseBillingRepository:
    """Supabase-backed repository for billing state.

    Conditional writes map onto PostgREST filters: `update ... eq(version)`
    for compare-and-set, and `upsert(ignore_duplicates=True)` against a unique
    index for insert-if-absent. Both return only the rows actually written.
    """

    def __init__(self, client, tables: SupabaseTablesConfig):
        self.client = client
        self.tables = tables

    async def _select_one(self, table: str, **filters: str) -> dict | None:
        query = self.client.table(table).select("*")
        for column, value in filters.items():
            query = query.eq(column, value)
        response = await query.limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    async def _insert_if_absent(self, table: str, payload: dict, on_conflict: str) -> list[dict]:
        response = (
            await self.client.table(table)
            .upsert(payload, on_conflict=on_conflict, ignore_duplicates=True)
            .execute()
        )
        return response.data or []

    async def get_ledger(self, account_id: str) -> LedgerRecord | None:
        row = await self._select_one(self.tables.ledgers, account_id=account_id)
        return LedgerRecord.model_validate(row) if row else None

    async def create_ledger(self, record: LedgerRecord) -> LedgerRecord:
        payload = record.model_dump(mode="json")
        payload["version"] = 1
        payload["updated_at"] = _utcnow().isoformat()
        rows = await self._insert_if_absent(self.tables.ledgers, payload, "account_id")
        if rows:
            return LedgerRecord.model_validate(rows[0])
        stored = await self.get_ledger(record.account_id)
        if stored is None:
            raise LedgerConflict(record.account_id, 1)
        return stored

    async def compare_and_set_ledger(
        self, record: LedgerRecord, expected_version: int
    ) -> LedgerRecord | None:
        payload = record.model_dump(mode="json", exclude={"account_id"})
        payload["version"] = expected_version + 1
        payload["updated_at"] = _utcnow().isoformat()
        response = (
            await self.client.table(self.tables.ledgers)
            .update(payload)
            .eq("account_id", record.account_id)
            .eq("version", expected_version)
            .execute()
        )
        rows = response.data or []
        return LedgerRecord.model_validate(rows[0]) if rows else None

    async def claim_usage(self, usage: UsageRecord) -> UsageRecord | None:
        payload = usage.model_dump(mode="json")
        payload["created_at"] = _utcnow().isoformat()
        rows = await self._insert_if_absent(
            self.tables.usage, payload, "account_id,idempotency_key"
        )
        if rows:
            return None
        existing = await self._select_one(
            self.tables.usage,
            account_id=usage.account_id,
            idempotency_key=usage.idempotency_key,
        )
        if existing is None:
            # Claimed and released by a concurrent request between our calls
            raise LedgerConflict(usage.account_id, 1)
        return UsageRecord.model_validate(existing)

    async def complete_usage(self, usage: UsageRecord) -> None:
        payload = usage.model_dump(mode="json", exclude={"account_id", "idempotency_key"})
        await (
            self.client.table(self.tables.usage)
            .update(payload)
            .eq("account_id", usage.account_id)
            .eq("idempotency_key", usage.idempotency_key)
            .execute()
        )

    async def abandon_usage(self, account_id: str, idempotency_key: str) -> None:
        await (
            self.client.table(self.tables.usage)
            .delete()
            .eq("account_id", account_id)
            .eq("idempotency_key", idempotency_key)
            .eq("completed", False)
            .execute()
        )

    async def release_usage(self, account_id: str, idempotency_key: str) -> UsageRecord | None:
        response = (
            await self.client.table(self.tables.usage)
            .delete()
            .eq("account_id", account_id)
            .eq("idempotency_key", idempotency_key)
            .eq("completed", True)
            .execute()
        )
        rows = response.data or []
        return UsageRecord.model_validate(rows[0]) if rows else None

    async def get_subscription(self, account_id: str) -> SubscriptionRecord | None:
        row = await self._select_one(self.tables.subscriptions, account_id=account_id)
        return SubscriptionRecord.model_validate(row) if row else None

    async def compare_and_set_subscription(
        self, record: SubscriptionRecord, expected_version: int | None
    ) -> SubscriptionRecord | None:
        payload = record.model_dump(mode="json")
        payload["updated_at"] = _utcnow().isoformat()

        if expected_version is None:
            payload["version"] = 1
            rows = await self._insert_if_absent(self.tables.subscriptions, payload, "account_id")
            return SubscriptionRecord.model_validate(rows[0]) if rows else None

        payload["version"] = expected_version + 1
        del payload["account_id"]
        response = (
            await self.client.table(self.tables.subscriptions)
            .update(payload)
            .eq("account_id", record.account_id)
            .eq("version", expected_version)
            .execute()
        )
        rows = response.data or []
        return SubscriptionRecord.model_validate(rows[0]) if rows else None

    async def add_package_purchase(self, purchase: PackagePurchase) -> bool:
        rows = await self._insert_if_absent(
            self.tables.package_purchases,
            purchase.model_dump(mode="json"),
            "transaction_id",
        )
        return bool(rows)

    async def list_package_purchases(self, account_id: str) -> list[PackagePurchase]:
        response = (
            await self.client.table(self.tables.package_purchases)
            .select("*")
            .eq("account_id", account_id)
            .execute()
        )
        return [PackagePurchase.model_validate(row) for row in response.data or []]

    async def is_event_processed(self, event_id: str) -> bool:
        row = await self._select_one(self.tables.processed_events, event_id=event_id)
        return row is not None

    async def mark_event_processed(
        self, event_id: str, *, event_type: str, account_id: str, transaction_id: str
    ) -> bool:
        rows = await self._insert_if_absent(
            self.tables.processed_events,
            {
                "event_id": event_id,
                "event_type": event_type,
                "account_id": account_id,
                "transaction_id": transaction_id,
                "processed_at": _utcnow().isoformat(),
            },
            "event_id",
        )
        if not rows:
            logger.info("event_already_marked", event_id=event_id)
        return bool(rows)
