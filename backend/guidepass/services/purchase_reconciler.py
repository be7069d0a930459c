"""Applies payment provider lifecycle events to persisted billing state.

Events can arrive more than once and out of order. Each provider event id is
checked against the persisted processed set before applying and recorded
after. The store transaction id is shared by all lifecycle events of one
purchase, so it cannot serve as the replay key. Every apply step is itself
idempotent, so a crash between check and record is safe on redelivery.
"""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from guidepass.config import BillingConfig
from guidepass.errors import DuplicateTransaction, LedgerConflict
from guidepass.models.billing import (
    PURCHASE_EVENT_TYPES,
    CatalogProduct,
    EventType,
    PackagePurchase,
    ProductFamily,
    PurchaseEvent,
    ReconcileOutcome,
    ReconcileStatus,
    SubscriptionRecord,
)
from guidepass.models.ledger import BucketName, LedgerRecord
from guidepass.services.billing_repository import BillingRepository
from guidepass.services.credit_ledger import grant
from guidepass.services.ledger_store import LedgerStore
from guidepass.services.product_catalog import ProductCatalog

logger = structlog.get_logger(__name__)

SUBSCRIPTION_FAMILIES = {ProductFamily.UNLIMITED, ProductFamily.LEGACY_SUBSCRIPTION}

SubscriptionMutation = Callable[[SubscriptionRecord | None], SubscriptionRecord | None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_later(new: datetime | None, existing: datetime | None) -> bool:
    """Whether expiration `new` extends `existing`. None never expires."""
    if existing is None:
        return False
    if new is None:
        return True
    return new > existing


def _matches(record: SubscriptionRecord, event: PurchaseEvent) -> bool:
    if event.original_transaction_id is None or record.original_transaction_id is None:
        return True
    return record.original_transaction_id == event.original_transaction_id


class PurchaseReconciler:
    """Idempotent writer of subscription records and package ownership."""

    def __init__(
        self,
        repository: BillingRepository,
        store: LedgerStore,
        catalog: ProductCatalog,
        config: BillingConfig,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.store = store
        self.catalog = catalog
        self.config = config
        self.now_provider = now_provider

    async def _ensure_new(self, event: PurchaseEvent) -> None:
        if await self.repository.is_event_processed(event.event_id):
            raise DuplicateTransaction(event.event_id)

    async def handle_event(self, event: PurchaseEvent) -> ReconcileOutcome:
        log = logger.bind(
            account_id=event.account_id,
            event_id=event.event_id,
            transaction_id=event.transaction_id,
            event_type=event.type.value,
            product_id=event.product_id,
        )
        try:
            await self._ensure_new(event)
        except DuplicateTransaction:
            log.info("purchase_event_duplicate")
            return self._outcome(event, ReconcileStatus.DUPLICATE)

        product = self.catalog.resolve(event.product_id)
        outcome = await self._apply(event, product)

        await self.repository.mark_event_processed(
            event.event_id,
            event_type=event.type.value,
            account_id=event.account_id,
            transaction_id=event.transaction_id,
        )
        log.info(
            "purchase_event_processed",
            product_family=product.family.value,
            status=outcome.status.value,
            detail=outcome.detail,
        )
        return outcome

    def _outcome(
        self, event: PurchaseEvent, status: ReconcileStatus, detail: str | None = None
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            event_id=event.event_id,
            transaction_id=event.transaction_id,
            status=status,
            detail=detail,
        )

    async def _apply(self, event: PurchaseEvent, product: CatalogProduct) -> ReconcileOutcome:
        if event.type in PURCHASE_EVENT_TYPES:
            if product.family in SUBSCRIPTION_FAMILIES:
                return await self._apply_subscription_purchase(event, product)
            if product.family == ProductFamily.PACKAGE:
                return await self._apply_package_purchase(event, product)
            logger.warning(
                "purchase_event_unknown_product",
                account_id=event.account_id,
                transaction_id=event.transaction_id,
                product_id=event.product_id,
            )
            return self._outcome(event, ReconcileStatus.IGNORED, "unknown product")

        if event.type == EventType.CANCELLATION:
            return await self._apply_cancellation(event)
        if event.type == EventType.EXPIRATION:
            return await self._apply_expiration(event)
        if event.type == EventType.PRODUCT_CHANGE:
            return await self._apply_product_change(event, product)

        # EventType.BILLING_ISSUE: grace-period handling is a product decision
        logger.warning(
            "billing_issue_reported",
            account_id=event.account_id,
            transaction_id=event.transaction_id,
            product_id=event.product_id,
        )
        return self._outcome(event, ReconcileStatus.APPLIED, "logged")

    async def _write_subscription(
        self, account_id: str, mutate: SubscriptionMutation
    ) -> SubscriptionRecord | None:
        """Conditionally write `mutate(current)`; None from `mutate` skips the write."""
        attempts = self.config.max_write_attempts
        for attempt in range(1, attempts + 1):
            current = await self.repository.get_subscription(account_id)
            updated = mutate(current)
            if updated is None:
                return None

            expected_version = current.version if current is not None else None
            stored = await self.repository.compare_and_set_subscription(updated, expected_version)
            if stored is not None:
                return stored

            logger.info("subscription_conflict_retry", account_id=account_id, attempt=attempt)

        logger.warning("subscription_conflict_exhausted", account_id=account_id, attempts=attempts)
        raise LedgerConflict(account_id, attempts)

    async def _apply_subscription_purchase(
        self, event: PurchaseEvent, product: CatalogProduct
    ) -> ReconcileOutcome:
        now = self.now_provider()

        def mutate(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            if current is not None:
                still_valid = current.is_active and (
                    current.expires_at is None or current.expires_at > now
                )
                if still_valid and not _is_later(event.expires_at, current.expires_at):
                    return None

            base = current or SubscriptionRecord(account_id=event.account_id)
            return base.model_copy(
                update={
                    "type": product.subscription_type,
                    "is_active": True,
                    "expires_at": event.expires_at,
                    "auto_renew": event.type != EventType.NON_RENEWING_PURCHASE,
                    "product_id": event.product_id,
                    "original_transaction_id": event.original_transaction_id
                    or event.transaction_id,
                    "transaction_id": event.transaction_id,
                    "store": event.store,
                    "purchased_at": event.purchased_at,
                }
            )

        stored = await self._write_subscription(event.account_id, mutate)
        if stored is None:
            logger.info(
                "subscription_event_stale",
                account_id=event.account_id,
                transaction_id=event.transaction_id,
                expires_at=event.expires_at,
            )
            return self._outcome(event, ReconcileStatus.IGNORED, "existing expiration is later")
        return self._outcome(event, ReconcileStatus.APPLIED, stored.type.value)

    async def _apply_package_purchase(
        self, event: PurchaseEvent, product: CatalogProduct
    ) -> ReconcileOutcome:
        added = await self.repository.add_package_purchase(
            PackagePurchase(
                account_id=event.account_id,
                package_id=product.package_id,
                transaction_id=event.transaction_id,
                credits=product.credits,
                purchased_at=event.purchased_at,
            )
        )
        if not added:
            logger.info(
                "package_purchase_already_recorded",
                account_id=event.account_id,
                transaction_id=event.transaction_id,
            )

        # Each row carries the credits it was bought with, so the sum only grows
        # even when a package is later retired or repriced in the catalog.
        purchases = await self.repository.list_package_purchases(event.account_id)
        capacity = sum(purchase.credits for purchase in purchases)

        def top_up(record: LedgerRecord) -> tuple[LedgerRecord, int]:
            missing = capacity - record.granted_package_credits
            if missing <= 0:
                return record, 0
            ledger = grant(record.to_ledger(), BucketName.PURCHASED, missing)
            updated = record.with_ledger(ledger).model_copy(
                update={"granted_package_credits": capacity}
            )
            return updated, missing

        record, granted = await self.store.update_record(event.account_id, top_up)
        logger.info(
            "package_credits_granted",
            account_id=event.account_id,
            package_id=product.package_id,
            granted=granted,
            purchased_available=record.purchased_available,
        )
        return self._outcome(event, ReconcileStatus.APPLIED, product.package_id)

    async def _apply_cancellation(self, event: PurchaseEvent) -> ReconcileOutcome:
        def mutate(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            if current is None or not _matches(current, event) or not current.auto_renew:
                return None
            return current.model_copy(update={"auto_renew": False})

        stored = await self._write_subscription(event.account_id, mutate)
        if stored is None:
            return self._outcome(event, ReconcileStatus.IGNORED, "no renewing subscription")
        return self._outcome(event, ReconcileStatus.APPLIED, "auto_renew disabled")

    async def _apply_expiration(self, event: PurchaseEvent) -> ReconcileOutcome:
        stale = False

        def mutate(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            nonlocal stale
            if current is None or not _matches(current, event) or not current.is_active:
                return None
            if event.expires_at is not None and _is_later(current.expires_at, event.expires_at):
                stale = True
                return None
            return current.model_copy(update={"is_active": False})

        stored = await self._write_subscription(event.account_id, mutate)
        if stored is None:
            if stale:
                logger.info(
                    "subscription_expiration_stale",
                    account_id=event.account_id,
                    transaction_id=event.transaction_id,
                )
                return self._outcome(event, ReconcileStatus.IGNORED, "renewed since expiration")
            return self._outcome(event, ReconcileStatus.IGNORED, "no active subscription")
        return self._outcome(event, ReconcileStatus.APPLIED, "deactivated")

    async def _apply_product_change(
        self, event: PurchaseEvent, product: CatalogProduct
    ) -> ReconcileOutcome:
        if product.family not in SUBSCRIPTION_FAMILIES:
            logger.warning(
                "product_change_not_subscription",
                account_id=event.account_id,
                product_id=event.product_id,
            )
            return self._outcome(event, ReconcileStatus.IGNORED, "not a subscription product")

        def mutate(current: SubscriptionRecord | None) -> SubscriptionRecord | None:
            if current is None or not _matches(current, event):
                return None
            return current.model_copy(
                update={"type": product.subscription_type, "product_id": event.product_id}
            )

        stored = await self._write_subscription(event.account_id, mutate)
        if stored is None:
            return self._outcome(event, ReconcileStatus.IGNORED, "no matching subscription")
        return self._outcome(event, ReconcileStatus.APPLIED, stored.type.value)
