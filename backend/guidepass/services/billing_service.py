"""Billing facade used by the API layer."""

from datetime import UTC, datetime

import structlog

from guidepass.config import BillingConfig, CatalogConfig
from guidepass.models.billing import (
    ConsumeOutcome,
    EntitlementSnapshot,
    PurchaseEvent,
    ReconcileOutcome,
)
from guidepass.models.ledger import CreditLedger, CreditSummary, LedgerRecord
from guidepass.services.billing_repository import BillingRepository
from guidepass.services.consumption_policy import ConsumptionPolicy
from guidepass.services.credit_ledger import credit_summary, parse_amount
from guidepass.services.entitlement_resolver import EntitlementResolver
from guidepass.services.ledger_store import LedgerStore
from guidepass.services.product_catalog import ProductCatalog
from guidepass.services.purchase_reconciler import PurchaseReconciler
from guidepass.services.subscription_status import (
    RepositorySubscriptionStatusProvider,
    SubscriptionStatusProvider,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingService:
    """Entitlement reads, feature-use transactions and purchase ingestion."""

    def __init__(
        self,
        repository: BillingRepository,
        config: BillingConfig,
        catalog: ProductCatalog | None = None,
        status_provider: SubscriptionStatusProvider | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.config = config
        self.catalog = catalog or ProductCatalog(CatalogConfig())
        self.now_provider = now_provider
        self.status_provider = status_provider or RepositorySubscriptionStatusProvider(
            repository, now_provider=now_provider
        )
        self.store = LedgerStore(repository, config)
        self.policy = ConsumptionPolicy(repository, self.store)
        self.resolver = EntitlementResolver(
            repository,
            self.status_provider,
            config,
            now_provider=now_provider,
        )
        self.reconciler = PurchaseReconciler(
            repository,
            self.store,
            self.catalog,
            config,
            now_provider=now_provider,
        )

    async def ensure_ledger(self, account_id: str) -> LedgerRecord:
        """Create the signup ledger with the trial allotment if missing."""
        return await self.store.ensure(account_id)

    async def get_entitlement_snapshot(self, account_id: str) -> EntitlementSnapshot:
        return await self.resolver.get_entitlement_snapshot(account_id)

    async def get_credit_summary(self, account_id: str) -> CreditSummary:
        ledger = await self.resolver.load_ledger(account_id)
        return credit_summary(ledger)

    async def try_consume(
        self, account_id: str, amount: object = 1, *, idempotency_key: str
    ) -> ConsumeOutcome:
        """Record one use of the paid feature.

        Unlimited subscribers are allowed without touching the ledger.

        Raises:
            InvalidAmount, InsufficientCredits, LedgerConflict
        """
        requested = parse_amount(amount)
        if await self.resolver.has_unlimited_access(account_id):
            logger.info(
                "usage_unlimited",
                account_id=account_id,
                idempotency_key=idempotency_key,
            )
            return ConsumeOutcome(unlimited=True, remaining=self.config.unlimited_usage_limit)
        return await self.policy.try_consume(account_id, requested, idempotency_key)

    async def release_usage(self, account_id: str, idempotency_key: str) -> CreditLedger | None:
        return await self.policy.release(account_id, idempotency_key)

    async def refund(self, account_id: str, amount: object, reason: str) -> CreditLedger:
        return await self.policy.refund(account_id, amount, reason)

    async def handle_purchase_event(self, event: PurchaseEvent) -> ReconcileOutcome:
        return await self.reconciler.handle_event(event)
