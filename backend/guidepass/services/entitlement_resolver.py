"""Entitlement snapshot computation.

The snapshot drives UI and advisory access checks. It can be stale relative
to a concurrent transaction on another device; the binding double-spend check
happens in ConsumptionPolicy at the moment of use.
"""

from datetime import UTC, datetime

import structlog

from guidepass.config import BillingConfig
from guidepass.errors import SubscriptionQueryFailed
from guidepass.models.billing import EntitlementSnapshot, PackagePurchase, SubscriptionStatus
from guidepass.models.ledger import CreditLedger, LedgerRecord
from guidepass.services.billing_repository import BillingRepository
from guidepass.services.subscription_status import SubscriptionStatusProvider, grants_unlimited

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EntitlementResolver:
    """Merges subscription state, owned packages and the ledger. Read-only."""

    def __init__(
        self,
        repository: BillingRepository,
        status_provider: SubscriptionStatusProvider,
        config: BillingConfig,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.status_provider = status_provider
        self.config = config
        self.now_provider = now_provider

    async def _subscription_status(self, account_id: str) -> SubscriptionStatus:
        try:
            return await self.status_provider.get_subscription_status(account_id)
        except SubscriptionQueryFailed as e:
            # Never grant unlimited access on an error path
            logger.warning("subscription_query_failed", account_id=account_id, error=str(e))
            return SubscriptionStatus()

    async def has_unlimited_access(self, account_id: str) -> bool:
        status = await self._subscription_status(account_id)
        return grants_unlimited(status, self.now_provider())

    async def load_ledger(self, account_id: str) -> CreditLedger:
        """The account's ledger, or the signup ledger if none is stored yet."""
        record = await self.repository.get_ledger(account_id)
        if record is None:
            record = LedgerRecord(
                account_id=account_id, trial_available=self.config.free_trial_credits
            )
        return record.to_ledger()

    def _active_purchases(self, purchases: list[PackagePurchase]) -> list[PackagePurchase]:
        now = self.now_provider()
        return [
            purchase
            for purchase in purchases
            if purchase.expires_at is None or purchase.expires_at > now
        ]

    async def get_entitlement_snapshot(self, account_id: str) -> EntitlementSnapshot:
        status = await self._subscription_status(account_id)
        ledger = await self.load_ledger(account_id)
        purchases = self._active_purchases(
            await self.repository.list_package_purchases(account_id)
        )
        owned_package_ids = {purchase.package_id for purchase in purchases}

        if grants_unlimited(status, self.now_provider()):
            return EntitlementSnapshot(
                has_unlimited_access=True,
                total_limit=self.config.unlimited_usage_limit,
                used=ledger.total_used,
                remaining=self.config.unlimited_usage_limit,
                owned_package_ids=owned_package_ids,
            )

        package_limit = sum(purchase.credits for purchase in purchases)
        total_limit = self.config.free_trial_credits + package_limit
        used = ledger.total_used
        return EntitlementSnapshot(
            has_unlimited_access=False,
            total_limit=total_limit,
            used=used,
            remaining=max(0, total_limit - used),
            owned_package_ids=owned_package_ids,
        )
