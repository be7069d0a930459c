"""Subscription status providers."""

from datetime import UTC, datetime
from typing import Protocol

import structlog

from guidepass.errors import SubscriptionQueryFailed
from guidepass.models.billing import SubscriptionStatus, SubscriptionType
from guidepass.services.billing_repository import BillingRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionStatusProvider(Protocol):
    """Reports an account's subscription state on demand."""

    async def get_subscription_status(self, account_id: str) -> SubscriptionStatus:
        """Return the current status.

        Raises:
            SubscriptionQueryFailed: the status source could not be queried.
        """


class RepositorySubscriptionStatusProvider:
    """Derives subscription status from the persisted subscription record."""

    def __init__(self, repository: BillingRepository, now_provider=_utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider

    async def get_subscription_status(self, account_id: str) -> SubscriptionStatus:
        try:
            record = await self.repository.get_subscription(account_id)
        except Exception as e:
            raise SubscriptionQueryFailed(
                f"Could not load subscription for account {account_id}: {e}"
            ) from e

        if record is None:
            return SubscriptionStatus()

        expired = record.expires_at is not None and record.expires_at <= self.now_provider()
        return SubscriptionStatus(
            type=record.type,
            is_active=record.is_active and not expired,
            expires_at=record.expires_at,
            auto_renew=record.auto_renew,
        )


def grants_unlimited(status: SubscriptionStatus, now: datetime) -> bool:
    """Whether a status grants unlimited access. Legacy types count."""
    if status.type == SubscriptionType.FREE or not status.is_active:
        return False
    return status.expires_at is None or status.expires_at > now
