"""Subscription, purchase and entitlement models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionType(str, Enum):
    """Subscription kinds on record.

    Legacy kinds are no longer sold but grant the same access as UNLIMITED.
    """

    FREE = "free"
    UNLIMITED = "unlimited"
    LEGACY_MONTHLY = "legacy_monthly"
    LEGACY_YEARLY = "legacy_yearly"
    LEGACY_LIFETIME = "legacy_lifetime"


class ProductFamily(str, Enum):
    """Product family resolved once from a store product identifier."""

    UNLIMITED = "unlimited"
    LEGACY_SUBSCRIPTION = "legacy_subscription"
    PACKAGE = "package"
    UNKNOWN = "unknown"


class EventType(str, Enum):
    """Purchase lifecycle events delivered by the payment provider."""

    INITIAL_PURCHASE = "initial_purchase"
    RENEWAL = "renewal"
    NON_RENEWING_PURCHASE = "non_renewing_purchase"
    CANCELLATION = "cancellation"
    EXPIRATION = "expiration"
    BILLING_ISSUE = "billing_issue"
    PRODUCT_CHANGE = "product_change"


PURCHASE_EVENT_TYPES = {
    EventType.INITIAL_PURCHASE,
    EventType.RENEWAL,
    EventType.NON_RENEWING_PURCHASE,
}


class CatalogProduct(BaseModel):
    """A store product with its family tag and what it grants."""

    product_id: str
    family: ProductFamily
    subscription_type: SubscriptionType | None = None
    package_id: str | None = None
    credits: int = Field(default=0, ge=0)


class PackageDefinition(BaseModel):
    """A consumable credit package offered in the store."""

    package_id: str
    product_id: str
    name: str
    credits: int = Field(ge=0)
    is_active: bool = True


class SubscriptionRecord(BaseModel):
    """Persisted subscription state for an account."""

    account_id: str
    type: SubscriptionType = SubscriptionType.FREE
    is_active: bool = False
    expires_at: datetime | None = None
    auto_renew: bool = False
    product_id: str | None = None
    original_transaction_id: str | None = None
    transaction_id: str | None = None
    store: str | None = None
    purchased_at: datetime | None = None
    version: int = Field(default=0, ge=0)


class SubscriptionStatus(BaseModel):
    """Subscription state as reported by a status provider."""

    type: SubscriptionType = SubscriptionType.FREE
    is_active: bool = False
    expires_at: datetime | None = None
    auto_renew: bool = False
    in_trial: bool = False
    in_grace_period: bool = False


class PackagePurchase(BaseModel):
    """Ownership row for one purchase of a credit package."""

    account_id: str
    package_id: str
    transaction_id: str
    # Credits paid for, fixed when the purchase is recorded
    credits: int = Field(default=0, ge=0)
    purchased_at: datetime
    expires_at: datetime | None = None


class PurchaseEvent(BaseModel):
    """Normalized lifecycle event from the payment provider.

    `event_id` identifies the delivery and is the replay key. `transaction_id`
    is the store purchase it refers to and is shared by every lifecycle event
    of that purchase.
    """

    event_id: str
    type: EventType
    account_id: str
    product_id: str
    transaction_id: str
    original_transaction_id: str | None = None
    purchased_at: datetime
    expires_at: datetime | None = None
    store: str | None = None


class ReconcileStatus(str, Enum):
    """Result of handling one purchase event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class ReconcileOutcome(BaseModel):
    """Outcome returned to the webhook handler."""

    event_id: str
    transaction_id: str
    status: ReconcileStatus
    detail: str | None = None


class EntitlementSnapshot(BaseModel):
    """Read-only projection of what an account may currently do."""

    has_unlimited_access: bool
    total_limit: int
    used: int
    remaining: int
    owned_package_ids: set[str] = Field(default_factory=set)


class ConsumeOutcome(BaseModel):
    """Result of a feature-use transaction."""

    ok: bool = True
    duplicate: bool = False
    unlimited: bool = False
    from_trial: int = 0
    from_purchased: int = 0
    remaining: int
