"""Credit ledger value models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BucketName(str, Enum):
    """Origin of a credit bucket."""

    TRIAL = "trial"
    PURCHASED = "purchased"


class CreditBucket(BaseModel):
    """Available/used pair tracking one credit origin."""

    model_config = ConfigDict(frozen=True)

    available: int = Field(default=0, ge=0)
    used: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.available + self.used


class CreditLedger(BaseModel):
    """Two-bucket credit record for an account.

    Trial credits are consumed first and refunded last; purchased credits are
    consumed last and refunded first.
    """

    model_config = ConfigDict(frozen=True)

    trial: CreditBucket = Field(default_factory=CreditBucket)
    purchased: CreditBucket = Field(default_factory=CreditBucket)

    @property
    def total(self) -> int:
        return self.trial.total + self.purchased.total

    @property
    def available(self) -> int:
        return self.trial.available + self.purchased.available

    @property
    def total_used(self) -> int:
        return self.trial.used + self.purchased.used

    @property
    def percent_available(self) -> int:
        total = self.total
        if total == 0:
            return 0
        # Half-up rounding of available / total * 100
        return (self.available * 200 + total) // (2 * total)

    def bucket(self, name: BucketName) -> CreditBucket:
        return self.trial if name == BucketName.TRIAL else self.purchased


class ConsumeResult(BaseModel):
    """Outcome of a saturating consume."""

    ledger: CreditLedger
    from_trial: int = 0
    from_purchased: int = 0
    shortfall: int = 0  # requested but not available

    @property
    def consumed(self) -> int:
        return self.from_trial + self.from_purchased


class RefundResult(BaseModel):
    """Outcome of a saturating refund."""

    ledger: CreditLedger
    to_purchased: int = 0
    to_trial: int = 0
    discarded: int = 0

    @property
    def refunded(self) -> int:
        return self.to_purchased + self.to_trial


class CreditSummary(BaseModel):
    """Flattened ledger view returned to clients."""

    available: int
    used: int
    total: int
    purchased_available: int
    percent_available: int


class LedgerRecord(BaseModel):
    """Persisted, versioned ledger state for one account."""

    account_id: str
    trial_available: int = Field(default=0, ge=0)
    trial_used: int = Field(default=0, ge=0)
    purchased_available: int = Field(default=0, ge=0)
    purchased_used: int = Field(default=0, ge=0)
    # Package credits already materialized into the purchased bucket
    granted_package_credits: int = Field(default=0, ge=0)
    version: int = Field(default=0, ge=0)

    def to_ledger(self) -> CreditLedger:
        return CreditLedger(
            trial=CreditBucket(available=self.trial_available, used=self.trial_used),
            purchased=CreditBucket(
                available=self.purchased_available, used=self.purchased_used
            ),
        )

    def with_ledger(self, ledger: CreditLedger) -> "LedgerRecord":
        """Return a copy holding `ledger`, version unchanged."""
        return self.model_copy(
            update={
                "trial_available": ledger.trial.available,
                "trial_used": ledger.trial.used,
                "purchased_available": ledger.purchased.available,
                "purchased_used": ledger.purchased.used,
            }
        )


class UsageRecord(BaseModel):
    """Idempotency record for one feature-use transaction."""

    account_id: str
    idempotency_key: str
    amount: int = Field(ge=0)
    from_trial: int = Field(default=0, ge=0)
    from_purchased: int = Field(default=0, ge=0)
    remaining: int | None = None
    completed: bool = False
