"""Domain errors raised by the billing services."""


class BillingError(Exception):
    """Base class for billing and entitlement errors."""


class InvalidAmount(BillingError, ValueError):
    """A credit amount was negative, fractional, or could not be parsed."""

    def __init__(self, value: object, message: str | None = None) -> None:
        self.value = value
        super().__init__(message or f"Invalid credit amount: {value!r}")


class InsufficientCredits(BillingError):
    """The ledger cannot cover the requested amount. Triggers the paywall."""

    def __init__(self, requested: int, available: int) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {requested}, available: {available}."
        )


class DuplicateTransaction(BillingError):
    """A transaction or idempotency key was already applied.

    Success-equivalent: callers receive the prior result instead of an error.
    """

    def __init__(self, key: str, prior_result: object = None) -> None:
        self.key = key
        self.prior_result = prior_result
        super().__init__(f"Transaction already applied: {key}")


class SubscriptionQueryFailed(BillingError):
    """The subscription status source could not be queried."""


class LedgerConflict(BillingError):
    """Optimistic write retries were exhausted for an account."""

    def __init__(self, account_id: str, attempts: int) -> None:
        self.account_id = account_id
        self.attempts = attempts
        super().__init__(
            f"Concurrent update conflict for account {account_id} after {attempts} attempts"
        )
