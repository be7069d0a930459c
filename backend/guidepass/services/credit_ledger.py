"""Pure credit ledger arithmetic.

Every function takes and returns immutable `CreditLedger` values and performs
no I/O, so callers may use them from any thread or task. Consumption drains
the trial bucket before the purchased bucket; refunds go back in the reverse
order (purchased first). The two orders are intentionally asymmetric: a
consume followed by a refund of the same amount restores `available` and
`total`, but not necessarily the per-bucket split.
"""

import math
from numbers import Real

from guidepass.errors import InvalidAmount
from guidepass.models.ledger import (
    BucketName,
    ConsumeResult,
    CreditBucket,
    CreditLedger,
    CreditSummary,
    RefundResult,
)


def parse_amount(value: object) -> int:
    """Parse an externally supplied credit amount into a non-negative int.

    Accepts ints, integral floats and plain decimal strings. Booleans, None,
    fractions, negatives and anything else raise `InvalidAmount`.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(value)

    if isinstance(value, int):
        amount = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise InvalidAmount(value, f"Credit amount must be a whole number: {value!r}")
        amount = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text.isdecimal():
            raise InvalidAmount(value)
        amount = int(text)
    else:
        raise InvalidAmount(value)

    if amount < 0:
        raise InvalidAmount(value, f"Credit amount must not be negative: {value!r}")
    return amount


def _floor_non_negative(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, Real):
        raise InvalidAmount(amount)
    if not math.isfinite(amount):
        raise InvalidAmount(amount)
    return max(0, math.floor(amount))


def create_ledger(
    trial_available: int,
    trial_used: int,
    purchased_available: int,
    purchased_used: int,
) -> CreditLedger:
    """Build a ledger, rejecting negative or non-integer counts."""
    counts = (trial_available, trial_used, purchased_available, purchased_used)
    for count in counts:
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise InvalidAmount(count)

    return CreditLedger(
        trial=CreditBucket(available=trial_available, used=trial_used),
        purchased=CreditBucket(available=purchased_available, used=purchased_used),
    )


def consume_saturating(ledger: CreditLedger, amount: float) -> ConsumeResult:
    """Consume up to `amount` credits, trial first.

    Requests larger than the available balance consume everything available
    and report the unmet part as `shortfall` instead of failing.
    """
    requested = _floor_non_negative(amount)
    if requested == 0:
        return ConsumeResult(ledger=ledger)

    from_trial = min(requested, ledger.trial.available)
    from_purchased = min(requested - from_trial, ledger.purchased.available)

    updated = CreditLedger(
        trial=CreditBucket(
            available=ledger.trial.available - from_trial,
            used=ledger.trial.used + from_trial,
        ),
        purchased=CreditBucket(
            available=ledger.purchased.available - from_purchased,
            used=ledger.purchased.used + from_purchased,
        ),
    )
    return ConsumeResult(
        ledger=updated,
        from_trial=from_trial,
        from_purchased=from_purchased,
        shortfall=requested - from_trial - from_purchased,
    )


def refund_saturating(ledger: CreditLedger, amount: float) -> RefundResult:
    """Return up to `amount` used credits to their buckets, purchased first.

    Anything beyond the ledger's total usage is discarded, so `available`
    never exceeds `total`.
    """
    requested = _floor_non_negative(amount)
    if requested == 0:
        return RefundResult(ledger=ledger)

    to_purchased = min(requested, ledger.purchased.used)
    to_trial = min(requested - to_purchased, ledger.trial.used)

    updated = CreditLedger(
        trial=CreditBucket(
            available=ledger.trial.available + to_trial,
            used=ledger.trial.used - to_trial,
        ),
        purchased=CreditBucket(
            available=ledger.purchased.available + to_purchased,
            used=ledger.purchased.used - to_purchased,
        ),
    )
    return RefundResult(
        ledger=updated,
        to_purchased=to_purchased,
        to_trial=to_trial,
        discarded=requested - to_purchased - to_trial,
    )


def grant(ledger: CreditLedger, bucket: BucketName, amount: int) -> CreditLedger:
    """Add `amount` new credits to the available side of `bucket`."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise InvalidAmount(amount)
    if amount == 0:
        return ledger

    current = ledger.bucket(bucket)
    raised = CreditBucket(available=current.available + amount, used=current.used)
    if bucket == BucketName.TRIAL:
        return CreditLedger(trial=raised, purchased=ledger.purchased)
    return CreditLedger(trial=ledger.trial, purchased=raised)


def credit_summary(ledger: CreditLedger) -> CreditSummary:
    return CreditSummary(
        available=ledger.available,
        used=ledger.total_used,
        total=ledger.total,
        purchased_available=ledger.purchased.available,
        percent_available=ledger.percent_available,
    )
