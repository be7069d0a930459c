"""All-or-nothing credit consumption with idempotency.

The saturating ledger primitive is never exposed here: a request larger than
the available balance is rejected outright and leaves the ledger untouched.
Each transaction is applied at most once per `(account_id, idempotency_key)`,
enforced by the repository's uniqueness constraint rather than local state.
"""

import structlog

from guidepass.errors import DuplicateTransaction, InsufficientCredits
from guidepass.models.billing import ConsumeOutcome
from guidepass.models.ledger import ConsumeResult, CreditLedger, UsageRecord
from guidepass.services.billing_repository import BillingRepository
from guidepass.services.credit_ledger import consume_saturating, parse_amount, refund_saturating
from guidepass.services.ledger_store import LedgerStore

logger = structlog.get_logger(__name__)


class ConsumptionPolicy:
    """Turns ledger arithmetic into product transactions."""

    def __init__(self, repository: BillingRepository, store: LedgerStore) -> None:
        self.repository = repository
        self.store = store

    @staticmethod
    def apply(ledger: CreditLedger, amount: object) -> ConsumeResult:
        """Consume exactly `amount` credits or raise InsufficientCredits."""
        requested = parse_amount(amount)
        if requested > ledger.available:
            raise InsufficientCredits(requested, ledger.available)
        return consume_saturating(ledger, requested)

    async def _claim(self, usage: UsageRecord) -> None:
        prior = await self.repository.claim_usage(usage)
        if prior is not None:
            raise DuplicateTransaction(usage.idempotency_key, prior_result=prior)

    async def _replay(self, prior: UsageRecord, requested: int) -> ConsumeOutcome:
        if prior.amount != requested:
            logger.warning(
                "usage_replay_amount_mismatch",
                account_id=prior.account_id,
                idempotency_key=prior.idempotency_key,
                recorded_amount=prior.amount,
                requested_amount=requested,
            )

        remaining = prior.remaining
        if remaining is None:
            # Original transaction still in flight on another instance
            remaining = (await self.store.ensure(prior.account_id)).to_ledger().available

        logger.info(
            "usage_replayed",
            account_id=prior.account_id,
            idempotency_key=prior.idempotency_key,
        )
        return ConsumeOutcome(
            duplicate=True,
            from_trial=prior.from_trial,
            from_purchased=prior.from_purchased,
            remaining=remaining,
        )

    async def try_consume(
        self, account_id: str, amount: object, idempotency_key: str
    ) -> ConsumeOutcome:
        """Consume credits once per idempotency key.

        Raises:
            InvalidAmount: `amount` is not a non-negative whole number.
            InsufficientCredits: the ledger cannot cover `amount`.
            LedgerConflict: concurrent writes exhausted the retry budget.
        """
        requested = parse_amount(amount)
        usage = UsageRecord(
            account_id=account_id, idempotency_key=idempotency_key, amount=requested
        )

        try:
            await self._claim(usage)
        except DuplicateTransaction as e:
            return await self._replay(e.prior_result, requested)

        def consume(ledger: CreditLedger) -> tuple[CreditLedger, ConsumeResult]:
            result = self.apply(ledger, requested)
            return result.ledger, result

        try:
            record, result = await self.store.update(account_id, consume)
        except Exception:
            await self.repository.abandon_usage(account_id, idempotency_key)
            raise

        remaining = record.to_ledger().available
        await self.repository.complete_usage(
            usage.model_copy(
                update={
                    "from_trial": result.from_trial,
                    "from_purchased": result.from_purchased,
                    "remaining": remaining,
                    "completed": True,
                }
            )
        )

        logger.info(
            "ledger_consumed",
            account_id=account_id,
            idempotency_key=idempotency_key,
            requested=requested,
            from_trial=result.from_trial,
            from_purchased=result.from_purchased,
            remaining=remaining,
        )
        return ConsumeOutcome(
            from_trial=result.from_trial,
            from_purchased=result.from_purchased,
            remaining=remaining,
        )

    async def refund(self, account_id: str, amount: object, reason: str) -> CreditLedger:
        """Return used credits, purchased first. Excess is discarded."""
        requested = parse_amount(amount)

        def refund(ledger: CreditLedger):
            result = refund_saturating(ledger, requested)
            return result.ledger, result

        record, result = await self.store.update(account_id, refund)
        logger.info(
            "ledger_refunded",
            account_id=account_id,
            reason=reason,
            requested=requested,
            to_purchased=result.to_purchased,
            to_trial=result.to_trial,
            discarded=result.discarded,
        )
        return record.to_ledger()

    async def release(self, account_id: str, idempotency_key: str) -> CreditLedger | None:
        """Undo the usage recorded under `idempotency_key`.

        Used when the paid feature failed after its credit was taken. Only a
        completed usage can be released; its record is removed first so
        concurrent releases refund once. Returns None for unknown keys and for
        usages still being charged.
        """
        usage = await self.repository.release_usage(account_id, idempotency_key)
        if usage is None:
            logger.info(
                "usage_release_skipped",
                account_id=account_id,
                idempotency_key=idempotency_key,
            )
            return None

        consumed = usage.from_trial + usage.from_purchased
        return await self.refund(
            account_id, consumed, reason=f"release:{idempotency_key}"
        )
