"""Optimistic read-modify-write access to persisted ledgers."""

from collections.abc import Callable
from typing import TypeVar

import structlog

from guidepass.config import BillingConfig
from guidepass.errors import LedgerConflict
from guidepass.models.ledger import CreditLedger, LedgerRecord
from guidepass.services.billing_repository import BillingRepository

logger = structlog.get_logger(__name__)

T = TypeVar("T")

LedgerTransform = Callable[[CreditLedger], tuple[CreditLedger, T]]
RecordTransform = Callable[[LedgerRecord], tuple[LedgerRecord, T]]


class LedgerStore:
    """Applies pure ledger transforms to stored ledgers with conflict retries."""

    def __init__(self, repository: BillingRepository, config: BillingConfig) -> None:
        self.repository = repository
        self.config = config

    async def ensure(self, account_id: str) -> LedgerRecord:
        """Load the account's ledger, creating the signup ledger if missing."""
        record = await self.repository.get_ledger(account_id)
        if record is not None:
            return record

        record = await self.repository.create_ledger(
            LedgerRecord(account_id=account_id, trial_available=self.config.free_trial_credits)
        )
        logger.info(
            "ledger_created",
            account_id=account_id,
            trial_credits=record.trial_available,
        )
        return record

    async def update(
        self, account_id: str, transform: LedgerTransform[T]
    ) -> tuple[LedgerRecord, T]:
        """Apply a pure ledger transform; see `update_record`."""

        def on_record(record: LedgerRecord) -> tuple[LedgerRecord, T]:
            updated, result = transform(record.to_ledger())
            return record.with_ledger(updated), result

        return await self.update_record(account_id, on_record)

    async def update_record(
        self, account_id: str, transform: RecordTransform[T]
    ) -> tuple[LedgerRecord, T]:
        """Apply `transform` until the conditional write succeeds.

        `transform` must be pure: it may run once per attempt. Errors it
        raises propagate immediately without writing.

        Raises:
            LedgerConflict: every attempt lost a concurrent write.
        """
        attempts = self.config.max_write_attempts
        for attempt in range(1, attempts + 1):
            record = await self.ensure(account_id)
            updated, result = transform(record)
            if updated == record:
                return record, result

            stored = await self.repository.compare_and_set_ledger(updated, record.version)
            if stored is not None:
                return stored, result

            logger.info(
                "ledger_conflict_retry",
                account_id=account_id,
                attempt=attempt,
                version=record.version,
            )

        logger.warning("ledger_conflict_exhausted", account_id=account_id, attempts=attempts)
        raise LedgerConflict(account_id, attempts)
