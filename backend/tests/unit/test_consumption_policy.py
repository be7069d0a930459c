"""Unit tests for all-or-nothing consumption, idempotency and conflict retries."""

import asyncio

import pytest

from guidepass.config import BillingConfig
from guidepass.errors import InsufficientCredits, InvalidAmount, LedgerConflict
from guidepass.models.ledger import LedgerRecord, UsageRecord
from guidepass.services.billing_repository import InMemoryBillingRepository
from guidepass.services.consumption_policy import ConsumptionPolicy
from guidepass.services.credit_ledger import create_ledger
from guidepass.services.ledger_store import LedgerStore


class ConflictingRepository(InMemoryBillingRepository):
    """Loses the first `conflicts` conditional writes to a simulated other device."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.cas_calls = 0

    async def compare_and_set_ledger(self, record, expected_version):
        self.cas_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            current = self.ledgers[record.account_id]
            # Another device spent one purchased credit in between
            self.ledgers[record.account_id] = current.model_copy(
                update={
                    "purchased_available": current.purchased_available - 1,
                    "purchased_used": current.purchased_used + 1,
                    "version": current.version + 1,
                }
            )
            return None
        return await super().compare_and_set_ledger(record, expected_version)


class ReleaseDuringChargeRepository(InMemoryBillingRepository):
    """Runs `on_write` once, just before the next conditional ledger write."""

    def __init__(self):
        super().__init__()
        self.on_write = None

    async def compare_and_set_ledger(self, record, expected_version):
        if self.on_write is not None:
            hook, self.on_write = self.on_write, None
            await hook()
        return await super().compare_and_set_ledger(record, expected_version)


def make_policy(
    repository: InMemoryBillingRepository | None = None,
    config: BillingConfig | None = None,
) -> tuple[ConsumptionPolicy, InMemoryBillingRepository]:
    repo = repository or InMemoryBillingRepository()
    store = LedgerStore(repo, config or BillingConfig())
    return ConsumptionPolicy(repo, store), repo


def seed(repo: InMemoryBillingRepository, account_id: str, **counts: int) -> None:
    repo.ledgers[account_id] = LedgerRecord(account_id=account_id, version=1, **counts)


class TestApply:
    def test_insufficient_raises_and_keeps_ledger(self):
        ledger = create_ledger(1, 1, 0, 0)

        with pytest.raises(InsufficientCredits) as exc_info:
            ConsumptionPolicy.apply(ledger, 2)

        assert exc_info.value.requested == 2
        assert exc_info.value.available == 1
        assert ledger.available == 1

    def test_exact_balance_is_allowed(self):
        result = ConsumptionPolicy.apply(create_ledger(1, 0, 1, 0), 2)

        assert result.ledger.available == 0


class TestTryConsume:
    async def test_new_account_starts_with_trial_credits(self):
        policy, repo = make_policy()

        outcome = await policy.try_consume("user-a", 1, "poi-1")

        assert outcome.ok is True
        assert outcome.duplicate is False
        assert outcome.from_trial == 1
        assert outcome.remaining == 1
        assert repo.ledgers["user-a"].trial_used == 1

    async def test_denied_after_trial_runs_out(self):
        policy, repo = make_policy()
        await policy.try_consume("user-a", 1, "poi-1")
        await policy.try_consume("user-a", 1, "poi-2")

        with pytest.raises(InsufficientCredits):
            await policy.try_consume("user-a", 1, "poi-3")

        assert repo.ledgers["user-a"].trial_used == 2
        assert ("user-a", "poi-3") not in repo.usage

    async def test_insufficient_leaves_ledger_untouched(self):
        policy, repo = make_policy()
        seed(repo, "user-a", trial_available=1, purchased_available=2)

        with pytest.raises(InsufficientCredits):
            await policy.try_consume("user-a", 5, "poi-1")

        stored = repo.ledgers["user-a"]
        assert stored.trial_available == 1
        assert stored.purchased_available == 2
        assert stored.version == 1

    async def test_same_key_is_consumed_once(self):
        policy, repo = make_policy()
        seed(repo, "user-a", purchased_available=10)

        first = await policy.try_consume("user-a", 1, "poi-1")
        second = await policy.try_consume("user-a", 1, "poi-1")

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.remaining == first.remaining == 9
        assert second.from_purchased == 1
        assert repo.ledgers["user-a"].purchased_available == 9

    async def test_replay_with_different_amount_returns_original(self):
        policy, repo = make_policy()
        seed(repo, "user-a", purchased_available=10)

        await policy.try_consume("user-a", 2, "poi-1")
        replay = await policy.try_consume("user-a", 5, "poi-1")

        assert replay.duplicate is True
        assert replay.from_purchased == 2
        assert repo.ledgers["user-a"].purchased_available == 8

    async def test_concurrent_requests_with_same_key_consume_once(self):
        policy, repo = make_policy()
        seed(repo, "user-a", purchased_available=10)

        outcomes = await asyncio.gather(
            *(policy.try_consume("user-a", 1, "poi-1") for _ in range(5))
        )

        assert sum(1 for o in outcomes if not o.duplicate) == 1
        assert repo.ledgers["user-a"].purchased_available == 9

    async def test_invalid_amount_is_rejected_before_claim(self):
        policy, repo = make_policy()

        with pytest.raises(InvalidAmount):
            await policy.try_consume("user-a", "1.5", "poi-1")

        assert repo.usage == {}
        assert repo.ledgers == {}

    async def test_string_amount_is_parsed(self):
        policy, repo = make_policy()
        seed(repo, "user-a", purchased_available=5)

        outcome = await policy.try_consume("user-a", "3", "poi-1")

        assert outcome.from_purchased == 3

    async def test_zero_amount_succeeds_without_spending(self):
        policy, repo = make_policy()
        seed(repo, "user-a", trial_available=2)

        outcome = await policy.try_consume("user-a", 0, "poi-1")

        assert outcome.remaining == 2
        assert repo.ledgers["user-a"].version == 1


class TestConflictRetry:
    async def test_retries_on_lost_write_and_rechecks_balance(self):
        repo = ConflictingRepository(conflicts=2)
        seed(repo, "user-a", purchased_available=5)
        policy, _ = make_policy(repository=repo)

        outcome = await policy.try_consume("user-a", 1, "poi-1")

        # Two concurrent spends plus ours
        assert repo.ledgers["user-a"].purchased_available == 2
        assert outcome.remaining == 2
        assert repo.cas_calls == 3

    async def test_balance_recheck_can_deny_after_conflict(self):
        repo = ConflictingRepository(conflicts=1)
        seed(repo, "user-a", purchased_available=1)
        policy, _ = make_policy(repository=repo)

        with pytest.raises(InsufficientCredits):
            await policy.try_consume("user-a", 1, "poi-1")

        assert repo.ledgers["user-a"].purchased_available == 0
        assert ("user-a", "poi-1") not in repo.usage

    async def test_exhausted_retries_raise_and_abandon_claim(self):
        repo = ConflictingRepository(conflicts=100)
        seed(repo, "user-a", purchased_available=100)
        policy, _ = make_policy(repository=repo, config=BillingConfig(max_write_attempts=3))

        with pytest.raises(LedgerConflict) as exc_info:
            await policy.try_consume("user-a", 1, "poi-1")

        assert exc_info.value.attempts == 3
        assert repo.cas_calls == 3
        assert ("user-a", "poi-1") not in repo.usage


class TestRefundAndRelease:
    async def test_release_refunds_the_recorded_split(self):
        policy, repo = make_policy()
        seed(repo, "user-a", trial_available=1, purchased_available=5, purchased_used=3)
        await policy.try_consume("user-a", 2, "poi-1")

        ledger = await policy.release("user-a", "poi-1")

        assert ledger is not None
        assert ledger.available == 6
        # Refunds go purchased first
        assert ledger.purchased.available == 6
        assert ledger.trial.available == 0
        assert ("user-a", "poi-1") not in repo.usage

    async def test_release_twice_refunds_once(self):
        policy, _ = make_policy()
        await policy.try_consume("user-a", 1, "poi-1")

        first = await policy.release("user-a", "poi-1")
        second = await policy.release("user-a", "poi-1")

        assert first.available == 2
        assert second is None

    async def test_release_unknown_key_returns_none(self):
        policy, _ = make_policy()

        assert await policy.release("user-a", "never-used") is None

    async def test_key_can_be_reused_after_release(self):
        policy, _ = make_policy()
        await policy.try_consume("user-a", 1, "poi-1")
        await policy.release("user-a", "poi-1")

        outcome = await policy.try_consume("user-a", 1, "poi-1")

        assert outcome.duplicate is False
        assert outcome.remaining == 1

    async def test_refund_discards_excess(self):
        policy, repo = make_policy()
        seed(repo, "user-a", trial_available=0, trial_used=2)

        ledger = await policy.refund("user-a", 10, reason="support")

        assert ledger.available == 2
        assert ledger.total == 2

    async def test_release_skips_usage_still_being_charged(self):
        policy, repo = make_policy()
        seed(repo, "user-a", purchased_available=5)
        await repo.claim_usage(UsageRecord(account_id="user-a", idempotency_key="poi-1", amount=1))

        assert await policy.release("user-a", "poi-1") is None
        assert repo.usage[("user-a", "poi-1")].completed is False
        assert repo.ledgers["user-a"].version == 1

    async def test_release_during_charge_does_not_allow_double_charge(self):
        repo = ReleaseDuringChargeRepository()
        seed(repo, "user-a", purchased_available=5)
        policy, _ = make_policy(repository=repo)
        released = []

        async def release_mid_charge():
            released.append(await policy.release("user-a", "poi-1"))

        repo.on_write = release_mid_charge
        first = await policy.try_consume("user-a", 1, "poi-1")
        retry = await policy.try_consume("user-a", 1, "poi-1")

        assert released == [None]
        assert first.remaining == 4
        assert retry.duplicate is True
        assert repo.ledgers["user-a"].purchased_available == 4
        assert repo.usage[("user-a", "poi-1")].completed is True

        ledger = await policy.release("user-a", "poi-1")

        assert ledger.purchased.available == 5
