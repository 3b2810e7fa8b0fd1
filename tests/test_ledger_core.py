from __future__ import annotations

import asyncio
import json

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import AccountBanned, Conflict, InsufficientBalance
from credit_ledger.logging.audit_logger import AuditLogger
from credit_ledger.models.account import AccountStatus
from credit_ledger.models.audit import AuditEventType
from credit_ledger.models.transaction import Transaction, TransactionReason, TransactionType
from credit_ledger.services.ledger_core import SIGNUP_BONUS_KEY, LedgerCore


class LosingAppendDB(InMemoryDBManager):
    """Every append loses the race for its sequence."""

    def __init__(self) -> None:
        super().__init__()
        self.append_calls = 0

    async def append_transaction(self, tx: Transaction) -> bool:
        self.append_calls += 1
        return False


class FlakyAccountWriteDB(InMemoryDBManager):
    """The first `failures` account writes are rejected as stale."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def update_account(self, account, expected_version: int) -> bool:
        if self.failures > 0:
            self.failures -= 1
            return False
        return await super().update_account(account, expected_version)


@pytest.mark.asyncio
async def test_first_contact_grants_signup_bonus_once(services):
    ledger = services.ledger

    account = await ledger.ensure_account("user-1")
    again = await ledger.ensure_account("user-1")

    assert account.balance == 10
    assert again.balance == 10
    history = await ledger.get_history("user-1")
    assert [tx.reason for tx in history] == [TransactionReason.SIGNUP_BONUS]
    assert history[0].idempotency_key == SIGNUP_BONUS_KEY


@pytest.mark.asyncio
async def test_apply_credit_and_debit_move_balance_and_totals(services):
    ledger = services.ledger

    credited = await ledger.apply("user-1", 5, TransactionReason.REDEMPTION, "k-credit")
    debited = await ledger.apply("user-1", -3, TransactionReason.JOB_CONSUMPTION, "k-debit")

    assert credited.new_balance == 15
    assert debited.new_balance == 12
    assert debited.transaction.type == TransactionType.DEBIT
    assert debited.transaction.sequence == 3

    account = await ledger.get_account("user-1")
    assert account.balance == 12
    assert account.total_earned == 15
    assert account.total_used == 3
    assert account.last_sequence == 3
    assert await ledger.verify_account("user-1")


@pytest.mark.asyncio
async def test_repeated_idempotency_key_replays_original_result(services):
    ledger = services.ledger

    first = await ledger.apply("user-1", 7, TransactionReason.ADMIN_GRANT, "grant-1")
    second = await ledger.apply("user-1", 7, TransactionReason.ADMIN_GRANT, "grant-1")

    assert not first.replayed
    assert second.replayed
    assert second.new_balance == first.new_balance == 17
    assert second.transaction.sequence == first.transaction.sequence
    assert await ledger.get_balance("user-1") == 17
    assert len(await ledger.get_history("user-1")) == 2


@pytest.mark.asyncio
async def test_overdraw_is_rejected_without_a_transaction(services):
    ledger = services.ledger
    await ledger.ensure_account("user-1")

    with pytest.raises(InsufficientBalance) as exc_info:
        await ledger.apply("user-1", -11, TransactionReason.ADMIN_ADJUST, "too-much")

    assert exc_info.value.details == {"requested": 11, "balance": 10}
    assert await ledger.get_balance("user-1") == 10
    assert await ledger.find_transaction("user-1", "too-much") is None
    errors = [e for e in services.db.audit_entries if e.event_type == AuditEventType.ERROR]
    assert errors and errors[-1].details["reason"] == "admin-adjust"


@pytest.mark.asyncio
async def test_zero_delta_and_missing_key_are_programming_errors(services):
    with pytest.raises(ValueError):
        await services.ledger.apply("user-1", 0, TransactionReason.ADMIN_ADJUST, "k")
    with pytest.raises(ValueError):
        await services.ledger.apply("user-1", 1, TransactionReason.ADMIN_ADJUST, "")


@pytest.mark.asyncio
async def test_banned_account_cannot_transact_but_replays_still_answer(services):
    ledger = services.ledger
    await ledger.apply("user-1", 2, TransactionReason.ADMIN_GRANT, "before-ban")
    await ledger.set_status("user-1", AccountStatus.BANNED)

    with pytest.raises(AccountBanned):
        await ledger.apply("user-1", 2, TransactionReason.ADMIN_GRANT, "after-ban")

    replay = await ledger.apply("user-1", 2, TransactionReason.ADMIN_GRANT, "before-ban")
    assert replay.replayed
    assert await ledger.get_balance("user-1") == 12


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(racing_services):
    ledger = racing_services.ledger
    await ledger.ensure_account("user-1")

    results = await asyncio.gather(
        *[
            ledger.apply("user-1", -3, TransactionReason.JOB_CONSUMPTION, f"job-{i}")
            for i in range(6)
        ],
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientBalance)]
    assert len(succeeded) == 3
    assert len(rejected) == 3
    assert sorted(r.new_balance for r in succeeded) == [1, 4, 7]
    assert await ledger.get_balance("user-1") == 1
    assert await ledger.verify_account("user-1")


@pytest.mark.asyncio
async def test_concurrent_first_contacts_create_one_account_and_one_bonus(racing_services):
    ledger = racing_services.ledger

    await asyncio.gather(
        *[
            ledger.apply("user-1", 1, TransactionReason.AD_REWARD, f"ad-{i}")
            for i in range(5)
        ]
    )

    history = await ledger.get_history("user-1")
    assert [tx.sequence for tx in history] == [1, 2, 3, 4, 5, 6]
    assert sum(1 for tx in history if tx.reason == TransactionReason.SIGNUP_BONUS) == 1
    assert await ledger.get_balance("user-1") == 15
    assert await racing_services.db.count_accounts() == 1
    assert await ledger.verify_account("user-1")


@pytest.mark.asyncio
async def test_exhausted_retry_budget_raises_conflict(tmp_path, clock):
    db = LosingAppendDB()
    ledger = LedgerCore(
        db,
        AuditLogger(db=db, file_path=tmp_path / "audit.log"),
        signup_bonus=0,
        max_retries=3,
        backoff_seconds=0,
        clock=clock,
    )

    with pytest.raises(Conflict) as exc_info:
        await ledger.apply("user-1", 5, TransactionReason.ADMIN_GRANT, "k")

    assert exc_info.value.details["attempts"] == 3
    assert db.append_calls == 3
    assert await ledger.get_history("user-1") == []
    assert await ledger.get_balance("user-1") == 0


@pytest.mark.asyncio
async def test_stale_account_write_is_folded_in_by_next_reader(tmp_path, clock):
    db = FlakyAccountWriteDB(failures=0)
    ledger = LedgerCore(
        db,
        AuditLogger(db=db, file_path=None),
        signup_bonus=0,
        max_retries=2,
        backoff_seconds=0,
        clock=clock,
    )
    await ledger.apply("user-1", 4, TransactionReason.ADMIN_GRANT, "first")

    # The transaction lands but every account write in _settle is lost
    db.failures = 2
    await ledger.apply("user-1", 3, TransactionReason.ADMIN_GRANT, "second")

    stored = await db.get_account("user-1")
    assert stored.balance == 4
    assert stored.last_sequence == 1

    assert await ledger.get_balance("user-1") == 7
    assert (await db.get_account("user-1")).last_sequence == 2
    assert await ledger.verify_account("user-1")


@pytest.mark.asyncio
async def test_history_pages_by_sequence(services):
    ledger = services.ledger
    for i in range(4):
        await ledger.apply("user-1", 1, TransactionReason.AD_REWARD, f"ad-{i}")

    first_page = await ledger.get_history("user-1", limit=2)
    second_page = await ledger.get_history("user-1", after_sequence=first_page[-1].sequence, limit=2)
    rest = await ledger.get_history("user-1", after_sequence=second_page[-1].sequence)

    assert [tx.sequence for tx in first_page] == [1, 2]
    assert [tx.sequence for tx in second_page] == [3, 4]
    assert [tx.sequence for tx in rest] == [5]


@pytest.mark.asyncio
async def test_queries_do_not_create_accounts(services):
    assert await services.ledger.get_balance("ghost") == 0
    assert await services.ledger.get_history("ghost") == []
    assert await services.ledger.get_account("ghost") is None
    assert await services.ledger.verify_account("ghost")


@pytest.mark.asyncio
async def test_transactions_are_mirrored_to_audit_file(tmp_path, services):
    await services.ledger.apply("user-1", 2, TransactionReason.REDEMPTION, "k", correlation_id="req-9")

    lines = (tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    redemption = [r for r in records if r["details"].get("reason") == "redemption"]
    assert redemption
    assert redemption[0]["correlation_id"] == "req-9"
    assert redemption[0]["details"]["new_balance"] == 12
