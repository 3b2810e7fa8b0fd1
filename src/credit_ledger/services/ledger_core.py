from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..db.base import BaseDBManager
from ..errors import AccountBanned, CreditLedgerError, InsufficientBalance, StorageUnavailable
from ..logging.audit_logger import AuditLogger
from ..models.account import AccountRecord, AccountStatus, CreditBalance, DailyUsage
from ..models.base import utcnow
from ..models.transaction import Transaction, TransactionReason, TransactionType
from .concurrency import VersionConflict, run_optimistic


logger = logging.getLogger(__name__)

SIGNUP_BONUS_KEY = "signup-bonus"

AccountMutation = Callable[[AccountRecord], Optional[AccountRecord]]


@dataclass(frozen=True)
class ApplyResult:
    new_balance: int
    transaction: Transaction
    replayed: bool = False


class LedgerCore:
    """
    Transactional engine over the account store and the transaction log.

    A mutation is two single-document writes: the transaction is appended
    first (its `(user_id, sequence)` and `(user_id, idempotency_key)` are
    unique, so exactly one racer can claim the next sequence), then the
    account is moved forward with a version-conditioned write. A transaction
    whose account write never landed is folded in by the next reader of
    that account, so the log is always the source of truth.

    No lock is held across a call; lost races rerun the whole
    read-compute-write cycle (see `run_optimistic`).
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        *,
        signup_bonus: int = 10,
        max_retries: int = 5,
        backoff_seconds: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._signup_bonus = signup_bonus
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self.clock = clock

    def today(self) -> str:
        return self.clock().date().isoformat()

    async def apply(
        self,
        user_id: str,
        delta: int,
        reason: Union[TransactionReason, str],
        idempotency_key: str,
        description: str | None = None,
        metadata: Dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> ApplyResult:
        """
        Credit (delta > 0) or debit (delta < 0) a user exactly once per
        `idempotency_key`. A repeated key returns the original result.
        """
        if delta == 0:
            raise ValueError("delta must be non-zero")
        if not idempotency_key:
            raise ValueError("idempotency_key is required")
        reason = TransactionReason(reason)

        await self.ensure_account(user_id)
        return await self._apply(
            user_id,
            delta,
            reason,
            idempotency_key,
            description=description,
            metadata=metadata or {},
            correlation_id=correlation_id,
        )

    async def ensure_account(self, user_id: str) -> AccountRecord:
        """
        Return the user's account, creating it (with the signup bonus) on
        first contact. Concurrent first contacts create exactly one account
        and one bonus.
        """
        account = await self._read(user_id)
        if account is None:
            now = self.clock()
            created = AccountRecord(
                user_id=user_id,
                daily_usage=DailyUsage(date=now.date().isoformat(), count=0),
                joined_at=now,
                last_active_at=now,
            )
            if await self._db.insert_account(created):
                logger.info("Created credit account for user %s", user_id)
            account = await self._read(user_id)
            if account is None:
                raise StorageUnavailable("account vanished right after creation", user_id=user_id)

        if account.last_sequence == 0 and self._signup_bonus > 0 and not account.is_banned:
            await self._apply(
                user_id,
                self._signup_bonus,
                TransactionReason.SIGNUP_BONUS,
                SIGNUP_BONUS_KEY,
                description="Signup bonus",
                metadata={},
                correlation_id=None,
            )
            account = await self._read(user_id) or account
        return account

    async def update_account(
        self, user_id: str, mutate: AccountMutation, label: str = "account update"
    ) -> AccountRecord:
        """
        Version-conditioned read-modify-write of non-balance account fields.

        `mutate` receives a fresh copy each attempt and returns the record to
        store, or None when nothing needs writing. Balance fields must only
        change through `apply`.
        """
        await self.ensure_account(user_id)

        async def attempt() -> AccountRecord:
            account = await self._load(user_id)
            if account is None:
                raise StorageUnavailable("account not found during update", user_id=user_id)
            updated = mutate(account.model_copy(deep=True))
            if updated is None:
                return account
            updated = updated.model_copy(update={"version": account.version + 1})
            if not await self._db.update_account(updated, account.version):
                raise VersionConflict(label)
            return updated

        return await run_optimistic(
            attempt,
            attempts=self._max_retries,
            backoff_seconds=self._backoff_seconds,
            label=f"{label} for {user_id}",
        )

    async def set_status(self, user_id: str, status: AccountStatus) -> AccountRecord:
        def mutate(account: AccountRecord) -> Optional[AccountRecord]:
            if account.status == status:
                return None
            account.status = status
            return account

        account = await self.update_account(user_id, mutate, label="status change")
        await self._audit.log_system(
            message="Account status changed",
            details={"status": status.value},
            user_id=user_id,
        )
        return account

    # Queries
    async def get_account(self, user_id: str) -> Optional[AccountRecord]:
        return await self._read(user_id)

    async def get_balance(self, user_id: str) -> int:
        try:
            account = await self._read(user_id)
        except StorageUnavailable:
            logger.warning("Balance lookup degraded to 0 for user %s", user_id)
            return 0
        return account.balance if account else 0

    async def get_credit_balance(self, user_id: str) -> CreditBalance:
        account = await self.ensure_account(user_id)
        return CreditBalance(
            user_id=user_id,
            balance=account.balance,
            total_earned=account.total_earned,
            total_used=account.total_used,
            used_today=account.daily_usage.count_for(self.today()),
            status=account.status,
        )

    async def get_history(
        self,
        user_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        """
        Transactions in sequence order. Resume a partial read by passing the
        last seen sequence as `after_sequence`.
        """
        try:
            return await self._db.get_transactions(user_id, after_sequence=after_sequence, limit=limit)
        except StorageUnavailable:
            logger.warning("History lookup degraded to empty for user %s", user_id)
            return []

    async def find_transaction(self, user_id: str, idempotency_key: str) -> Optional[Transaction]:
        return await self._db.find_transaction_by_key(user_id, idempotency_key)

    async def verify_account(self, user_id: str) -> bool:
        """Replay the log and compare it with the stored account."""
        account = await self._read(user_id)
        history = await self._db.get_transactions(user_id)
        if account is None:
            return not history

        balance = earned = used = 0
        for expected_sequence, tx in enumerate(history, start=1):
            if tx.sequence != expected_sequence:
                return False
            balance += tx.signed_amount
            if tx.type == TransactionType.CREDIT:
                earned += tx.amount
            else:
                used += tx.amount
            if balance < 0 or balance != tx.resulting_balance:
                return False

        return (
            account.balance == balance
            and account.total_earned == earned
            and account.total_used == used
            and account.last_sequence == len(history)
        )

    # Internals
    async def _apply(
        self,
        user_id: str,
        delta: int,
        reason: TransactionReason,
        idempotency_key: str,
        description: str | None,
        metadata: Dict[str, Any],
        correlation_id: str | None,
    ) -> ApplyResult:
        async def attempt() -> ApplyResult:
            return await self._apply_once(
                user_id, delta, reason, idempotency_key, description, metadata
            )

        try:
            result = await run_optimistic(
                attempt,
                attempts=self._max_retries,
                backoff_seconds=self._backoff_seconds,
                label=f"{reason.value} for {user_id}",
            )
        except CreditLedgerError as exc:
            await self._audit.log_error(
                message=f"Ledger intent rejected: {exc.code}",
                details={
                    "delta": delta,
                    "reason": reason.value,
                    "idempotency_key": idempotency_key,
                    "error": exc.message,
                },
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        if result.replayed:
            logger.info(
                "Replayed ledger intent %s for user %s (sequence %d)",
                idempotency_key,
                user_id,
                result.transaction.sequence,
            )
            return result

        tx = result.transaction
        await self._audit.log_transaction(
            user_id=user_id,
            message="Credits added" if tx.type == TransactionType.CREDIT else "Credits deducted",
            details={
                "amount": tx.amount,
                "reason": tx.reason.value,
                "sequence": tx.sequence,
                "new_balance": tx.resulting_balance,
                "idempotency_key": idempotency_key,
            },
            correlation_id=correlation_id,
        )
        return result

    async def _apply_once(
        self,
        user_id: str,
        delta: int,
        reason: TransactionReason,
        idempotency_key: str,
        description: str | None,
        metadata: Dict[str, Any],
    ) -> ApplyResult:
        account = await self._load(user_id)
        if account is None:
            raise StorageUnavailable("account missing while applying intent", user_id=user_id)

        prior = await self._db.find_transaction_by_key(user_id, idempotency_key)
        if prior is not None:
            return ApplyResult(new_balance=prior.resulting_balance, transaction=prior, replayed=True)

        if account.is_banned:
            raise AccountBanned("account is banned", user_id=user_id)

        amount = abs(delta)
        if delta < 0 and account.balance < amount:
            raise InsufficientBalance(
                "insufficient credits", requested=amount, balance=account.balance
            )

        tx = Transaction(
            user_id=user_id,
            sequence=account.last_sequence + 1,
            type=TransactionType.CREDIT if delta > 0 else TransactionType.DEBIT,
            amount=amount,
            reason=reason,
            idempotency_key=idempotency_key,
            resulting_balance=account.balance + delta,
            timestamp=self.clock(),
            description=description,
            metadata=metadata,
        )
        async with self._db.transaction():
            if not await self._db.append_transaction(tx):
                raise VersionConflict("sequence or idempotency key taken")
            await self._settle(account, tx)
        return ApplyResult(new_balance=tx.resulting_balance, transaction=tx)

    async def _settle(self, account: AccountRecord, tx: Transaction) -> None:
        # The transaction is already durable; this only advances the account.
        for _ in range(self._max_retries):
            if await self._db.update_account(self._fold(account, tx), account.version):
                return
            current = await self._db.get_account(account.user_id)
            if current is None or current.last_sequence >= tx.sequence:
                return
            account = current
        logger.warning(
            "Left transaction %s pending; the next reader of the account folds it in", tx.id
        )

    async def _read(self, user_id: str) -> Optional[AccountRecord]:
        return await run_optimistic(
            lambda: self._load(user_id),
            attempts=self._max_retries,
            backoff_seconds=self._backoff_seconds,
            label=f"read account {user_id}",
        )

    async def _load(self, user_id: str) -> Optional[AccountRecord]:
        """Read the account, folding in any transaction its write never caught up with."""
        account = await self._db.get_account(user_id)
        while account is not None:
            pending = await self._db.get_transaction(user_id, account.last_sequence + 1)
            if pending is None:
                return account
            folded = self._fold(account, pending)
            if not await self._db.update_account(folded, account.version):
                raise VersionConflict("account moved while folding a pending transaction")
            logger.info("Folded pending transaction %s into account", pending.id)
            account = folded
        return None

    @staticmethod
    def _fold(account: AccountRecord, tx: Transaction) -> AccountRecord:
        credit = tx.type == TransactionType.CREDIT
        return account.model_copy(
            update={
                "balance": tx.resulting_balance,
                "total_earned": account.total_earned + (tx.amount if credit else 0),
                "total_used": account.total_used + (0 if credit else tx.amount),
                "last_sequence": tx.sequence,
                "last_active_at": tx.timestamp,
                "version": account.version + 1,
            }
        )
