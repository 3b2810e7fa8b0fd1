from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import QuotaExceeded, StorageUnavailable
from ..logging.audit_logger import AuditLogger
from ..models.account import AccountRecord, DailyUsage
from ..models.transaction import TransactionReason
from .ledger_core import ApplyResult, LedgerCore


logger = logging.getLogger(__name__)

JOB_COST = 1


@dataclass(frozen=True)
class QuotaResult:
    allowed: bool
    used_today: int


class QuotaTracker:
    """
    Calendar-day attempt counter stored on the account record.

    The counter is independent of the balance: a job needs both a free
    quota slot and a successful debit. Quota is checked (and spent) first,
    so it counts attempts per day, and is not handed back when the debit
    is rejected.
    """

    def __init__(self, ledger: LedgerCore, audit: AuditLogger, daily_limit: int = 10) -> None:
        if daily_limit < 0:
            raise ValueError("daily_limit must not be negative")
        self._ledger = ledger
        self._audit = audit
        self._daily_limit = daily_limit

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    def set_daily_limit(self, limit: int) -> None:
        if limit < 0:
            raise ValueError("daily limit must not be negative")
        logger.info("Daily limit changed from %d to %d", self._daily_limit, limit)
        self._daily_limit = limit

    async def consume_quota(self, user_id: str, limit: Optional[int] = None) -> QuotaResult:
        """
        Spend one slot of today's quota if one is left.

        A counter left over from an earlier day is reset in the same
        version-conditioned write that increments it.
        """
        limit = self._daily_limit if limit is None else limit
        today = self._ledger.today()
        outcome = QuotaResult(allowed=False, used_today=0)

        def mutate(account: AccountRecord) -> Optional[AccountRecord]:
            nonlocal outcome
            stale = account.daily_usage.date != today
            used = account.daily_usage.count_for(today)
            if used >= limit:
                outcome = QuotaResult(allowed=False, used_today=used)
                if stale:
                    account.daily_usage = DailyUsage(date=today, count=0)
                    return account
                return None
            outcome = QuotaResult(allowed=True, used_today=used + 1)
            account.daily_usage = DailyUsage(date=today, count=used + 1)
            account.last_active_at = self._ledger.clock()
            return account

        await self._ledger.update_account(user_id, mutate, label="quota consumption")
        return outcome

    async def consume(
        self,
        user_id: str,
        job_id: str,
        limit: Optional[int] = None,
        correlation_id: str | None = None,
    ) -> ApplyResult:
        """
        Gate one job: take a quota slot, then debit one credit keyed by
        the job id. Raises QuotaExceeded, InsufficientBalance or
        AccountBanned.
        """
        account = await self._ledger.ensure_account(user_id)
        key = f"job:{job_id}"
        # A retried job that already paid must not burn another quota slot
        prior = await self._ledger.find_transaction(user_id, key)
        if prior is not None:
            return ApplyResult(new_balance=prior.resulting_balance, transaction=prior, replayed=True)
        if account.is_banned:
            # Let the ledger produce the rejection without touching the quota
            return await self._debit(user_id, key, correlation_id)

        quota = await self.consume_quota(user_id, limit)
        if not quota.allowed:
            effective = self._daily_limit if limit is None else limit
            await self._audit.log_error(
                message="Daily quota exhausted",
                details={"used_today": quota.used_today, "limit": effective, "job_id": job_id},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise QuotaExceeded(
                "daily limit reached", used_today=quota.used_today, limit=effective
            )
        return await self._debit(user_id, key, correlation_id)

    async def get_daily_usage(self, user_id: str) -> int:
        try:
            account = await self._ledger.get_account(user_id)
        except StorageUnavailable:
            logger.warning("Daily usage lookup degraded to 0 for user %s", user_id)
            return 0
        if account is None:
            return 0
        return account.daily_usage.count_for(self._ledger.today())

    async def reset_usage(self, user_id: str) -> AccountRecord:
        today = self._ledger.today()

        def mutate(account: AccountRecord) -> Optional[AccountRecord]:
            if account.daily_usage.count_for(today) == 0 and account.daily_usage.date == today:
                return None
            account.daily_usage = DailyUsage(date=today, count=0)
            return account

        return await self._ledger.update_account(user_id, mutate, label="quota reset")

    async def _debit(self, user_id: str, key: str, correlation_id: str | None) -> ApplyResult:
        return await self._ledger.apply(
            user_id,
            -JOB_COST,
            TransactionReason.JOB_CONSUMPTION,
            idempotency_key=key,
            description="Image processing",
            correlation_id=correlation_id,
        )
