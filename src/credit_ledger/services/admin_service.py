from __future__ import annotations

import logging
from typing import Iterable, List, Optional
from uuid import uuid4

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..logging.audit_logger import AuditLogger
from ..models.account import AccountRecord, AccountStatus
from ..models.redeem import RedeemCode
from ..models.transaction import TransactionReason
from .ledger_core import ApplyResult, LedgerCore
from .notification_service import NotificationService
from .quota_tracker import QuotaTracker
from .redeem_registry import RedeemCodeRegistry


logger = logging.getLogger(__name__)


class AdminStats(BaseModel):
    total_users: int
    banned_users: int
    active_today: int
    daily_limit: int


class AdminOverride:
    """
    Operator actions. Every balance change goes through the ledger and every
    quota change through the quota tracker; nothing here edits counters
    directly.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerCore,
        quota: QuotaTracker,
        registry: RedeemCodeRegistry,
        audit: AuditLogger,
        notifications: Optional[NotificationService] = None,
        admin_ids: Iterable[str] = (),
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._quota = quota
        self._registry = registry
        self._audit = audit
        self._notifications = notifications
        self._admin_ids = {str(a) for a in admin_ids}

    def is_admin(self, user_id: Optional[str]) -> bool:
        return user_id is not None and str(user_id) in self._admin_ids

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        idempotency_key: str | None = None,
        admin_id: str | None = None,
    ) -> ApplyResult:
        if amount <= 0:
            raise ValueError("amount must be positive")
        result = await self._ledger.apply(
            user_id,
            amount,
            TransactionReason.ADMIN_GRANT,
            idempotency_key=idempotency_key or f"admin-grant:{uuid4().hex}",
            description="Admin grant",
            metadata={"admin_id": admin_id} if admin_id else {},
        )
        if self._notifications is not None and not result.replayed:
            await self._notifications.notify_credits_granted(user_id, amount, source="admin")
        return result

    async def adjust(
        self,
        user_id: str,
        delta: int,
        note: str | None = None,
        idempotency_key: str | None = None,
        admin_id: str | None = None,
    ) -> ApplyResult:
        """Signed correction; a negative delta still cannot overdraw the account."""
        metadata = {"admin_id": admin_id} if admin_id else {}
        return await self._ledger.apply(
            user_id,
            delta,
            TransactionReason.ADMIN_ADJUST,
            idempotency_key=idempotency_key or f"admin-adjust:{uuid4().hex}",
            description=note or "Admin adjustment",
            metadata=metadata,
        )

    async def set_limit(self, limit: int) -> int:
        self._quota.set_daily_limit(limit)
        await self._audit.log_system(message="Daily limit updated", details={"limit": limit})
        return limit

    async def reset_limit(self, user_id: str) -> AccountRecord:
        account = await self._quota.reset_usage(user_id)
        await self._audit.log_system(message="Daily usage reset", details={}, user_id=user_id)
        return account

    async def ban_user(self, user_id: str) -> AccountRecord:
        logger.info("Banning user %s", user_id)
        return await self._ledger.set_status(user_id, AccountStatus.BANNED)

    async def unban_user(self, user_id: str) -> AccountRecord:
        logger.info("Unbanning user %s", user_id)
        return await self._ledger.set_status(user_id, AccountStatus.ACTIVE)

    async def create_code(self, credit_value: int, max_uses: Optional[int] = None) -> RedeemCode:
        return await self._registry.create_code(credit_value, max_uses)

    async def delete_code(self, code: str) -> bool:
        return await self._registry.delete_code(code)

    async def list_codes(self) -> List[RedeemCode]:
        return await self._registry.list_active_codes()

    async def stats(self) -> AdminStats:
        return AdminStats(
            total_users=await self._db.count_accounts(),
            banned_users=await self._db.count_accounts(AccountStatus.BANNED),
            active_today=await self._db.count_accounts_used_on(self._ledger.today()),
            daily_limit=self._quota.daily_limit,
        )
