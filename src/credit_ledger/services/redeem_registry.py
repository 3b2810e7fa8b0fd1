from __future__ import annotations

import logging
import secrets
from typing import Callable, List, Optional

from ..db.base import BaseDBManager
from ..errors import (
    AccountBanned,
    AlreadyUsed,
    CodeNotFound,
    Conflict,
    CreditLedgerError,
    Exhausted,
    StorageUnavailable,
)
from ..logging.audit_logger import AuditLogger
from ..models.redeem import CodeOrigin, RedeemCode, normalize_code
from ..models.transaction import Transaction, TransactionReason
from .concurrency import VersionConflict, run_optimistic
from .ledger_core import ApplyResult, LedgerCore


logger = logging.getLogger(__name__)

# No 0/O, 1/I/L: codes get typed in by hand
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MAX_GENERATION_ATTEMPTS = 10


def redemption_key(code: str, user_id: str) -> str:
    return f"redeem:{code}:{user_id}"


class RedeemCodeRegistry:
    """
    Bounded-use redeem codes.

    Claiming a use and crediting the ledger are two separate atomic steps.
    The claim is a version-conditioned write on the code; the credit is
    keyed by code and user, so replaying an interrupted redemption can
    finish the credit but never duplicate it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerCore,
        audit: AuditLogger,
        *,
        code_length: int = 8,
        default_max_uses: int = 100,
        max_retries: int = 5,
        backoff_seconds: float = 0.05,
        token_source: Callable[[int], str] | None = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._audit = audit
        self._code_length = code_length
        self._default_max_uses = default_max_uses
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._token_source = token_source or self._random_code

    def _random_code(self, length: int) -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))

    async def create_code(
        self,
        credit_value: int,
        max_uses: Optional[int] = None,
        origin: CodeOrigin = CodeOrigin.ADMIN,
    ) -> RedeemCode:
        if credit_value <= 0:
            raise ValueError("credit_value must be positive")
        max_uses = self._default_max_uses if max_uses is None else max_uses
        if max_uses < 1:
            raise ValueError("max_uses must be at least 1")

        for _ in range(MAX_GENERATION_ATTEMPTS):
            code = RedeemCode(
                code=self._token_source(self._code_length),
                credit_value=credit_value,
                max_uses=max_uses,
                origin=origin,
                created_at=self._ledger.clock(),
            )
            if await self._db.insert_redeem_code(code):
                logger.info(
                    "Created %s redeem code %s worth %d (max uses %d)",
                    origin.value,
                    code.code,
                    credit_value,
                    max_uses,
                )
                await self._audit.log_system(
                    message="Redeem code created",
                    details={
                        "code": code.code,
                        "credit_value": credit_value,
                        "max_uses": max_uses,
                        "origin": origin.value,
                    },
                )
                return code
            logger.debug("Redeem code collision on %s, regenerating", code.code)

        raise Conflict("could not generate an unused redeem code", attempts=MAX_GENERATION_ATTEMPTS)

    async def redeem(self, code: str, user_id: str, correlation_id: str | None = None) -> int:
        """
        Redeem `code` for `user_id` and return the credits granted.
        Raises CodeNotFound, AlreadyUsed, Exhausted or AccountBanned.
        """
        code = normalize_code(code)
        key = redemption_key(code, user_id)

        account = await self._ledger.ensure_account(user_id)
        if account.is_banned:
            raise AccountBanned("account is banned", user_id=user_id)

        try:
            claimed = await run_optimistic(
                lambda: self._claim(code, user_id),
                attempts=self._max_retries,
                backoff_seconds=self._backoff_seconds,
                label=f"redeem {code}",
            )
        except AlreadyUsed as exc:
            # Claimed earlier but the credit may never have landed
            finished = await self._finish_interrupted(code, user_id, key, correlation_id)
            if finished is None:
                await self._reject(exc, code, user_id, correlation_id)
                raise
            return finished
        except CreditLedgerError as exc:
            await self._reject(exc, code, user_id, correlation_id)
            raise

        result = await self._credit(claimed, user_id, key, correlation_id)
        if result.replayed:
            # A concurrent retry of this redemption credited first
            exc = AlreadyUsed("code already redeemed by this user", code=code)
            await self._reject(exc, code, user_id, correlation_id)
            raise exc
        if not claimed.active:
            logger.info("Redeem code %s reached %d uses and was retired", code, claimed.max_uses)
        return claimed.credit_value

    async def delete_code(self, code: str) -> bool:
        code = normalize_code(code)
        deleted = await self._db.delete_redeem_code(code)
        if deleted:
            await self._audit.log_system(message="Redeem code deleted", details={"code": code})
        return deleted

    async def get_code(self, code: str) -> Optional[RedeemCode]:
        return await self._db.get_redeem_code(normalize_code(code))

    async def list_active_codes(self) -> List[RedeemCode]:
        try:
            return await self._db.list_redeem_codes(active_only=True)
        except StorageUnavailable:
            logger.warning("Listing redeem codes degraded to empty")
            return []

    async def get_user_redemptions(self, user_id: str) -> List[Transaction]:
        history = await self._ledger.get_history(user_id)
        return [
            tx
            for tx in history
            if tx.reason in (TransactionReason.REDEMPTION, TransactionReason.COLLECTION)
        ]

    async def _claim(self, code: str, user_id: str) -> RedeemCode:
        current = await self._db.get_redeem_code(code)
        if current is None:
            raise CodeNotFound("invalid redeem code", code=code)
        if user_id in current.used_by:
            raise AlreadyUsed("code already redeemed by this user", code=code)
        if current.exhausted:
            raise Exhausted("code has no uses left", code=code)
        if not current.active:
            raise CodeNotFound("redeem code is no longer active", code=code)

        used_by = [*current.used_by, user_id]
        updated = current.model_copy(
            update={
                "used_by": used_by,
                "active": len(used_by) < current.max_uses,
                "last_used_at": self._ledger.clock(),
                "version": current.version + 1,
            }
        )
        if not await self._db.update_redeem_code(updated, current.version):
            raise VersionConflict(f"redeem code {code} changed")
        return updated

    async def _credit(
        self, code: RedeemCode, user_id: str, key: str, correlation_id: str | None
    ) -> ApplyResult:
        reason = (
            TransactionReason.COLLECTION
            if code.origin == CodeOrigin.COLLECTION
            else TransactionReason.REDEMPTION
        )
        return await self._ledger.apply(
            user_id,
            code.credit_value,
            reason,
            idempotency_key=key,
            description="Daily collection" if reason == TransactionReason.COLLECTION else "Code redemption",
            metadata={"code": code.code},
            correlation_id=correlation_id,
        )

    async def _finish_interrupted(
        self, code: str, user_id: str, key: str, correlation_id: str | None
    ) -> Optional[int]:
        if await self._ledger.find_transaction(user_id, key) is not None:
            return None
        current = await self._db.get_redeem_code(code)
        if current is None:
            return None
        logger.warning("Completing interrupted redemption of %s for user %s", code, user_id)
        result = await self._credit(current, user_id, key, correlation_id)
        if result.replayed:
            return None
        return current.credit_value

    async def _reject(
        self, exc: CreditLedgerError, code: str, user_id: str, correlation_id: str | None
    ) -> None:
        await self._audit.log_error(
            message=f"Redemption rejected: {exc.code}",
            details={"code": code, "error": exc.message},
            user_id=user_id,
            correlation_id=correlation_id,
        )
