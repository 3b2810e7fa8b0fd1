from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from ..db.base import BaseDBManager
from ..errors import (
    AccountBanned,
    AdNotFound,
    AdViewNotFound,
    AlreadyUsed,
    CooldownActive,
    Exhausted,
)
from ..logging.audit_logger import AuditLogger
from ..models.grants import Ad, AdImpression, AdStatus, CollectionCooldown
from ..models.redeem import CodeOrigin, RedeemCode
from ..models.transaction import TransactionReason
from .concurrency import VersionConflict, run_optimistic
from .ledger_core import ApplyResult, LedgerCore
from .redeem_registry import RedeemCodeRegistry, redemption_key


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionResult:
    credits: int
    balance: int
    next_collection_at: datetime


class DailyCollection:
    """
    Free credits once per rolling window (24h by default), delivered by
    minting a single-use code and redeeming it on the user's behalf.

    The cooldown is claimed before anything is minted, so a storm of
    retries can mint at most one code per window.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerCore,
        registry: RedeemCodeRegistry,
        audit: AuditLogger,
        *,
        credits: int = 5,
        cooldown: timedelta = timedelta(hours=24),
        max_retries: int = 5,
        backoff_seconds: float = 0.05,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._registry = registry
        self._audit = audit
        self._credits = credits
        self._cooldown = cooldown
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds

    async def collect(self, user_id: str, correlation_id: str | None = None) -> CollectionResult:
        account = await self._ledger.ensure_account(user_id)
        if account.is_banned:
            raise AccountBanned("account is banned", user_id=user_id)

        now = self._ledger.clock()
        try:
            previous = await run_optimistic(
                lambda: self._claim_cooldown(user_id, now),
                attempts=self._max_retries,
                backoff_seconds=self._backoff_seconds,
                label=f"collection cooldown {user_id}",
            )
        except CooldownActive as exc:
            await self._audit.log_error(
                message="Collection rejected: cooldown active",
                details={"retry_after": exc.retry_after.isoformat() if exc.retry_after else None},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        code: Optional[RedeemCode] = None
        try:
            code = await self._registry.create_code(
                self._credits, max_uses=1, origin=CodeOrigin.COLLECTION
            )
            credits = await self._registry.redeem(code.code, user_id, correlation_id=correlation_id)
        except Exception:
            await self._release_cooldown(user_id, now, previous, code)
            raise

        balance = await self._ledger.get_balance(user_id)
        logger.info("User %s collected %d free credits", user_id, credits)
        return CollectionResult(
            credits=credits,
            balance=balance,
            next_collection_at=now + self._cooldown,
        )

    async def get_cooldown(self, user_id: str) -> Optional[CollectionCooldown]:
        return await self._db.get_collection_cooldown(user_id)

    async def _claim_cooldown(
        self, user_id: str, now: datetime
    ) -> Optional[CollectionCooldown]:
        current = await self._db.get_collection_cooldown(user_id)
        if current is None:
            fresh = CollectionCooldown(user_id=user_id, last_collected_at=now, total_collections=1)
            if not await self._db.insert_collection_cooldown(fresh):
                raise VersionConflict("cooldown created concurrently")
            return None

        if current.last_collected_at is not None:
            available_at = current.last_collected_at + self._cooldown
            if now < available_at:
                raise CooldownActive(
                    "already collected, come back later", retry_after=available_at
                )

        claimed = current.model_copy(
            update={
                "last_collected_at": now,
                "total_collections": current.total_collections + 1,
                "version": current.version + 1,
            }
        )
        if not await self._db.update_collection_cooldown(claimed, current.version):
            raise VersionConflict("cooldown changed")
        return current

    async def _release_cooldown(
        self,
        user_id: str,
        claimed_at: datetime,
        previous: Optional[CollectionCooldown],
        code: Optional[RedeemCode],
    ) -> None:
        if code is not None:
            paid = await self._ledger.find_transaction(user_id, redemption_key(code.code, user_id))
            if paid is not None:
                # The credit landed; the window stays consumed
                return

        async def attempt() -> None:
            current = await self._db.get_collection_cooldown(user_id)
            if current is None or current.last_collected_at is None:
                return
            # BSON dates keep millisecond precision only
            if abs(current.last_collected_at - claimed_at) > timedelta(milliseconds=1):
                return
            restored = current.model_copy(
                update={
                    "last_collected_at": previous.last_collected_at if previous else None,
                    "total_collections": max(current.total_collections - 1, 0),
                    "version": current.version + 1,
                }
            )
            if not await self._db.update_collection_cooldown(restored, current.version):
                raise VersionConflict("cooldown changed during release")

        await run_optimistic(
            attempt,
            attempts=self._max_retries,
            backoff_seconds=self._backoff_seconds,
            label=f"release collection cooldown {user_id}",
        )
        logger.warning("Collection for user %s failed; cooldown released", user_id)


def ad_reward_key(ad_id: str, user_id: str) -> str:
    return f"ad:{ad_id}:{user_id}"


class AdReward:
    """
    Credits for watching ads: one reward per (user, ad), and no more than
    `max_rewards` rewards per ad overall.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerCore,
        audit: AuditLogger,
        *,
        max_retries: int = 5,
        backoff_seconds: float = 0.05,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._audit = audit
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds

    async def create_ad(
        self,
        title: str,
        credits_reward: int = 1,
        max_views: int = 1000,
        max_rewards: int = 100,
        message: str | None = None,
        ad_id: str | None = None,
    ) -> Ad:
        ad = Ad(
            ad_id=ad_id or f"ad_{uuid4().hex[:12]}",
            title=title,
            message=message,
            credits_reward=credits_reward,
            max_views=max_views,
            max_rewards=max_rewards,
            created_at=self._ledger.clock(),
        )
        if not await self._db.insert_ad(ad):
            raise ValueError(f"ad {ad.ad_id} already exists")
        await self._audit.log_system(
            message="Ad created",
            details={"ad_id": ad.ad_id, "credits_reward": credits_reward, "max_rewards": max_rewards},
        )
        return ad

    async def get_ad(self, ad_id: str) -> Optional[Ad]:
        return await self._db.get_ad(ad_id)

    async def record_view(self, user_id: str, ad_id: str) -> bool:
        """Record a first view of `ad_id`; returns False if the user had already seen it."""
        ad = await self._db.get_ad(ad_id)
        if ad is None or ad.status != AdStatus.ACTIVE:
            raise AdNotFound("unknown or inactive ad", ad_id=ad_id)

        impression = AdImpression(user_id=user_id, ad_id=ad_id, viewed_at=self._ledger.clock())
        if not await self._db.insert_ad_impression(impression):
            return False

        async def bump_views() -> None:
            current = await self._db.get_ad(ad_id)
            if current is None:
                return
            updated = current.model_copy(
                update={"current_views": current.current_views + 1, "version": current.version + 1}
            )
            if not await self._db.update_ad(updated, current.version):
                raise VersionConflict("ad changed")

        await run_optimistic(
            bump_views,
            attempts=self._max_retries,
            backoff_seconds=self._backoff_seconds,
            label=f"ad views {ad_id}",
        )
        return True

    async def reward_user(
        self, user_id: str, ad_id: str, correlation_id: str | None = None
    ) -> ApplyResult:
        """
        Credit one ad reward. A reward slot on the ad is taken before the
        impression is marked, so a rewarded impression always holds a slot.
        """
        account = await self._ledger.ensure_account(user_id)
        if account.is_banned:
            raise AccountBanned("account is banned", user_id=user_id)

        ad = await self._db.get_ad(ad_id)
        if ad is None:
            raise AdNotFound("unknown ad", ad_id=ad_id)
        key = ad_reward_key(ad_id, user_id)

        impression = await self._db.get_ad_impression(user_id, ad_id)
        if impression is None:
            raise AdViewNotFound("no recorded view for this ad", ad_id=ad_id)
        if impression.rewarded:
            if await self._ledger.find_transaction(user_id, key) is not None:
                raise await self._already_rewarded(user_id, ad_id, correlation_id)
            logger.warning("Completing interrupted ad reward %s for user %s", ad_id, user_id)
            return await self._grant(ad, user_id, key, correlation_id)

        try:
            await self._run(lambda: self._take_reward_slot(ad_id), f"ad rewards {ad_id}")
        except Exhausted:
            await self._audit.log_error(
                message="Ad reward rejected: rewards exhausted",
                details={"ad_id": ad_id},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise
        try:
            await self._run(lambda: self._mark_rewarded(user_id, ad_id), f"reward view {ad_id}")
        except AlreadyUsed:
            # A concurrent call marked the impression with its own slot
            await self._run(lambda: self._release_reward_slot(ad_id), f"ad rewards {ad_id}")
            raise await self._already_rewarded(user_id, ad_id, correlation_id)
        return await self._grant(ad, user_id, key, correlation_id)

    async def _run(self, operation, label: str):
        return await run_optimistic(
            operation,
            attempts=self._max_retries,
            backoff_seconds=self._backoff_seconds,
            label=label,
        )

    async def _already_rewarded(
        self, user_id: str, ad_id: str, correlation_id: str | None
    ) -> AlreadyUsed:
        exc = AlreadyUsed("ad reward already granted", ad_id=ad_id)
        await self._audit.log_error(
            message=f"Ad reward rejected: {exc.code}",
            details={"ad_id": ad_id},
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return exc

    async def _mark_rewarded(self, user_id: str, ad_id: str) -> None:
        current = await self._db.get_ad_impression(user_id, ad_id)
        if current is None:
            raise AdViewNotFound("no recorded view for this ad", ad_id=ad_id)
        if current.rewarded:
            raise AlreadyUsed("ad reward already granted", ad_id=ad_id)
        updated = current.model_copy(
            update={
                "rewarded": True,
                "rewarded_at": self._ledger.clock(),
                "version": current.version + 1,
            }
        )
        if not await self._db.update_ad_impression(updated, current.version):
            raise VersionConflict("impression changed")

    async def _take_reward_slot(self, ad_id: str) -> None:
        current = await self._db.get_ad(ad_id)
        if current is None:
            raise AdNotFound("unknown ad", ad_id=ad_id)
        if current.rewards_given >= current.max_rewards:
            raise Exhausted("ad has no rewards left", ad_id=ad_id)
        await self._set_rewards_given(current, current.rewards_given + 1)

    async def _release_reward_slot(self, ad_id: str) -> None:
        current = await self._db.get_ad(ad_id)
        if current is None or current.rewards_given == 0:
            return
        await self._set_rewards_given(current, current.rewards_given - 1)

    async def _set_rewards_given(self, current: Ad, rewards_given: int) -> None:
        updated = current.model_copy(
            update={"rewards_given": rewards_given, "version": current.version + 1}
        )
        if not await self._db.update_ad(updated, current.version):
            raise VersionConflict("ad changed")

    async def _grant(
        self, ad: Ad, user_id: str, key: str, correlation_id: str | None
    ) -> ApplyResult:
        result = await self._ledger.apply(
            user_id,
            ad.credits_reward,
            TransactionReason.AD_REWARD,
            idempotency_key=key,
            description=f"Ad reward for {ad.title}",
            metadata={"ad_id": ad.ad_id},
            correlation_id=correlation_id,
        )
        if result.replayed:
            # Another call for the same impression credited first
            raise await self._already_rewarded(user_id, ad.ad_id, correlation_id)
        return result
