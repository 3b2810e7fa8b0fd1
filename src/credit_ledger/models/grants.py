from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class CollectionCooldown(DBSerializableModel):
    """
    Rolling-window marker for the free daily collection.
    Unrelated to the calendar-day quota on the account.
    """

    collection_name: ClassVar[str] = "credit_collection_cooldowns"
    primary_key: ClassVar[Optional[str]] = "user_id"

    user_id: str
    last_collected_at: Optional[datetime] = None
    total_collections: int = 0
    version: int = 0


class AdStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class Ad(DBSerializableModel):
    collection_name: ClassVar[str] = "credit_ads"
    primary_key: ClassVar[Optional[str]] = "ad_id"

    ad_id: str
    title: str
    message: Optional[str] = None
    credits_reward: int = Field(default=1, gt=0)
    status: AdStatus = AdStatus.ACTIVE
    max_views: int = 1000
    current_views: int = 0
    max_rewards: int = 100
    rewards_given: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class AdImpression(DBSerializableModel):
    """
    One row per (user, ad) pair; `rewarded` flips at most once.
    """

    collection_name: ClassVar[str] = "credit_ad_impressions"
    primary_key: ClassVar[Optional[str]] = "id"

    user_id: str
    ad_id: str
    viewed_at: datetime = Field(default_factory=utcnow)
    rewarded: bool = False
    rewarded_at: Optional[datetime] = None
    version: int = 0

    @property
    def id(self) -> str:
        return impression_key(self.user_id, self.ad_id)

    def db_key(self) -> str:
        return self.id


def impression_key(user_id: str, ad_id: str) -> str:
    return f"{user_id}:{ad_id}"
