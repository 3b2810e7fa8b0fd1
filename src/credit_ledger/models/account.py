from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field, model_validator

from .base import DBSerializableModel, utcnow


class AccountStatus(str, Enum):
    ACTIVE = "active"
    BANNED = "banned"


class DailyUsage(BaseModel):
    """
    Per-calendar-day attempt counter. `count` is only meaningful while
    `date` equals the current UTC day; older values read as zero.
    """

    date: str = Field(description="UTC calendar day, ISO format (YYYY-MM-DD).")
    count: int = Field(default=0, ge=0)

    def count_for(self, day: str) -> int:
        return self.count if self.date == day else 0


class AccountRecord(DBSerializableModel):
    """
    Authoritative per-user balance record.

    Only the ledger writes this document, always through a
    version-conditioned update.
    """

    collection_name: ClassVar[str] = "credit_accounts"
    primary_key: ClassVar[Optional[str]] = "user_id"

    user_id: str
    balance: int = Field(default=0, ge=0)
    total_earned: int = Field(default=0, ge=0)
    total_used: int = Field(default=0, ge=0)
    daily_usage: DailyUsage
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = Field(
        default=0,
        description="Optimistic concurrency token, bumped on every write.",
    )
    last_sequence: int = Field(
        default=0,
        description="Sequence number of the last transaction folded into this record.",
    )
    joined_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_totals(self) -> "AccountRecord":
        if self.balance != self.total_earned - self.total_used:
            raise ValueError(
                f"balance {self.balance} does not match "
                f"earned {self.total_earned} - used {self.total_used}"
            )
        return self

    @property
    def is_banned(self) -> bool:
        return self.status == AccountStatus.BANNED


class CreditBalance(BaseModel):
    """Read-side view of an account, safe to hand to callers."""

    user_id: str
    balance: int
    total_earned: int
    total_used: int
    used_today: int
    status: AccountStatus
