from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionReason(str, Enum):
    REDEMPTION = "redemption"
    COLLECTION = "collection"
    AD_REWARD = "ad-reward"
    ADMIN_GRANT = "admin-grant"
    ADMIN_ADJUST = "admin-adjust"
    JOB_CONSUMPTION = "job-consumption"
    SIGNUP_BONUS = "signup-bonus"


class Transaction(DBSerializableModel):
    """
    Immutable ledger line. Folding a user's transactions in `sequence`
    order reproduces the account's balance and totals.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    primary_key: ClassVar[Optional[str]] = "id"
    unique_together: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("user_id", "sequence"),
        ("user_id", "idempotency_key"),
    )

    user_id: str
    sequence: int = Field(ge=1)
    type: TransactionType
    amount: int = Field(gt=0)
    reason: TransactionReason
    idempotency_key: str
    resulting_balance: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.user_id}:{self.sequence}"

    def db_key(self) -> str:
        return self.id

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type == TransactionType.CREDIT else -self.amount
