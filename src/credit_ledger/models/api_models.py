from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .account import AccountStatus
from .transaction import TransactionReason, TransactionType


class ConsumeRequest(BaseModel):
    user_id: str
    job_id: str


class RedeemRequest(BaseModel):
    user_id: str
    code: str


class UserRequest(BaseModel):
    user_id: str


class AdminAdjustRequest(BaseModel):
    user_id: str
    delta: int
    note: str | None = None
    idempotency_key: str | None = None
    grant: bool = Field(
        default=False,
        description="Record a positive delta as an admin grant instead of an adjustment.",
    )


class CreateCodeRequest(BaseModel):
    credit_value: int = Field(gt=0)
    max_uses: Optional[int] = Field(default=None, ge=1)


class SetLimitRequest(BaseModel):
    limit: int = Field(ge=0)


class CreateAdRequest(BaseModel):
    title: str
    message: str | None = None
    credits_reward: int = Field(default=1, gt=0)
    max_views: int = 1000
    max_rewards: int = 100


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int
    total_earned: int
    total_used: int
    used_today: int
    daily_limit: int
    status: AccountStatus


class DailyUsageResponse(BaseModel):
    user_id: str
    used_today: int
    daily_limit: int


class LedgerResultResponse(BaseModel):
    user_id: str
    credits: int
    sequence: int
    replayed: bool = False


class RedeemResponse(BaseModel):
    user_id: str
    credits_granted: int
    credits: int


class CollectResponse(BaseModel):
    user_id: str
    credits_granted: int
    credits: int
    next_collection_at: datetime


class AdViewResponse(BaseModel):
    user_id: str
    ad_id: str
    recorded: bool


class TransactionResponse(BaseModel):
    sequence: int
    type: TransactionType
    amount: int
    reason: TransactionReason
    resulting_balance: int
    timestamp: datetime
    description: str | None = None


class HistoryResponse(BaseModel):
    user_id: str
    transactions: List[TransactionResponse]
    next_after_sequence: Optional[int] = None


class RedeemCodeResponse(BaseModel):
    code: str
    credit_value: int
    used: int
    max_uses: int
    created_at: datetime


class DeleteCodeResponse(BaseModel):
    code: str
    deleted: bool


class AccountStatusResponse(BaseModel):
    user_id: str
    status: AccountStatus


class AdResponse(BaseModel):
    ad_id: str
    title: str
    credits_reward: int
    max_rewards: int
