from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field

from .base import utcnow


class NotificationType(str, Enum):
    CREDITS_GRANTED = "credits_granted"
    LOW_BALANCE = "low_balance"


class Notification(BaseModel):
    """
    User-facing message handed to the delivery endpoint.
    Delivery itself (chat transport, retries) happens outside the ledger.
    """

    user_id: str
    notification_type: NotificationType
    text: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
