from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import Field, field_validator

from .base import DBSerializableModel, utcnow


class CodeOrigin(str, Enum):
    ADMIN = "admin"
    COLLECTION = "collection"


class RedeemCode(DBSerializableModel):
    """
    Bounded-use code. A user appears in `used_by` at most once and the code
    stops being redeemable as soon as `used_by` is full.
    """

    collection_name: ClassVar[str] = "credit_redeem_codes"
    primary_key: ClassVar[Optional[str]] = "code"

    code: str
    credit_value: int = Field(gt=0)
    max_uses: int = Field(ge=1)
    used_by: List[str] = Field(default_factory=list)
    origin: CodeOrigin = CodeOrigin.ADMIN
    active: bool = True
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return normalize_code(value)

    @field_validator("used_by")
    @classmethod
    def _unique_users(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("used_by must not contain duplicates")
        return value

    @property
    def uses(self) -> int:
        return len(self.used_by)

    @property
    def exhausted(self) -> bool:
        return self.uses >= self.max_uses


def normalize_code(raw: str) -> str:
    return raw.strip().upper()
