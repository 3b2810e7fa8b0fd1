from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Type, TypeVar

from ..models.account import AccountRecord, AccountStatus
from ..models.audit import AuditEntry
from ..models.base import DBSerializableModel
from ..models.grants import Ad, AdImpression, CollectionCooldown, impression_key
from ..models.redeem import RedeemCode
from ..models.transaction import Transaction


TModel = TypeVar("TModel", bound=DBSerializableModel)


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations only provide a handful of primitives
    (insert-if-absent, fetch, compare-and-swap, delete) plus the few
    queries that need an index. Entity-level helpers are built on top of
    those primitives here so every backend enforces the same rules.

    Versioned entities (accounts, redeem codes, cooldowns, ads, ad
    impressions) are never blindly overwritten: every update goes through
    `compare_and_swap`, which only lands when the stored `version` still
    equals the version the caller read.
    """

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        The ledger never relies on it for correctness; version checks and
        unique indexes do that job.
        """
        yield

    # Generic primitives
    @abstractmethod
    async def insert_document(self, model: DBSerializableModel) -> bool:
        """Insert `model`; return False when its key or a unique constraint already exists."""

    @abstractmethod
    async def find_document(self, model_cls: Type[TModel], key: str) -> Optional[TModel]: ...

    @abstractmethod
    async def compare_and_swap(self, model: DBSerializableModel, expected_version: int) -> bool:
        """
        Replace the stored document with `model` only if its stored
        `version` equals `expected_version`. Returns whether the write landed.
        """

    @abstractmethod
    async def delete_document(self, model_cls: Type[DBSerializableModel], key: str) -> bool: ...

    # Account operations (AccountStore)
    async def insert_account(self, account: AccountRecord) -> bool:
        return await self.insert_document(account)

    async def get_account(self, user_id: str) -> Optional[AccountRecord]:
        return await self.find_document(AccountRecord, user_id)

    async def update_account(self, account: AccountRecord, expected_version: int) -> bool:
        return await self.compare_and_swap(account, expected_version)

    @abstractmethod
    async def count_accounts(self, status: Optional[AccountStatus] = None) -> int: ...

    @abstractmethod
    async def count_accounts_used_on(self, day: str) -> int:
        """Accounts whose daily usage counter belongs to `day`."""

    # Transaction operations (TransactionLog)
    async def append_transaction(self, tx: Transaction) -> bool:
        """
        Append-only insert. Fails (returns False) when the user's sequence
        number or idempotency key is already taken.
        """
        return await self.insert_document(tx)

    async def get_transaction(self, user_id: str, sequence: int) -> Optional[Transaction]:
        return await self.find_document(Transaction, f"{user_id}:{sequence}")

    @abstractmethod
    async def find_transaction_by_key(
        self, user_id: str, idempotency_key: str
    ) -> Optional[Transaction]: ...

    @abstractmethod
    async def get_transactions(
        self,
        user_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        """Transactions with sequence > `after_sequence`, ascending."""

    # Redeem code operations
    async def insert_redeem_code(self, code: RedeemCode) -> bool:
        return await self.insert_document(code)

    async def get_redeem_code(self, code: str) -> Optional[RedeemCode]:
        return await self.find_document(RedeemCode, code)

    async def update_redeem_code(self, code: RedeemCode, expected_version: int) -> bool:
        return await self.compare_and_swap(code, expected_version)

    async def delete_redeem_code(self, code: str) -> bool:
        return await self.delete_document(RedeemCode, code)

    @abstractmethod
    async def list_redeem_codes(self, active_only: bool = True) -> List[RedeemCode]: ...

    # Collection cooldowns
    async def get_collection_cooldown(self, user_id: str) -> Optional[CollectionCooldown]:
        return await self.find_document(CollectionCooldown, user_id)

    async def insert_collection_cooldown(self, cooldown: CollectionCooldown) -> bool:
        return await self.insert_document(cooldown)

    async def update_collection_cooldown(
        self, cooldown: CollectionCooldown, expected_version: int
    ) -> bool:
        return await self.compare_and_swap(cooldown, expected_version)

    # Ads and impressions
    async def insert_ad(self, ad: Ad) -> bool:
        return await self.insert_document(ad)

    async def get_ad(self, ad_id: str) -> Optional[Ad]:
        return await self.find_document(Ad, ad_id)

    async def update_ad(self, ad: Ad, expected_version: int) -> bool:
        return await self.compare_and_swap(ad, expected_version)

    async def insert_ad_impression(self, impression: AdImpression) -> bool:
        return await self.insert_document(impression)

    async def get_ad_impression(self, user_id: str, ad_id: str) -> Optional[AdImpression]:
        return await self.find_document(AdImpression, impression_key(user_id, ad_id))

    async def update_ad_impression(
        self, impression: AdImpression, expected_version: int
    ) -> bool:
        return await self.compare_and_swap(impression, expected_version)

    # Audit
    @abstractmethod
    async def add_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...
