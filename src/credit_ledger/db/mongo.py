from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Type

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, IndexModel
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager, TModel
from ..errors import StorageUnavailable
from ..models.account import AccountRecord, AccountStatus
from ..models.audit import AuditEntry
from ..models.base import DBSerializableModel
from ..models.grants import Ad, AdImpression, CollectionCooldown
from ..models.redeem import RedeemCode
from ..models.transaction import Transaction


logger = logging.getLogger(__name__)

INDEXED_MODELS: List[Type[DBSerializableModel]] = [
    AccountRecord,
    Transaction,
    RedeemCode,
    CollectionCooldown,
    Ad,
    AdImpression,
]


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Every document's natural key is stored as `_id`. Single-document writes
    are atomic in MongoDB, which is all the ledger needs: compare-and-swap is
    a `replace_one` filtered on `{_id, version}` and append-only inserts are
    guarded by unique indexes (see `ensure_indexes`).

    Driver failures other than duplicate keys surface as StorageUnavailable.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        for model_cls in INDEXED_MODELS:
            indexes = [
                IndexModel(
                    [(f, ASCENDING) for f in fields],
                    name="uq_" + "_".join(fields),
                    unique=True,
                )
                for fields in model_cls.unique_together
            ]
            if indexes:
                async with self._guard("ensure_indexes"):
                    await self._db[model_cls.collection_name].create_indexes(indexes)

    # Helper utilities
    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except DuplicateKeyError:
            raise
        except PyMongoError as exc:
            logger.error("MongoDB %s failed: %s", operation, exc)
            raise StorageUnavailable(f"storage unavailable during {operation}") from exc

    @staticmethod
    def _prepare(model: DBSerializableModel) -> Dict[str, Any]:
        data = _plain(model.serialize_for_db())
        data["_id"] = model.db_key()
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Generic primitives
    async def insert_document(self, model: DBSerializableModel) -> bool:
        col = self._db[model.collection_name]
        try:
            async with self._guard("insert"):
                await col.insert_one(self._prepare(model))
        except DuplicateKeyError:
            return False
        return True

    async def find_document(self, model_cls: Type[TModel], key: str) -> Optional[TModel]:
        col = self._db[model_cls.collection_name]
        async with self._guard("find"):
            doc = await col.find_one({"_id": key})
        return self._decode(model_cls, doc)

    async def compare_and_swap(self, model: DBSerializableModel, expected_version: int) -> bool:
        col = self._db[model.collection_name]
        data = self._prepare(model)
        async with self._guard("compare_and_swap"):
            result = await col.replace_one(
                {"_id": data["_id"], "version": expected_version}, data, upsert=False
            )
        return result.matched_count == 1

    async def delete_document(self, model_cls: Type[DBSerializableModel], key: str) -> bool:
        col = self._db[model_cls.collection_name]
        async with self._guard("delete"):
            result = await col.delete_one({"_id": key})
        return result.deleted_count == 1

    # Account queries
    async def count_accounts(self, status: Optional[AccountStatus] = None) -> int:
        col = self._db[AccountRecord.collection_name]
        query: Dict[str, Any] = {} if status is None else {"status": status.value}
        async with self._guard("count_accounts"):
            return await col.count_documents(query)

    async def count_accounts_used_on(self, day: str) -> int:
        col = self._db[AccountRecord.collection_name]
        async with self._guard("count_accounts_used_on"):
            return await col.count_documents(
                {"daily_usage.date": day, "daily_usage.count": {"$gt": 0}}
            )

    # Transaction queries
    async def find_transaction_by_key(
        self, user_id: str, idempotency_key: str
    ) -> Optional[Transaction]:
        col = self._db[Transaction.collection_name]
        async with self._guard("find_transaction_by_key"):
            doc = await col.find_one({"user_id": user_id, "idempotency_key": idempotency_key})
        return self._decode(Transaction, doc)

    async def get_transactions(
        self,
        user_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        col = self._db[Transaction.collection_name]
        cursor = col.find({"user_id": user_id, "sequence": {"$gt": after_sequence}}).sort(
            "sequence", ASCENDING
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        async with self._guard("get_transactions"):
            docs = await cursor.to_list(length=None)
        return [self._decode(Transaction, d) for d in docs if d is not None]  # type: ignore[misc]

    # Redeem codes
    async def list_redeem_codes(self, active_only: bool = True) -> List[RedeemCode]:
        col = self._db[RedeemCode.collection_name]
        cursor = col.find({"active": True} if active_only else {}).sort("created_at", ASCENDING)
        async with self._guard("list_redeem_codes"):
            docs = await cursor.to_list(length=None)
        return [self._decode(RedeemCode, d) for d in docs if d is not None]  # type: ignore[misc]

    # Audit
    async def add_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        col = self._db[AuditEntry.collection_name]
        data = _plain(entry.serialize_for_db())
        async with self._guard("add_audit_entry"):
            result = await col.insert_one(data)
        entry.id = str(result.inserted_id)
        return entry


def _plain(value: Any) -> Any:
    """Strip enum wrappers so BSON sees plain values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_plain(v) for v in value]
    return value
