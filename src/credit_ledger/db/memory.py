from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple, Type

from .base import BaseDBManager, TModel
from ..models.account import AccountRecord, AccountStatus
from ..models.audit import AuditEntry
from ..models.base import DBSerializableModel
from ..models.redeem import RedeemCode
from ..models.transaction import Transaction


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Documents are stored serialized and re-validated on every read, so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        # (collection, constraint fields, values) -> primary key
        self._unique: Dict[Tuple[str, Tuple[str, ...], Tuple[Any, ...]], str] = {}
        self._audit: List[AuditEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _unique_keys(
        self, model: DBSerializableModel, data: Dict[str, Any]
    ) -> List[Tuple[str, Tuple[str, ...], Tuple[Any, ...]]]:
        return [
            (model.collection_name, fields, tuple(data.get(f) for f in fields))
            for fields in model.unique_together
        ]

    # Generic primitives
    async def insert_document(self, model: DBSerializableModel) -> bool:
        col = self._collections[model.collection_name]
        key = model.db_key()
        if key in col:
            return False
        data = model.serialize_for_db()
        unique_keys = self._unique_keys(model, data)
        if any(k in self._unique for k in unique_keys):
            return False
        for k in unique_keys:
            self._unique[k] = key
        col[key] = data
        return True

    async def find_document(self, model_cls: Type[TModel], key: str) -> Optional[TModel]:
        data = self._collections[model_cls.collection_name].get(key)
        if data is None:
            return None
        return model_cls.model_validate(data)

    async def compare_and_swap(self, model: DBSerializableModel, expected_version: int) -> bool:
        col = self._collections[model.collection_name]
        key = model.db_key()
        stored = col.get(key)
        if stored is None or stored.get("version") != expected_version:
            return False
        col[key] = model.serialize_for_db()
        return True

    async def delete_document(self, model_cls: Type[DBSerializableModel], key: str) -> bool:
        col = self._collections[model_cls.collection_name]
        data = col.pop(key, None)
        if data is None:
            return False
        for fields in model_cls.unique_together:
            self._unique.pop(
                (model_cls.collection_name, fields, tuple(data.get(f) for f in fields)),
                None,
            )
        return True

    # Account queries
    async def count_accounts(self, status: Optional[AccountStatus] = None) -> int:
        docs = self._collections[AccountRecord.collection_name].values()
        if status is None:
            return len(docs)
        return sum(1 for d in docs if d.get("status") == status)

    async def count_accounts_used_on(self, day: str) -> int:
        docs = self._collections[AccountRecord.collection_name].values()
        return sum(1 for d in docs if d["daily_usage"]["date"] == day and d["daily_usage"]["count"] > 0)

    # Transaction queries
    async def find_transaction_by_key(
        self, user_id: str, idempotency_key: str
    ) -> Optional[Transaction]:
        key = self._unique.get(
            (Transaction.collection_name, ("user_id", "idempotency_key"), (user_id, idempotency_key))
        )
        if key is None:
            return None
        return await self.find_document(Transaction, key)

    async def get_transactions(
        self,
        user_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        docs = [
            d
            for d in self._collections[Transaction.collection_name].values()
            if d["user_id"] == user_id and d["sequence"] > after_sequence
        ]
        docs.sort(key=lambda d: d["sequence"])
        if limit is not None:
            docs = docs[:limit]
        return [Transaction.model_validate(d) for d in docs]

    # Redeem codes
    async def list_redeem_codes(self, active_only: bool = True) -> List[RedeemCode]:
        docs = self._collections[RedeemCode.collection_name].values()
        codes = [RedeemCode.model_validate(d) for d in docs if d.get("active") or not active_only]
        codes.sort(key=lambda c: c.created_at)
        return codes

    # Audit
    async def add_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._audit.append(entry)
        return entry

    @property
    def audit_entries(self) -> List[AuditEntry]:
        return list(self._audit)
