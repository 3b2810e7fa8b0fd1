from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Type

import pytest

from credit_ledger.config import Settings
from credit_ledger.db.base import TModel
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.wiring import LedgerServices, build_services


class FakeClock:
    """Deterministic UTC clock that tests move forward by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class InterleavingDBManager(InMemoryDBManager):
    """
    Yields to the event loop after every read, so concurrent coroutines
    really do interleave between their read and their conditional write.
    """

    async def find_document(self, model_cls: Type[TModel], key: str) -> Optional[TModel]:
        doc = await super().find_document(model_cls, key)
        await asyncio.sleep(0)
        return doc


def make_settings(**overrides) -> Settings:
    values = {
        "mongo_uri": None,
        "retry_backoff_seconds": 0.0,
        "admin_ids": ["admin-1"],
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def services(tmp_path, clock) -> LedgerServices:
    return build_services(
        make_settings(),
        db=InMemoryDBManager(),
        clock=clock,
        audit_file=tmp_path / "audit.log",
    )


@pytest.fixture
def racing_services(tmp_path, clock) -> LedgerServices:
    # Generous retry budget: every racer loses at most once per winner
    return build_services(
        make_settings(max_retries=40),
        db=InterleavingDBManager(),
        clock=clock,
        audit_file=tmp_path / "audit.log",
    )


async def _after_yields(turns: int, awaitable):
    for _ in range(turns):
        await asyncio.sleep(0)
    return await awaitable


@pytest.fixture
def staggered():
    """Await something after letting the event loop run `turns` times."""
    return _after_yields
