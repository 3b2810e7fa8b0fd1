from __future__ import annotations

import asyncio

import pytest

from credit_ledger.errors import (
    AccountBanned,
    AlreadyUsed,
    CodeNotFound,
    Conflict,
    Exhausted,
)
from credit_ledger.models.redeem import CodeOrigin
from credit_ledger.models.transaction import TransactionReason
from credit_ledger.services.redeem_registry import (
    CODE_ALPHABET,
    RedeemCodeRegistry,
    redemption_key,
)


@pytest.mark.asyncio
async def test_create_code_uses_unambiguous_alphabet(services):
    code = await services.registry.create_code(5, max_uses=3)

    assert len(code.code) == 8
    assert set(code.code) <= set(CODE_ALPHABET)
    assert code.active
    assert code.uses == 0
    assert (await services.registry.get_code(code.code.lower())).code == code.code


@pytest.mark.asyncio
async def test_create_code_validates_arguments(services):
    with pytest.raises(ValueError):
        await services.registry.create_code(0)
    with pytest.raises(ValueError):
        await services.registry.create_code(5, max_uses=0)


@pytest.mark.asyncio
async def test_code_collisions_are_regenerated(services):
    tokens = iter(["AAAA2222", "AAAA2222", "BBBB3333"])
    registry = RedeemCodeRegistry(
        services.db, services.ledger, services.audit, token_source=lambda n: next(tokens)
    )

    first = await registry.create_code(5)
    second = await registry.create_code(5)

    assert first.code == "AAAA2222"
    assert second.code == "BBBB3333"


@pytest.mark.asyncio
async def test_generation_gives_up_when_every_code_is_taken(services):
    registry = RedeemCodeRegistry(
        services.db, services.ledger, services.audit, token_source=lambda n: "SAME2222"
    )
    await registry.create_code(5)

    with pytest.raises(Conflict):
        await registry.create_code(5)


@pytest.mark.asyncio
async def test_redeem_credits_once_per_user(services):
    code = await services.registry.create_code(5, max_uses=10)

    granted = await services.registry.redeem(f"  {code.code.lower()} ", "user-1")
    with pytest.raises(AlreadyUsed):
        await services.registry.redeem(code.code, "user-1")

    assert granted == 5
    assert await services.ledger.get_balance("user-1") == 15
    stored = await services.registry.get_code(code.code)
    assert stored.used_by == ["user-1"]
    redemptions = await services.registry.get_user_redemptions("user-1")
    assert [tx.reason for tx in redemptions] == [TransactionReason.REDEMPTION]


@pytest.mark.asyncio
async def test_unknown_code_is_not_found(services):
    with pytest.raises(CodeNotFound):
        await services.registry.redeem("NOPE2345", "user-1")


@pytest.mark.asyncio
async def test_last_use_retires_the_code(services):
    code = await services.registry.create_code(3, max_uses=2)

    await services.registry.redeem(code.code, "user-1")
    await services.registry.redeem(code.code, "user-2")
    with pytest.raises(Exhausted):
        await services.registry.redeem(code.code, "user-3")

    stored = await services.registry.get_code(code.code)
    assert stored.exhausted
    assert not stored.active
    assert code.code not in [c.code for c in await services.registry.list_active_codes()]
    assert await services.ledger.get_balance("user-3") == 10


@pytest.mark.asyncio
async def test_single_use_code_has_one_winner_under_contention(racing_services):
    registry = racing_services.registry
    code = await registry.create_code(5, max_uses=1)
    users = [f"user-{i}" for i in range(5)]

    results = await asyncio.gather(
        *[registry.redeem(code.code, u) for u in users], return_exceptions=True
    )

    winners = [u for u, r in zip(users, results) if r == 5]
    assert len(winners) == 1
    assert all(isinstance(r, Exhausted) for r in results if r != 5)
    balances = [await racing_services.ledger.get_balance(u) for u in users]
    assert sorted(balances) == [10, 10, 10, 10, 15]
    assert (await registry.get_code(code.code)).used_by == winners


@pytest.mark.asyncio
async def test_interrupted_redemption_is_completed_on_retry(services):
    code = await services.registry.create_code(4, max_uses=5)
    await services.ledger.ensure_account("user-1")
    # Claim recorded on the code, credit never written
    claimed = code.model_copy(update={"used_by": ["user-1"], "version": code.version + 1})
    assert await services.db.update_redeem_code(claimed, code.version)

    granted = await services.registry.redeem(code.code, "user-1")

    assert granted == 4
    assert await services.ledger.get_balance("user-1") == 14
    assert await services.ledger.find_transaction(
        "user-1", redemption_key(code.code, "user-1")
    ) is not None
    with pytest.raises(AlreadyUsed):
        await services.registry.redeem(code.code, "user-1")


@pytest.mark.asyncio
async def test_banned_user_cannot_redeem(services):
    code = await services.registry.create_code(5)
    await services.admin.ban_user("user-1")

    with pytest.raises(AccountBanned):
        await services.registry.redeem(code.code, "user-1")

    assert (await services.registry.get_code(code.code)).uses == 0


@pytest.mark.asyncio
async def test_delete_is_idempotent_and_blocks_redemption(services):
    code = await services.registry.create_code(5)

    assert await services.registry.delete_code(code.code)
    assert not await services.registry.delete_code(code.code)
    with pytest.raises(CodeNotFound):
        await services.registry.redeem(code.code, "user-1")


@pytest.mark.asyncio
async def test_list_active_codes_is_ordered_by_creation(services, clock):
    first = await services.registry.create_code(1)
    clock.advance(minutes=1)
    second = await services.registry.create_code(2)
    clock.advance(minutes=1)
    collection = await services.registry.create_code(3, max_uses=1, origin=CodeOrigin.COLLECTION)
    await services.registry.redeem(collection.code, "user-1")

    listed = [c.code for c in await services.registry.list_active_codes()]

    assert listed == [first.code, second.code]


@pytest.mark.asyncio
@pytest.mark.parametrize("delay", [0, 1, 2, 3])
async def test_same_user_redeeming_twice_concurrently_succeeds_once(
    racing_services, staggered, delay
):
    registry = racing_services.registry
    code = await registry.create_code(7, max_uses=5)

    results = await asyncio.gather(
        registry.redeem(code.code, "user-1"),
        staggered(delay, registry.redeem(code.code, "user-1")),
        return_exceptions=True,
    )

    assert sum(1 for r in results if r == 7) == 1
    assert sum(1 for r in results if isinstance(r, AlreadyUsed)) == 1
    assert await racing_services.ledger.get_balance("user-1") == 17
    assert (await registry.get_code(code.code)).used_by == ["user-1"]
