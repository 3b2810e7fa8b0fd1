from __future__ import annotations

import httpx
import pytest

from credit_ledger.app import create_app

ADMIN = {"X-Admin-Id": "admin-1"}


@pytest.fixture
def app(services):
    app = create_app(settings=services.settings, services=services)

    @app.post("/jobs/remove-bg")
    async def remove_background() -> dict:
        return {"status": "done"}

    return app


def client_for(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_not_charged(app):
    async with client_for(app) as client:
        resp = await client.get("/health")

    assert resp.status_code == 200
    assert "X-Credits-Remaining" not in resp.headers


@pytest.mark.asyncio
async def test_balance_endpoint_opens_the_account(app):
    async with client_for(app) as client:
        resp = await client.get("/credits/balance/user-1")

    assert resp.status_code == 200
    body = resp.json()
    assert body["credits"] == 10
    assert body["total_earned"] == 10
    assert body["used_today"] == 0
    assert body["daily_limit"] == 10
    assert body["status"] == "active"


@pytest.mark.asyncio
async def test_consume_and_history(app):
    async with client_for(app) as client:
        consumed = await client.post("/credits/consume", json={"user_id": "user-1", "job_id": "j1"})
        replayed = await client.post("/credits/consume", json={"user_id": "user-1", "job_id": "j1"})
        usage = await client.get("/credits/usage/user-1")
        page = await client.get("/credits/history/user-1", params={"limit": 1})
        rest = await client.get(
            "/credits/history/user-1",
            params={"after_sequence": page.json()["next_after_sequence"]},
        )

    assert consumed.json() == {"user_id": "user-1", "credits": 9, "sequence": 2, "replayed": False}
    assert replayed.json()["replayed"] is True
    assert usage.json()["used_today"] == 1
    assert [t["reason"] for t in page.json()["transactions"]] == ["signup-bonus"]
    assert page.json()["next_after_sequence"] == 1
    assert [t["reason"] for t in rest.json()["transactions"]] == ["job-consumption"]
    assert rest.json()["next_after_sequence"] is None


@pytest.mark.asyncio
async def test_ledger_errors_map_to_http_statuses(app):
    async with client_for(app) as client:
        missing = await client.post("/credits/redeem", json={"user_id": "user-1", "code": "NOPE2345"})
        await client.post("/credits/collect", json={"user_id": "user-1"})
        cooldown = await client.post("/credits/collect", json={"user_id": "user-1"})
        overdraw = await client.post(
            "/credits/admin/adjust", json={"user_id": "user-1", "delta": -100}, headers=ADMIN
        )

    assert missing.status_code == 404
    assert missing.json()["code"] == "CODE_NOT_FOUND"
    assert cooldown.status_code == 429
    assert cooldown.json()["code"] == "COOLDOWN_ACTIVE"
    assert "retry_after" in cooldown.json()["details"]
    assert overdraw.status_code == 402
    assert overdraw.json()["details"] == {"requested": 100, "balance": 15}


@pytest.mark.asyncio
async def test_admin_routes_require_admin_header(app):
    async with client_for(app) as client:
        anonymous = await client.post("/credits/admin/codes", json={"credit_value": 5})
        stranger = await client.post(
            "/credits/admin/codes", json={"credit_value": 5}, headers={"X-Admin-Id": "user-1"}
        )

    assert anonymous.status_code == 403
    assert stranger.status_code == 403


@pytest.mark.asyncio
async def test_admin_code_lifecycle(app):
    async with client_for(app) as client:
        created = await client.post(
            "/credits/admin/codes", json={"credit_value": 7, "max_uses": 2}, headers=ADMIN
        )
        code = created.json()["code"]
        redeemed = await client.post("/credits/redeem", json={"user_id": "user-1", "code": code})
        again = await client.post("/credits/redeem", json={"user_id": "user-1", "code": code})
        listed = await client.get("/credits/admin/codes", headers=ADMIN)
        deleted = await client.delete(f"/credits/admin/codes/{code.lower()}", headers=ADMIN)
        deleted_again = await client.delete(f"/credits/admin/codes/{code}", headers=ADMIN)

    assert created.status_code == 200
    assert redeemed.json() == {"user_id": "user-1", "credits_granted": 7, "credits": 17}
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_USED"
    assert [c["used"] for c in listed.json() if c["code"] == code] == [1]
    assert deleted.json() == {"code": code, "deleted": True}
    assert deleted_again.json() == {"code": code, "deleted": False}


@pytest.mark.asyncio
async def test_admin_adjust_grant_limit_and_ban(app, services):
    async with client_for(app) as client:
        granted = await client.post(
            "/credits/admin/adjust",
            json={"user_id": "user-1", "delta": 5, "grant": True, "idempotency_key": "g-1"},
            headers=ADMIN,
        )
        zero = await client.post(
            "/credits/admin/adjust", json={"user_id": "user-1", "delta": 0}, headers=ADMIN
        )
        limit = await client.post("/credits/admin/limit", json={"limit": 3}, headers=ADMIN)
        banned = await client.post("/credits/admin/ban", json={"user_id": "user-1"}, headers=ADMIN)
        blocked = await client.post("/credits/consume", json={"user_id": "user-1", "job_id": "j1"})
        stats = await client.get("/credits/admin/stats", headers=ADMIN)
        unbanned = await client.post("/credits/admin/unban", json={"user_id": "user-1"}, headers=ADMIN)

    assert granted.json()["credits"] == 15
    assert zero.status_code == 400
    assert limit.json()["daily_limit"] == 3
    assert services.quota.daily_limit == 3
    assert banned.json() == {"user_id": "user-1", "status": "banned"}
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "ACCOUNT_BANNED"
    assert stats.json() == {"total_users": 1, "banned_users": 1, "active_today": 0, "daily_limit": 3}
    assert unbanned.json()["status"] == "active"
    assert len(services.queue.drain("user-1")) == 1


@pytest.mark.asyncio
async def test_ad_view_and_reward(app):
    async with client_for(app) as client:
        ad = await client.post(
            "/credits/admin/ads", json={"title": "Spring sale", "credits_reward": 2}, headers=ADMIN
        )
        ad_id = ad.json()["ad_id"]
        early = await client.post(f"/credits/ads/{ad_id}/reward", json={"user_id": "user-1"})
        viewed = await client.post(f"/credits/ads/{ad_id}/view", json={"user_id": "user-1"})
        rewarded = await client.post(f"/credits/ads/{ad_id}/reward", json={"user_id": "user-1"})
        unknown = await client.post("/credits/ads/ad_nope/view", json={"user_id": "user-1"})

    assert early.status_code == 404
    assert early.json()["code"] == "AD_VIEW_NOT_FOUND"
    assert viewed.json()["recorded"] is True
    assert rewarded.json()["credits"] == 12
    assert unknown.json()["code"] == "AD_NOT_FOUND"


@pytest.mark.asyncio
async def test_job_middleware_requires_user_header(app):
    async with client_for(app) as client:
        resp = await client.post("/jobs/remove-bg")

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_job_middleware_charges_once_per_request_id(app, services):
    headers = {"X-User-Id": "user-1", "X-Request-Id": "req-1"}
    async with client_for(app) as client:
        first = await client.post("/jobs/remove-bg", headers=headers)
        retried = await client.post("/jobs/remove-bg", headers=headers)

    assert first.status_code == 200
    assert first.json() == {"status": "done"}
    assert first.headers["X-Credits-Remaining"] == "9"
    assert "X-Credits-Replayed" not in first.headers
    assert retried.headers["X-Credits-Remaining"] == "9"
    assert retried.headers["X-Credits-Replayed"] == "1"
    assert await services.quota.get_daily_usage("user-1") == 1


@pytest.mark.asyncio
async def test_job_middleware_rejects_when_quota_or_balance_run_out(app, services):
    services.quota.set_daily_limit(1)
    async with client_for(app) as client:
        await client.post("/jobs/remove-bg", headers={"X-User-Id": "user-1"})
        over_quota = await client.post("/jobs/remove-bg", headers={"X-User-Id": "user-1"})

        services.quota.set_daily_limit(10)
        await services.admin.adjust("user-2", -10)
        broke = await client.post("/jobs/remove-bg", headers={"X-User-Id": "user-2"})

    assert over_quota.status_code == 429
    assert over_quota.json()["code"] == "QUOTA_EXCEEDED"
    assert broke.status_code == 402
    assert broke.json()["code"] == "INSUFFICIENT_BALANCE"
    assert await services.ledger.get_balance("user-2") == 0
