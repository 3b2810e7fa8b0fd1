from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..models.api_models import (
    AccountStatusResponse,
    AdResponse,
    AdViewResponse,
    AdminAdjustRequest,
    CollectResponse,
    ConsumeRequest,
    CreateAdRequest,
    CreateCodeRequest,
    CreditBalanceResponse,
    DailyUsageResponse,
    DeleteCodeResponse,
    HistoryResponse,
    LedgerResultResponse,
    RedeemCodeResponse,
    RedeemRequest,
    RedeemResponse,
    SetLimitRequest,
    TransactionResponse,
    UserRequest,
)
from ..models.redeem import RedeemCode, normalize_code
from ..services.admin_service import AdminStats
from ..services.ledger_core import ApplyResult
from ..wiring import LedgerServices


def _ledger_result(user_id: str, result: ApplyResult) -> LedgerResultResponse:
    return LedgerResultResponse(
        user_id=user_id,
        credits=result.new_balance,
        sequence=result.transaction.sequence,
        replayed=result.replayed,
    )


def _code_response(code: RedeemCode) -> RedeemCodeResponse:
    return RedeemCodeResponse(
        code=code.code,
        credit_value=code.credit_value,
        used=code.uses,
        max_uses=code.max_uses,
        created_at=code.created_at,
    )


def create_router(services: LedgerServices) -> APIRouter:
    """
    HTTP surface for the ledger. Ledger rejections are rendered by the
    app-level CreditLedgerError handler (see app.py).
    """
    router = APIRouter(prefix="/credits", tags=["credits"])
    admin_router = APIRouter(prefix="/admin", tags=["credits-admin"])

    async def require_admin(x_admin_id: Optional[str] = Header(default=None)) -> str:
        if not services.admin.is_admin(x_admin_id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin only")
        return x_admin_id or ""

    # Inbound intents
    @router.post("/consume", response_model=LedgerResultResponse)
    async def consume(
        payload: ConsumeRequest, x_request_id: Optional[str] = Header(default=None)
    ) -> LedgerResultResponse:
        result = await services.quota.consume(
            payload.user_id, payload.job_id, correlation_id=x_request_id
        )
        return _ledger_result(payload.user_id, result)

    @router.post("/redeem", response_model=RedeemResponse)
    async def redeem(
        payload: RedeemRequest, x_request_id: Optional[str] = Header(default=None)
    ) -> RedeemResponse:
        granted = await services.registry.redeem(
            payload.code, payload.user_id, correlation_id=x_request_id
        )
        balance = await services.ledger.get_balance(payload.user_id)
        return RedeemResponse(user_id=payload.user_id, credits_granted=granted, credits=balance)

    @router.post("/collect", response_model=CollectResponse)
    async def collect(
        payload: UserRequest, x_request_id: Optional[str] = Header(default=None)
    ) -> CollectResponse:
        result = await services.collection.collect(payload.user_id, correlation_id=x_request_id)
        return CollectResponse(
            user_id=payload.user_id,
            credits_granted=result.credits,
            credits=result.balance,
            next_collection_at=result.next_collection_at,
        )

    @router.post("/ads/{ad_id}/view", response_model=AdViewResponse)
    async def view_ad(ad_id: str, payload: UserRequest) -> AdViewResponse:
        recorded = await services.ads.record_view(payload.user_id, ad_id)
        return AdViewResponse(user_id=payload.user_id, ad_id=ad_id, recorded=recorded)

    @router.post("/ads/{ad_id}/reward", response_model=LedgerResultResponse)
    async def reward_ad(
        ad_id: str, payload: UserRequest, x_request_id: Optional[str] = Header(default=None)
    ) -> LedgerResultResponse:
        result = await services.ads.reward_user(payload.user_id, ad_id, correlation_id=x_request_id)
        return _ledger_result(payload.user_id, result)

    # Outbound queries
    @router.get("/balance/{user_id}", response_model=CreditBalanceResponse)
    async def get_balance(user_id: str) -> CreditBalanceResponse:
        info = await services.ledger.get_credit_balance(user_id)
        return CreditBalanceResponse(
            user_id=user_id,
            credits=info.balance,
            total_earned=info.total_earned,
            total_used=info.total_used,
            used_today=info.used_today,
            daily_limit=services.quota.daily_limit,
            status=info.status,
        )

    @router.get("/usage/{user_id}", response_model=DailyUsageResponse)
    async def get_usage(user_id: str) -> DailyUsageResponse:
        used = await services.quota.get_daily_usage(user_id)
        return DailyUsageResponse(
            user_id=user_id, used_today=used, daily_limit=services.quota.daily_limit
        )

    @router.get("/history/{user_id}", response_model=HistoryResponse)
    async def get_history(
        user_id: str,
        after_sequence: int = Query(default=0, ge=0),
        limit: Optional[int] = Query(default=None, ge=1, le=500),
    ) -> HistoryResponse:
        history = await services.ledger.get_history(
            user_id, after_sequence=after_sequence, limit=limit
        )
        next_after = history[-1].sequence if limit is not None and len(history) == limit else None
        return HistoryResponse(
            user_id=user_id,
            transactions=[
                TransactionResponse(
                    sequence=tx.sequence,
                    type=tx.type,
                    amount=tx.amount,
                    reason=tx.reason,
                    resulting_balance=tx.resulting_balance,
                    timestamp=tx.timestamp,
                    description=tx.description,
                )
                for tx in history
            ],
            next_after_sequence=next_after,
        )

    # Admin
    @admin_router.post("/adjust", response_model=LedgerResultResponse)
    async def admin_adjust(
        payload: AdminAdjustRequest, admin_id: str = Depends(require_admin)
    ) -> LedgerResultResponse:
        try:
            if payload.grant:
                result = await services.admin.add_credits(
                    payload.user_id,
                    payload.delta,
                    idempotency_key=payload.idempotency_key,
                    admin_id=admin_id,
                )
            else:
                result = await services.admin.adjust(
                    payload.user_id,
                    payload.delta,
                    note=payload.note,
                    idempotency_key=payload.idempotency_key,
                    admin_id=admin_id,
                )
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
            ) from exc
        return _ledger_result(payload.user_id, result)

    @admin_router.post("/codes", response_model=RedeemCodeResponse)
    async def admin_create_code(
        payload: CreateCodeRequest, _: str = Depends(require_admin)
    ) -> RedeemCodeResponse:
        code = await services.admin.create_code(payload.credit_value, payload.max_uses)
        return _code_response(code)

    @admin_router.get("/codes", response_model=List[RedeemCodeResponse])
    async def admin_list_codes(_: str = Depends(require_admin)) -> List[RedeemCodeResponse]:
        return [_code_response(c) for c in await services.admin.list_codes()]

    @admin_router.delete("/codes/{code}", response_model=DeleteCodeResponse)
    async def admin_delete_code(code: str, _: str = Depends(require_admin)) -> DeleteCodeResponse:
        deleted = await services.admin.delete_code(code)
        return DeleteCodeResponse(code=normalize_code(code), deleted=deleted)

    @admin_router.post("/limit", response_model=DailyUsageResponse)
    async def admin_set_limit(
        payload: SetLimitRequest, admin_id: str = Depends(require_admin)
    ) -> DailyUsageResponse:
        limit = await services.admin.set_limit(payload.limit)
        return DailyUsageResponse(user_id=admin_id, used_today=0, daily_limit=limit)

    @admin_router.post("/reset-limit", response_model=DailyUsageResponse)
    async def admin_reset_limit(
        payload: UserRequest, _: str = Depends(require_admin)
    ) -> DailyUsageResponse:
        await services.admin.reset_limit(payload.user_id)
        return DailyUsageResponse(
            user_id=payload.user_id, used_today=0, daily_limit=services.quota.daily_limit
        )

    @admin_router.post("/ban", response_model=AccountStatusResponse)
    async def admin_ban(payload: UserRequest, _: str = Depends(require_admin)) -> AccountStatusResponse:
        account = await services.admin.ban_user(payload.user_id)
        return AccountStatusResponse(user_id=payload.user_id, status=account.status)

    @admin_router.post("/unban", response_model=AccountStatusResponse)
    async def admin_unban(payload: UserRequest, _: str = Depends(require_admin)) -> AccountStatusResponse:
        account = await services.admin.unban_user(payload.user_id)
        return AccountStatusResponse(user_id=payload.user_id, status=account.status)

    @admin_router.post("/ads", response_model=AdResponse)
    async def admin_create_ad(payload: CreateAdRequest, _: str = Depends(require_admin)) -> AdResponse:
        ad = await services.ads.create_ad(**payload.model_dump())
        return AdResponse(
            ad_id=ad.ad_id,
            title=ad.title,
            credits_reward=ad.credits_reward,
            max_rewards=ad.max_rewards,
        )

    @admin_router.get("/stats", response_model=AdminStats)
    async def admin_stats(_: str = Depends(require_admin)) -> AdminStats:
        return await services.admin.stats()

    router.include_router(admin_router)
    return router
