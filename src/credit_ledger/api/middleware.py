"""
FastAPI/Starlette middleware that charges one credit per processed job.

Flow:
  1. Before request: take a daily quota slot and debit one credit, keyed by
     the request id so a retried request is charged once.
  2. Request is executed by the job endpoint (image transform etc.).
  3. The response carries the remaining balance in `X-Credits-Remaining`.
  A failed job is not refunded; quota counts attempts, not successes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import CreditLedgerError
from ..services.notification_service import NotificationService
from ..services.quota_tracker import QuotaTracker


logger = logging.getLogger(__name__)


class JobConsumptionMiddleware(BaseHTTPMiddleware):
    """
    Middleware that gates job endpoints on quota and balance.

    - Requests outside `path_prefix` (or inside `skip_paths`) pass through.
    - The caller is identified by `user_id_header`; missing → 401.
    - Ledger rejections are answered with the error's HTTP status and the
      job endpoint is never called.
    """

    def __init__(
        self,
        app: Any,
        quota: QuotaTracker,
        *,
        notifications: Optional[NotificationService] = None,
        path_prefix: str = "/jobs",
        user_id_header: str = "X-User-Id",
        request_id_header: str = "X-Request-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.quota = quota
        self.notifications = notifications
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.request_id_header = request_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing user identification (e.g. X-User-Id header)."},
            )

        job_id = request.headers.get(self.request_id_header) or uuid4().hex
        try:
            result = await self.quota.consume(user_id, job_id, correlation_id=job_id)
        except CreditLedgerError as exc:
            logger.info(
                "Job rejected for user %s: %s",
                user_id,
                exc.code,
                extra={"path": request.url.path, "job_id": job_id},
            )
            return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

        request.state.credit_transaction = result.transaction
        response = await call_next(request)
        response.headers["X-Credits-Remaining"] = str(result.new_balance)
        if result.replayed:
            response.headers["X-Credits-Replayed"] = "1"
        elif self.notifications is not None:
            await self.notifications.notify_low_balance(user_id, result.new_balance)
        return response
