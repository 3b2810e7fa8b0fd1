from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.middleware import JobConsumptionMiddleware
from .api.router import create_router
from .config import Settings, settings as default_settings
from .errors import CreditLedgerError
from .wiring import LedgerServices, build_services


logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[LedgerServices] = None,
    job_path_prefix: Optional[str] = "/jobs",
) -> FastAPI:
    settings = settings or default_settings
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ensure_indexes = getattr(services.db, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()
        yield

    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(CreditLedgerError)
    async def ledger_error_handler(request: Request, exc: CreditLedgerError) -> JSONResponse:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    app.include_router(create_router(services))

    if job_path_prefix:
        app.add_middleware(
            JobConsumptionMiddleware,
            quota=services.quota,
            notifications=services.notifications,
            path_prefix=job_path_prefix,
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
