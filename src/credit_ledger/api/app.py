from __future__ import annotations

from typing import Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..container import Services, build_services
from ..errors import CreditLedgerError
from .middleware import CreditMeteringMiddleware, MeteredRoute
from .router import router, webhook_router


async def ledger_error_handler(request: Request, exc: CreditLedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={"code": exc.code, "detail": exc.message},
    )


def create_app(
    services: Optional[Services] = None,
    metered_routes: Sequence[MeteredRoute] = (),
) -> FastAPI:
    services = services or build_services()

    app = FastAPI(title="Credit Ledger")
    app.state.services = services
    app.add_exception_handler(CreditLedgerError, ledger_error_handler)
    if metered_routes:
        app.add_middleware(
            CreditMeteringMiddleware,
            credit_service=services.credits,
            routes=metered_routes,
        )

    app.include_router(router)
    app.include_router(webhook_router)
    return app
