from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from qrorder.core.settings import settings
from qrorder.routers.health import router as health_router
from qrorder.routers.tokens import router as tokens_router
from qrorder.routers.orders import router as orders_router
from qrorder.routers.merchant import router as merchant_router
from qrorder.routers.admin import router as admin_router
from qrorder.routers.webhooks import router as webhooks_router
from qrorder.services.errors import LedgerError
from qrorder.db import init_db


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(init_database: bool = True) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if init_database:
        @app.on_event("startup")
        async def _startup():
            await init_db()

    # 领域错误统一转成 {"detail": code, ...}
    app.add_exception_handler(LedgerError, ledger_error_handler)

    app.include_router(health_router)
    app.include_router(tokens_router)
    app.include_router(orders_router)
    app.include_router(merchant_router)
    app.include_router(admin_router)
    app.include_router(webhooks_router)

    return app
