from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse

from ach_relay.config import settings
from ach_relay.db.client import close_pool
from ach_relay.logging import setup_logging
from ach_relay.routes import health, stripe_ach, webhooks
from ach_relay.utils.security import require_basic_auth

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    try:
        webhooks._reconciler.purge_expired()
    except Exception as exc:  # noqa: BLE001
        logger.warning("webhook ledger purge failed", extra={"error": str(exc)})
    yield
    close_pool()


app = FastAPI(title="ACH Relay", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(stripe_ach.router)
app.include_router(webhooks.router)


@app.get("/openapi.json", include_in_schema=False)
def custom_openapi(_: None = Depends(require_basic_auth)):
    return JSONResponse(content=app.openapi())


@app.get("/docs", include_in_schema=False)
def custom_swagger_ui(_: None = Depends(require_basic_auth)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="ACH Relay")


@app.get("/redoc", include_in_schema=False)
def custom_redoc(_: None = Depends(require_basic_auth)):
    return get_redoc_html(openapi_url="/openapi.json", title="ACH Relay ReDoc")
