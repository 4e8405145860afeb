from __future__ import annotations

import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter

from ach_relay.config import settings
from ach_relay.repositories.factory import default_store

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _collect_ledger_metrics() -> dict[str, Any]:
    try:
        return default_store().metrics()
    except Exception as exc:  # noqa: BLE001
        logger.info("health metrics collection failed", extra={"error": str(exc)})
        return {"backend": "postgres" if settings.db_enabled else "memory", "connected": False, "ledger": {}}


@router.get("/health/metrics")
async def health_metrics() -> dict[str, Any]:
    """Service health with webhook ledger counters."""

    captured_at = datetime.now(timezone.utc)
    raw_metrics = _collect_ledger_metrics()
    backend = raw_metrics.pop("backend", None)
    db_connected = bool(raw_metrics.pop("connected", False))
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())
    status = "ok" if db_connected or not settings.db_enabled else "degraded"

    return {
        "status": status,
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "webhook_configured": bool(settings.stripe_webhook_secret),
            "stripe_configured": bool(settings.stripe_secret_key),
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "backend": backend,
            "connected": db_connected,
            "schema": settings.db_schema or None,
        },
        "webhooks": raw_metrics,
    }
