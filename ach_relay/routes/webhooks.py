from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from ach_relay.config import settings
from ach_relay.providers.stripe_ach import StripeACHProvider
from ach_relay.repositories.factory import default_store
from ach_relay.services.reconciler import ChargeLookup, WebhookReconciler
from ach_relay.services.webhook_verifier import (
    MalformedPayload,
    SignatureMismatch,
    WebhookVerifier,
)

router = APIRouter(prefix="/api/stripe")

_store = default_store()
logger = logging.getLogger(__name__)


def _charge_lookup() -> ChargeLookup | None:
    if not settings.stripe_secret_key:
        return None
    return StripeACHProvider(settings, _store).retrieve_charge


_reconciler = WebhookReconciler(_store, settings, charge_lookup=_charge_lookup())


@router.post("/webhook")
async def stripe_webhook(request: Request) -> dict[str, Any]:
    """Handle Stripe ACH webhooks.

    The signature is verified over the raw body before the event is applied
    to the payment tables. Ignored, unmatched, rejected, stale and duplicate
    events are all acknowledged with 200 so Stripe stops redelivering them.
    """
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not settings.stripe_webhook_secret:
        logger.error(
            "stripe webhook secret missing",
            extra={"endpoint": "/api/stripe/webhook"},
        )
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe webhook not configured")

    verifier = WebhookVerifier(settings.stripe_webhook_secret, settings.stripe_webhook_tolerance)
    try:
        event = verifier.verify(payload, sig_header)
    except MalformedPayload as exc:
        logger.warning(
            "stripe webhook invalid payload",
            extra={"endpoint": "/api/stripe/webhook", "error": str(exc)},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except SignatureMismatch as exc:
        logger.warning(
            "stripe webhook invalid signature",
            extra={"endpoint": "/api/stripe/webhook", "error": str(exc)},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    logger.info(
        "stripe webhook received",
        extra={"endpoint": "/api/stripe/webhook", "event_id": event.id, "event_type": event.type},
    )

    try:
        result = await asyncio.to_thread(_reconciler.handle, event)
    except Exception:
        logger.exception(
            "stripe webhook processing error",
            extra={"endpoint": "/api/stripe/webhook", "event_id": event.id, "event_type": event.type},
        )
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing error")

    return {"status": "Webhook handled", "outcome": result.outcome.value}
