from __future__ import annotations

import hashlib
import hmac
import json
import pathlib
import sys
import time
from typing import Any

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from ach_relay.config import Settings
from ach_relay.repositories.memory_store import InMemoryRecordStore
from ach_relay.services.reconciler import WebhookReconciler

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: str | bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    raw = payload if isinstance(payload, bytes) else payload.encode()
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + raw, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event_body(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int | None = 1_700_000_000,
) -> str:
    body: dict[str, Any] = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": False,
        "data": {"object": obj},
    }
    if created is not None:
        body["created"] = created
    return json.dumps(body)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def cfg() -> Settings:
    return Settings(
        stripe_webhook_secret=WEBHOOK_SECRET,
        db_host="",
        enforce_event_ordering=True,
        reconcile_cas_retries=3,
    )


@pytest.fixture
def reconciler(store: InMemoryRecordStore, cfg: Settings) -> WebhookReconciler:
    return WebhookReconciler(store, cfg)
