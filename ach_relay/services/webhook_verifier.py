from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone

import stripe  # type: ignore[import-untyped]
from pydantic import ValidationError

from ach_relay.domain.dtos import StripeEventEnvelope
from ach_relay.domain.models import PaymentEvent

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Inbound webhook rejected before reconciliation."""


class MalformedPayload(WebhookVerificationError):
    """The body is not a Stripe event envelope."""


class SignatureMismatch(WebhookVerificationError):
    """The signature header does not authenticate the body."""


class WebhookVerifier:
    """Authenticate and decode Stripe webhook deliveries.

    The signature is checked over the raw body before anything is parsed, so a
    modified body always fails as ``SignatureMismatch``.
    """

    def __init__(self, secret: str, tolerance: int = 300):
        if not secret:
            raise ValueError("Stripe webhook secret not configured")
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes | str, sig_header: str | None) -> PaymentEvent:
        if not sig_header:
            raise SignatureMismatch("missing Stripe-Signature header")
        if isinstance(payload, bytes):
            try:
                text = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                # the SDK only signs text; check the raw bytes so tampering still reads as a mismatch
                self._verify_raw(payload, sig_header)
                raise MalformedPayload("body is not valid UTF-8") from exc
        else:
            text = payload
        try:
            stripe.WebhookSignature.verify_header(text, sig_header, self.secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureMismatch(str(exc)) from exc
        return self.decode(text)

    def _verify_raw(self, payload: bytes, sig_header: str) -> None:
        """Same scheme as ``stripe.WebhookSignature``, over bytes instead of text."""
        timestamp: int | None = None
        signatures: list[str] = []
        for item in sig_header.split(","):
            key, _, value = item.strip().partition("=")
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError:
                    timestamp = None
            elif key == stripe.WebhookSignature.EXPECTED_SCHEME:
                signatures.append(value)
        if timestamp is None or not signatures:
            raise SignatureMismatch("unable to extract timestamp and signatures from header")
        expected = hmac.new(
            self.secret.encode("utf-8"),
            f"{timestamp}.".encode("ascii") + payload,
            hashlib.sha256,
        ).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise SignatureMismatch("no signatures found matching the expected signature for payload")
        if self.tolerance and timestamp < time.time() - self.tolerance:
            raise SignatureMismatch(f"timestamp outside the tolerance zone ({timestamp})")

    @staticmethod
    def decode(text: str) -> PaymentEvent:
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise MalformedPayload(f"invalid JSON: {exc}") from exc
        try:
            envelope = StripeEventEnvelope.model_validate(data)
        except ValidationError as exc:
            raise MalformedPayload(f"unexpected envelope: {exc.error_count()} error(s)") from exc
        created = None
        if envelope.created is not None:
            created = datetime.fromtimestamp(envelope.created, tz=timezone.utc)
        return PaymentEvent(
            id=envelope.id,
            type=envelope.type,
            object=envelope.data.object,
            created=created,
            livemode=envelope.livemode,
        )
