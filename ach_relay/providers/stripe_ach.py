from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, TypeVar

import stripe  # type: ignore[import-untyped]

from ach_relay.config import Settings
from ach_relay.repositories.base import RecordStore
from ach_relay.utils.objects import get_field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProcessorError(Exception):
    """A Stripe API call failed."""

    def __init__(self, operation: str, message: str, http_status: int | None = None):
        super().__init__(message)
        self.operation = operation
        self.message = message
        self.http_status = http_status


class StripeACHProvider:
    """Stripe calls used for ACH bank collection, payments and subscriptions.

    Every call goes through ``_invoke`` which times it, logs it and, when
    ``log_provider_events`` is enabled, persists it in the provider event log.
    SDK errors are re-raised as ``ProcessorError``.
    """

    def __init__(self, settings: Settings, store: RecordStore | None = None):
        self.settings = settings
        if not settings.stripe_secret_key:
            raise ValueError("Stripe secret key not configured")
        stripe.api_key = settings.stripe_secret_key
        self.store = store
        self.currency = settings.ach_currency

    # Customers
    async def create_customer(
        self,
        *,
        email: str | None = None,
        name: str | None = None,
        description: str = "Customer",
        metadata: Dict[str, str] | None = None,
    ) -> Any:
        params = {
            "email": email,
            "name": name,
            "description": description,
            "metadata": metadata or {},
        }
        return await self._call("CREATE_CUSTOMER", "stripe.Customer.create", lambda: stripe.Customer.create(**params), params)

    async def attach_source(self, customer_id: str, source: str) -> Any:
        return await self._call(
            "ATTACH_SOURCE",
            "stripe.Customer.create_source",
            lambda: stripe.Customer.create_source(customer_id, source=source),
            token=customer_id,
        )

    async def create_customer_with_card(
        self, *, email: str | None, stripe_token: str | None, metadata: Dict[str, str] | None = None
    ) -> tuple[Any, Any | None]:
        customer = await self.create_customer(email=email, metadata=metadata)
        source = None
        if stripe_token:
            source = await self.attach_source(str(get_field(customer, "id")), stripe_token)
        return customer, source

    # Setup intents / payment methods
    async def create_ach_setup_intent(
        self,
        customer_id: str,
        *,
        permissions: list[str] | None = None,
        verification_method: str = "automatic",
    ) -> Any:
        params = {
            "customer": customer_id,
            "payment_method_types": ["us_bank_account"],
            "payment_method_options": {
                "us_bank_account": {
                    "financial_connections": {
                        "permissions": permissions or ["payment_method", "balances"],
                    },
                    "verification_method": verification_method,
                },
            },
        }
        return await self._call(
            "CREATE_SETUP_INTENT",
            "stripe.SetupIntent.create",
            lambda: stripe.SetupIntent.create(**params),
            params,
            token=customer_id,
        )

    async def retrieve_setup_intent(self, setup_intent_id: str) -> Any:
        return await self._call(
            "RETRIEVE_SETUP_INTENT",
            "stripe.SetupIntent.retrieve",
            lambda: stripe.SetupIntent.retrieve(setup_intent_id),
            token=setup_intent_id,
        )

    async def retrieve_payment_method(self, payment_method_id: str) -> Any:
        return await self._call(
            "RETRIEVE_PAYMENT_METHOD",
            "stripe.PaymentMethod.retrieve",
            lambda: stripe.PaymentMethod.retrieve(payment_method_id),
            token=payment_method_id,
        )

    # Payment intents
    async def create_ach_payment_intent(
        self,
        customer_id: str,
        amount_cents: int,
        *,
        payment_method_id: str | None = None,
        metadata: Dict[str, str] | None = None,
        confirm: bool = False,
    ) -> Any:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "customer": customer_id,
            "payment_method_types": ["us_bank_account"],
            "metadata": metadata or {},
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
            if confirm:
                params["confirm"] = True
        return await self._call(
            "CREATE_PAYMENT_INTENT",
            "stripe.PaymentIntent.create",
            lambda: stripe.PaymentIntent.create(**params),
            params,
            token=customer_id,
        )

    async def confirm_payment_intent(self, payment_intent_id: str, payment_method_id: str | None = None) -> Any:
        params: Dict[str, Any] = {}
        if payment_method_id:
            params["payment_method"] = payment_method_id
        return await self._call(
            "CONFIRM_PAYMENT_INTENT",
            "stripe.PaymentIntent.confirm",
            lambda: stripe.PaymentIntent.confirm(payment_intent_id, **params),
            params,
            token=payment_intent_id,
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        return await self._call(
            "RETRIEVE_PAYMENT_INTENT",
            "stripe.PaymentIntent.retrieve",
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
            token=payment_intent_id,
        )

    def retrieve_charge(self, charge_id: str) -> Any:
        """Blocking variant; called from the reconciler worker thread."""

        return self._invoke(
            "RETRIEVE_CHARGE",
            "stripe.Charge.retrieve",
            lambda: stripe.Charge.retrieve(charge_id),
            token=charge_id,
        )

    # Prices / subscriptions
    async def create_price(
        self,
        amount_cents: int,
        *,
        interval: str = "month",
        interval_count: int = 1,
        product_name: str | None = None,
    ) -> Any:
        params = {
            "unit_amount": amount_cents,
            "currency": self.currency,
            "recurring": {"interval": interval, "interval_count": interval_count},
            "product_data": {"name": product_name or "Subscription Payment"},
        }
        return await self._call("CREATE_PRICE", "stripe.Price.create", lambda: stripe.Price.create(**params), params)

    async def create_subscription(self, customer_id: str, price_id: str, payment_method_id: str | None = None) -> Any:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {
                "payment_method_types": ["us_bank_account"],
                "save_default_payment_method": "on_subscription",
            },
            "expand": ["latest_invoice.payment_intent"],
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        return await self._call(
            "CREATE_SUBSCRIPTION",
            "stripe.Subscription.create",
            lambda: stripe.Subscription.create(**params),
            params,
            token=customer_id,
        )

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await self._call(
            "RETRIEVE_SUBSCRIPTION",
            "stripe.Subscription.retrieve",
            lambda: stripe.Subscription.retrieve(subscription_id),
            token=subscription_id,
        )

    async def cancel_subscription(self, subscription_id: str) -> Any:
        return await self._call(
            "CANCEL_SUBSCRIPTION",
            "stripe.Subscription.cancel",
            lambda: stripe.Subscription.cancel(subscription_id),
            token=subscription_id,
        )

    # Legacy bank accounts (Token / Sources API)
    async def create_bank_token(
        self,
        *,
        account_holder_name: str,
        account_holder_type: str,
        routing_number: str,
        account_number: str,
        country: str = "US",
        currency: str | None = None,
    ) -> Any:
        bank_account = {
            "country": country,
            "currency": currency or self.currency,
            "account_holder_name": account_holder_name,
            "account_holder_type": account_holder_type,
            "routing_number": routing_number,
            "account_number": account_number,
        }
        masked = {**bank_account, "account_number": f"****{account_number[-4:]}"}
        return await self._call(
            "CREATE_BANK_TOKEN",
            "stripe.Token.create",
            lambda: stripe.Token.create(bank_account=bank_account),
            {"bank_account": masked},
        )

    async def verify_bank_source(self, customer_id: str, bank_account_id: str, amounts: list[int]) -> Any:
        def _verify() -> Any:
            source = stripe.Customer.retrieve_source(customer_id, bank_account_id)
            return source.verify(amounts=amounts)

        return await self._call(
            "VERIFY_BANK_ACCOUNT",
            "stripe.Customer.retrieve_source.verify",
            _verify,
            {"amounts": amounts},
            token=bank_account_id,
        )

    async def _call(
        self,
        operation: str,
        request_url: str,
        fn: Callable[[], T],
        request_body: Dict[str, Any] | None = None,
        token: str | None = None,
    ) -> T:
        return await asyncio.to_thread(self._invoke, operation, request_url, fn, request_body, token)

    def _invoke(
        self,
        operation: str,
        request_url: str,
        fn: Callable[[], T],
        request_body: Dict[str, Any] | None = None,
        token: str | None = None,
    ) -> T:
        started = time.monotonic()
        try:
            result = fn()
        except stripe.StripeError as exc:
            latency_ms = int((time.monotonic() - started) * 1000)
            http_status = getattr(exc, "http_status", None)
            message = getattr(exc, "user_message", None) or str(exc) or "Payment processor request failed"
            logger.warning(
                "stripe call failed",
                extra={
                    "operation": operation,
                    "latency_ms": latency_ms,
                    "response_code": http_status,
                    "error": str(exc),
                },
            )
            self._log_event(
                operation=operation,
                request_url=request_url,
                token=token,
                request_body=request_body,
                response_status=http_status,
                error_message=str(exc),
                latency_ms=latency_ms,
            )
            raise ProcessorError(operation, message, http_status) from exc

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info("stripe call", extra={"operation": operation, "latency_ms": latency_ms})
        self._log_event(
            operation=operation,
            request_url=request_url,
            token=token,
            request_body=request_body,
            response_status=200,
            response_body={"id": get_field(result, "id"), "status": get_field(result, "status")},
            latency_ms=latency_ms,
        )
        return result

    def _log_event(
        self,
        *,
        operation: str,
        request_url: str,
        token: str | None = None,
        request_body: Dict[str, Any] | None = None,
        response_status: int | None = None,
        response_body: Dict[str, Any] | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
    ) -> None:
        if not self.settings.log_provider_events or self.store is None:
            return
        try:
            self.store.log_provider_event(
                provider="stripe",
                direction="OUTBOUND",
                operation=operation,
                request_url=request_url,
                token=token,
                response_status=response_status,
                error_message=error_message,
                latency_ms=latency_ms,
                request_body=request_body,
                response_body=response_body,
            )
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "provider event log error",
                extra={"operation": operation, "error": str(exc)},
            )
