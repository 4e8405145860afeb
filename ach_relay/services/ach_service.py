from __future__ import annotations

import logging
from typing import Any

from ach_relay.config import Settings, settings
from ach_relay.domain.dtos import (
    BankAccountDetails,
    BankTokenRequest,
    BankTokenResponse,
    ConfirmSetupIntentRequest,
    CreateSetupIntentRequest,
    CustomerResponse,
    CustomerWithCardRequest,
    PaymentIntentConfirmRequest,
    PaymentIntentCreateRequest,
    PaymentIntentResponse,
    SetupIntentResponse,
    SubscriptionCreateRequest,
    SubscriptionResponse,
    VerifyBankAccountRequest,
    VerifyBankAccountResponse,
)
from ach_relay.providers.stripe_ach import StripeACHProvider
from ach_relay.repositories.base import RecordStore
from ach_relay.utils.objects import get_field, object_id


class SetupIntentNotConfirmed(Exception):
    """The setup intent has not reached ``succeeded``."""

    def __init__(self, status: str | None, next_action: Any = None):
        super().__init__(f"SetupIntent not confirmed ({status})")
        self.status = status
        self.next_action = next_action


def _bank_details(payment_method: Any, message: str | None = None) -> BankAccountDetails:
    bank = get_field(payment_method, "us_bank_account", {}) or {}
    return BankAccountDetails(
        message=message,
        payment_method_id=str(get_field(payment_method, "id", "")),
        bank_name=get_field(bank, "bank_name", ""),
        last4=get_field(bank, "last4", ""),
        routing_number=get_field(bank, "routing_number", ""),
        account_type=get_field(bank, "account_type", ""),
        account_holder_type=get_field(bank, "account_holder_type", ""),
    )


def _intent_client_secret(subscription: Any) -> str | None:
    invoice = get_field(subscription, "latest_invoice")
    intent = get_field(invoice, "payment_intent") if not isinstance(invoice, str) else None
    if intent is None or isinstance(intent, str):
        return None
    return get_field(intent, "client_secret")


class AchService:
    """Business logic behind the ACH endpoints."""

    def __init__(self, store: RecordStore, provider: StripeACHProvider, cfg: Settings = settings):
        self.store = store
        self.provider = provider
        self.settings = cfg
        self.logger = logging.getLogger(__name__)

    # Bank account collection
    async def create_setup_intent(self, request: CreateSetupIntentRequest) -> SetupIntentResponse:
        customer_id = request.customer_id_stripe
        if not customer_id:
            customer = await self.provider.create_customer(
                email=request.email,
                name=request.name,
                description="Simple Statement Customer",
                metadata={"source": "signup_ach"},
            )
            customer_id = str(get_field(customer, "id"))
            self.logger.info("stripe customer created", extra={"customer": customer_id})
        setup_intent = await self.provider.create_ach_setup_intent(
            customer_id,
            permissions=["payment_method", "balances"],
            verification_method="automatic",
        )
        return SetupIntentResponse(
            client_secret=str(get_field(setup_intent, "client_secret", "")),
            setup_intent_id=str(get_field(setup_intent, "id")),
            customer_id=customer_id,
        )

    async def confirm_setup_intent(self, request: ConfirmSetupIntentRequest) -> BankAccountDetails:
        """Read the collected bank account and store it on the customer.

        Raises ``SetupIntentNotConfirmed`` unless the setup intent succeeded.
        """

        setup_intent = await self.provider.retrieve_setup_intent(request.setup_intent_id)
        status = get_field(setup_intent, "status")
        if status != "succeeded":
            next_action = get_field(setup_intent, "next_action")
            raise SetupIntentNotConfirmed(status, dict(next_action) if next_action else None)

        payment_method_id = object_id(get_field(setup_intent, "payment_method"))
        if not payment_method_id:
            raise ValueError("SetupIntent has no payment method")
        payment_method = await self.provider.retrieve_payment_method(payment_method_id)
        details = _bank_details(payment_method, message="Bank account connected successfully")

        if request.user_id:
            updated = self.store.save_customer_bank_account(
                request.user_id,
                customer_id_stripe=request.customer_id,
                payment_method_id=payment_method_id,
                setup_intent_id=request.setup_intent_id,
                bank_name=details.bank_name,
                routing_number=details.routing_number,
                last4=details.last4,
            )
            self.logger.info(
                "customer bank account saved",
                extra={
                    "user_id": request.user_id,
                    "setup_intent": request.setup_intent_id,
                    "customer": request.customer_id,
                    "record_ids": [request.user_id] if updated else [],
                },
            )
        return details

    async def get_payment_method(self, payment_method_id: str) -> BankAccountDetails:
        payment_method = await self.provider.retrieve_payment_method(payment_method_id)
        return _bank_details(payment_method)

    # Legacy bank accounts and cards
    async def create_bank_token(self, request: BankTokenRequest) -> BankTokenResponse:
        token = await self.provider.create_bank_token(
            account_holder_name=request.account_holder_name,
            account_holder_type=request.account_holder_type,
            routing_number=request.routing_number,
            account_number=request.account_number,
            country=request.country,
            currency=request.currency,
        )
        bank_account = get_field(token, "bank_account")
        source_id = None
        status = get_field(bank_account, "status")
        if request.customer_id:
            source = await self.provider.attach_source(request.customer_id, str(get_field(token, "id")))
            source_id = get_field(source, "id")
            status = get_field(source, "status", status)
        return BankTokenResponse(
            token_id=str(get_field(token, "id")),
            bank_account_id=object_id(bank_account),
            source_id=source_id,
            status=status,
        )

    async def verify_bank_account(self, request: VerifyBankAccountRequest) -> VerifyBankAccountResponse:
        source = await self.provider.verify_bank_source(
            request.customer_id, request.bank_account_id, list(request.amounts)
        )
        return VerifyBankAccountResponse(
            bank_account_id=str(get_field(source, "id", request.bank_account_id)),
            status=get_field(source, "status"),
        )

    async def create_customer_with_card(self, request: CustomerWithCardRequest) -> CustomerResponse:
        customer, source = await self.provider.create_customer_with_card(
            email=request.email,
            stripe_token=request.stripe_token,
            metadata=request.metadata,
        )
        return CustomerResponse(
            customer_id=str(get_field(customer, "id")),
            source_id=get_field(source, "id") if source is not None else None,
        )

    # Payment intents
    async def create_payment_intent(self, request: PaymentIntentCreateRequest) -> PaymentIntentResponse:
        intent = await self.provider.create_ach_payment_intent(
            request.customer_id,
            request.amount,
            payment_method_id=request.payment_method_id,
            metadata=request.metadata,
            confirm=request.confirm,
        )
        self.logger.info(
            "payment intent created",
            extra={
                "payment_intent": get_field(intent, "id"),
                "customer": request.customer_id,
                "amount": request.amount,
                "metadata": request.metadata,
                "status": get_field(intent, "status"),
            },
        )
        return self._intent_response(intent)

    async def confirm_payment_intent(self, request: PaymentIntentConfirmRequest) -> PaymentIntentResponse:
        intent = await self.provider.confirm_payment_intent(request.payment_intent_id, request.payment_method_id)
        return self._intent_response(intent)

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntentResponse:
        intent = await self.provider.retrieve_payment_intent(payment_intent_id)
        return self._intent_response(intent)

    @staticmethod
    def _intent_response(intent: Any) -> PaymentIntentResponse:
        return PaymentIntentResponse(
            payment_intent_id=str(get_field(intent, "id")),
            status=get_field(intent, "status"),
            client_secret=get_field(intent, "client_secret"),
            amount=get_field(intent, "amount"),
        )

    # Subscriptions
    async def create_subscription(self, request: SubscriptionCreateRequest) -> SubscriptionResponse:
        price = await self.provider.create_price(
            request.amount,
            interval=request.interval,
            interval_count=request.interval_count,
            product_name=request.product_name,
        )
        price_id = str(get_field(price, "id"))
        subscription = await self.provider.create_subscription(
            request.customer_id, price_id, request.payment_method_id
        )
        self.logger.info(
            "subscription created",
            extra={
                "customer": request.customer_id,
                "amount": request.amount,
                "status": get_field(subscription, "status"),
            },
        )
        return SubscriptionResponse(
            subscription_id=str(get_field(subscription, "id")),
            status=get_field(subscription, "status"),
            price_id=price_id,
            client_secret=_intent_client_secret(subscription),
        )

    async def get_subscription(self, subscription_id: str) -> SubscriptionResponse:
        subscription = await self.provider.retrieve_subscription(subscription_id)
        return SubscriptionResponse(
            subscription_id=str(get_field(subscription, "id")),
            status=get_field(subscription, "status"),
        )

    async def cancel_subscription(self, subscription_id: str) -> SubscriptionResponse:
        subscription = await self.provider.cancel_subscription(subscription_id)
        return SubscriptionResponse(
            subscription_id=str(get_field(subscription, "id")),
            status=get_field(subscription, "status"),
        )
