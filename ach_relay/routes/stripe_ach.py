from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ach_relay.config import settings
from ach_relay.domain.dtos import (
    BankAccountDetails,
    BankTokenRequest,
    BankTokenResponse,
    ConfirmSetupIntentRequest,
    CreateSetupIntentRequest,
    CustomerResponse,
    CustomerWithCardRequest,
    ErrorResponse,
    PaymentIntentConfirmRequest,
    PaymentIntentCreateRequest,
    PaymentIntentResponse,
    PaymentMethodRequest,
    SetupIntentResponse,
    SubscriptionCancelRequest,
    SubscriptionCreateRequest,
    SubscriptionResponse,
    VerifyBankAccountRequest,
    VerifyBankAccountResponse,
)
from ach_relay.providers.stripe_ach import ProcessorError, StripeACHProvider
from ach_relay.repositories.factory import default_store
from ach_relay.services.ach_service import AchService, SetupIntentNotConfirmed
from ach_relay.utils.security import verify_bearer_token

router = APIRouter(
    prefix="/api/stripe",
    dependencies=[Depends(verify_bearer_token)],
    responses={400: {"model": ErrorResponse}},
)

_store = default_store()
logger = logging.getLogger(__name__)

T = TypeVar("T")


def _service() -> AchService:
    return AchService(_store, StripeACHProvider(settings, _store), settings)


def _error(message: str, http_status: int = status.HTTP_400_BAD_REQUEST, **fields: Any) -> JSONResponse:
    body = ErrorResponse(error=message, **fields)
    return JSONResponse(status_code=http_status, content=body.model_dump(exclude_none=True))


async def _run(endpoint: str, call: Callable[[AchService], Awaitable[T]]) -> T | JSONResponse:
    try:
        return await call(_service())
    except ProcessorError as exc:
        logger.error(
            "stripe request failed",
            extra={"endpoint": endpoint, "operation": exc.operation, "response_code": exc.http_status, "error": exc.message},
        )
        return _error(exc.message)
    except ValueError as exc:
        logger.error("ach request rejected", extra={"endpoint": endpoint, "error": str(exc)})
        return _error(str(exc))


@router.post("/create-setup-intent", response_model=SetupIntentResponse)
async def create_setup_intent(req: CreateSetupIntentRequest) -> Any:
    """Start bank account collection through Financial Connections."""
    return await _run("/api/stripe/create-setup-intent", lambda svc: svc.create_setup_intent(req))


@router.post(
    "/confirm-setup-intent",
    response_model=BankAccountDetails,
    responses={202: {"model": ErrorResponse}},
)
async def confirm_setup_intent(req: ConfirmSetupIntentRequest) -> Any:
    """Read the connected bank account once the setup intent succeeded."""
    try:
        return await _run("/api/stripe/confirm-setup-intent", lambda svc: svc.confirm_setup_intent(req))
    except SetupIntentNotConfirmed as exc:
        logger.info(
            "setup intent not confirmed",
            extra={"endpoint": "/api/stripe/confirm-setup-intent", "setup_intent": req.setup_intent_id, "status": exc.status},
        )
        if exc.status == "requires_action":
            body = ErrorResponse(
                status="requires_action",
                message="Additional verification required",
                next_action=exc.next_action,
            )
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(exclude_none=True))
        return _error("SetupIntent not confirmed", status=exc.status)


@router.post("/get-payment-method", response_model=BankAccountDetails)
async def get_payment_method(req: PaymentMethodRequest) -> Any:
    return await _run("/api/stripe/get-payment-method", lambda svc: svc.get_payment_method(req.payment_method_id))


@router.post("/create-bank-token", response_model=BankTokenResponse)
async def create_bank_token(req: BankTokenRequest) -> Any:
    """Tokenize a bank account (legacy Sources flow), optionally attaching it."""
    return await _run("/api/stripe/create-bank-token", lambda svc: svc.create_bank_token(req))


@router.post("/verify-bank-account", response_model=VerifyBankAccountResponse)
async def verify_bank_account(req: VerifyBankAccountRequest) -> Any:
    return await _run("/api/stripe/verify-bank-account", lambda svc: svc.verify_bank_account(req))


@router.post("/create-customer-with-card", response_model=CustomerResponse)
async def create_customer_with_card(req: CustomerWithCardRequest) -> Any:
    return await _run("/api/stripe/create-customer-with-card", lambda svc: svc.create_customer_with_card(req))


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(req: PaymentIntentCreateRequest) -> Any:
    """Create an ACH payment intent.

    The ``metadata`` keys (``order_type``, ``order_id``, ``user_id``...) are
    what the webhook uses to find the payment record later.
    """
    return await _run("/api/stripe/create-payment-intent", lambda svc: svc.create_payment_intent(req))


@router.post("/confirm-payment-intent", response_model=PaymentIntentResponse)
async def confirm_payment_intent(req: PaymentIntentConfirmRequest) -> Any:
    return await _run("/api/stripe/confirm-payment-intent", lambda svc: svc.confirm_payment_intent(req))


@router.get("/payment-intents/{payment_intent_id}", response_model=PaymentIntentResponse)
async def get_payment_intent(payment_intent_id: str) -> Any:
    return await _run("/api/stripe/payment-intents", lambda svc: svc.get_payment_intent(payment_intent_id))


@router.post("/create-subscription", response_model=SubscriptionResponse)
async def create_subscription(req: SubscriptionCreateRequest) -> Any:
    return await _run("/api/stripe/create-subscription", lambda svc: svc.create_subscription(req))


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: str) -> Any:
    return await _run("/api/stripe/subscriptions", lambda svc: svc.get_subscription(subscription_id))


@router.post("/cancel-subscription", response_model=SubscriptionResponse)
async def cancel_subscription(req: SubscriptionCancelRequest) -> Any:
    return await _run("/api/stripe/cancel-subscription", lambda svc: svc.cancel_subscription(req.subscription_id))
