from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, Field


class StripeEventData(BaseModel):
    object: Dict[str, Any]


class StripeEventEnvelope(BaseModel):
    """Shape a verified webhook body must have."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: int | None = None
    livemode: bool = False
    data: StripeEventData


class CreateSetupIntentRequest(BaseModel):
    """Request body for starting bank account collection."""

    customer_id_stripe: str | None = Field(
        default=None, description="Existing Stripe customer; a new one is created when empty"
    )
    email: str | None = None
    name: str | None = None


class SetupIntentResponse(BaseModel):
    success: bool = True
    client_secret: str
    setup_intent_id: str
    customer_id: str


class ConfirmSetupIntentRequest(BaseModel):
    setup_intent_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1, description="Stripe customer id")
    user_id: str | None = Field(default=None, description="Application customer id to update")


class BankAccountDetails(BaseModel):
    success: bool = True
    message: str | None = None
    payment_method_id: str
    bank_name: str = ""
    last4: str = ""
    routing_number: str = ""
    account_type: str = ""
    account_holder_type: str = ""


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1)


class BankTokenRequest(BaseModel):
    """Legacy bank account token (Token API)."""

    account_holder_name: str
    account_holder_type: Literal["individual", "company"] = "individual"
    routing_number: str
    account_number: str
    country: str = "US"
    currency: str | None = None
    customer_id: str | None = Field(default=None, description="Attach the token to this customer")


class BankTokenResponse(BaseModel):
    success: bool = True
    token_id: str
    bank_account_id: str | None = None
    source_id: str | None = None
    status: str | None = None


class VerifyBankAccountRequest(BaseModel):
    customer_id: str
    bank_account_id: str
    amounts: list[int] = Field(..., min_length=2, max_length=2, description="Micro-deposit amounts in cents")


class VerifyBankAccountResponse(BaseModel):
    success: bool = True
    bank_account_id: str
    status: str | None = None


class CustomerWithCardRequest(BaseModel):
    email: str | None = None
    stripe_token: str | None = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class CustomerResponse(BaseModel):
    success: bool = True
    customer_id: str
    source_id: str | None = None


class PaymentIntentCreateRequest(BaseModel):
    """ACH payment intent; ``metadata`` carries the webhook routing keys."""

    customer_id: str
    amount: int = Field(..., gt=0, description="Amount in cents")
    payment_method_id: str | None = None
    confirm: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)


class PaymentIntentConfirmRequest(BaseModel):
    payment_intent_id: str
    payment_method_id: str | None = None


class PaymentIntentResponse(BaseModel):
    success: bool = True
    payment_intent_id: str
    status: str | None = None
    client_secret: str | None = None
    amount: int | None = None


class SubscriptionCreateRequest(BaseModel):
    customer_id: str
    amount: int = Field(..., gt=0, description="Amount in cents per interval")
    interval: Literal["day", "week", "month", "year"] = "month"
    interval_count: int = Field(default=1, ge=1)
    product_name: str | None = None
    payment_method_id: str | None = None


class SubscriptionCancelRequest(BaseModel):
    subscription_id: str


class SubscriptionResponse(BaseModel):
    success: bool = True
    subscription_id: str
    status: str | None = None
    price_id: str | None = None
    client_secret: str | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str | None = None
    message: str | None = None
    status: str | None = None
    next_action: Dict[str, Any] | None = None
