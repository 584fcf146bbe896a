"""Payment intent and webhook schemas."""

from decimal import ROUND_HALF_UP, Decimal

from pydantic import Field, model_validator

from src.models.payment import PaymentIntentStatus
from src.schemas.common import CamelModel


class PaymentIntentCreate(CamelModel):
    """Request schema for creating a payment intent.

    The amount may be given in major units (``amount: 25.99``) or in
    cents (``amountCents: 2599``); when both are present they must agree.
    """

    order_id: str = Field(min_length=1, description="Order being paid for")
    amount: Decimal | None = Field(default=None, gt=0, description="Amount in major currency units")
    amount_cents: int | None = Field(default=None, gt=0, description="Amount in minor currency units")
    currency: str | None = Field(default=None, min_length=3, max_length=3, description="ISO 4217 code")

    @model_validator(mode="after")
    def check_amount(self) -> "PaymentIntentCreate":
        if self.amount is None and self.amount_cents is None:
            raise ValueError("amount or amountCents is required")
        if self.amount is not None:
            cents = self.amount * 100
            if cents != cents.to_integral_value():
                raise ValueError("amount has more than two decimal places")
            if self.amount_cents is not None and int(cents) != self.amount_cents:
                raise ValueError("amount and amountCents disagree")
        if self.currency:
            self.currency = self.currency.upper()
        return self

    @property
    def resolved_amount_cents(self) -> int:
        """Requested amount in cents."""
        if self.amount_cents is not None:
            return self.amount_cents
        return int((self.amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentIntentResponse(CamelModel):
    """Response schema for a payment intent."""

    id: str
    order_id: str
    provider_payment_id: str
    client_secret: str | None = None
    amount_cents: int
    currency: str
    status: PaymentIntentStatus
    failure_reason: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class WebhookAck(CamelModel):
    """Acknowledgement returned to the payment provider."""

    event_id: str | None = None
    status: str = Field(description="processed, duplicate, ignored or accepted")
