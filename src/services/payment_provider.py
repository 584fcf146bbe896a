"""Provider-side payment intent creation."""

import logging
import secrets
from typing import Any, Protocol, TypedDict

import stripe

from src.core.stripe import get_stripe

logger = logging.getLogger(__name__)


class ProviderIntent(TypedDict):
    """What the provider returns for a newly created intent."""

    provider_payment_id: str
    client_secret: str


class PaymentProvider(Protocol):
    """Creates payment intents with the external processor."""

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> ProviderIntent:
        ...


class LocalPaymentProvider:
    """Issues provider-shaped ids locally; settlement arrives via webhooks."""

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> ProviderIntent:
        provider_payment_id = f"pi_{secrets.token_hex(12)}"
        client_secret = f"{provider_payment_id}_secret_{secrets.token_urlsafe(18)}"
        logger.debug("Created local intent %s for %d %s", provider_payment_id, amount_cents, currency)
        return ProviderIntent(provider_payment_id=provider_payment_id, client_secret=client_secret)


class StripePaymentProvider:
    """Creates PaymentIntents through the Stripe SDK."""

    def __init__(self, client: Any | None = None) -> None:
        self.stripe = client or get_stripe()

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> ProviderIntent:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            intent = self.stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent creation failed: %s", e)
            raise

        logger.info("Created Stripe PaymentIntent %s for order %s", intent.id, metadata.get("order_id"))
        return ProviderIntent(provider_payment_id=intent.id, client_secret=intent.client_secret)
