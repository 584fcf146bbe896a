"""Payment intent tracking and settlement."""

import logging
import uuid

from src.api.middleware.error_handler import (
    AmountMismatchError,
    AuthorizationError,
    NotFoundError,
    OrderBusyError,
    PaymentRequiredError,
    PaymentStateError,
    ValidationError,
)
from src.core.locks import KeyedLock, LockTimeoutError
from src.models.order import Order, OrderStatus
from src.models.payment import PaymentIntent, PaymentIntentStatus, PaymentOutcome
from src.repositories.interface import DuplicateRecordError, OrderRepository, PaymentIntentRepository
from src.schemas.auth import UserContext
from src.schemas.common import utcnow
from src.services.order_service import is_party
from src.services.payment_provider import PaymentProvider

logger = logging.getLogger(__name__)


class PaymentIntentTracker:
    """Creates payment intents for orders and applies provider outcomes.

    Intent status only moves PENDING -> CAPTURED or PENDING -> FAILED, and
    each move is a conditional update, so replayed or concurrent provider
    events apply at most once. Settlement never moves the order itself.
    """

    def __init__(
        self,
        orders: OrderRepository,
        intents: PaymentIntentRepository,
        provider: PaymentProvider,
        locks: KeyedLock | None = None,
        lock_timeout: float = 2.0,
        require_captured_payment: bool = False,
    ) -> None:
        self.orders = orders
        self.intents = intents
        self.provider = provider
        self.locks = locks or KeyedLock()
        self.lock_timeout = lock_timeout
        self.require_captured_payment = require_captured_payment

    async def create_intent(
        self,
        order_id: str,
        amount_cents: int,
        currency: str | None,
        actor: UserContext,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        """Create (or return the live) payment intent for an order.

        Args:
            order_id: Order being paid for.
            amount_cents: Requested amount, must equal the order total.
            currency: Requested currency; defaults to the order's.
            actor: Customer paying, or an admin.
            idempotency_key: Forwarded to the provider when present.

        Returns:
            PaymentIntent: A PENDING intent.

        Raises:
            NotFoundError: If the order does not exist.
            AuthorizationError: If the actor does not own the order.
            PaymentStateError: If the order is finished or already paid.
            AmountMismatchError: If the amount differs from the order total.
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if not actor.is_admin and order["customer_id"] != actor.user_id:
            raise AuthorizationError("Only the ordering customer can pay for this order")

        status = OrderStatus(order["status"])
        if status.is_terminal:
            raise PaymentStateError(f"Cannot create a payment intent for an order that is {status.value}")

        if amount_cents != order["total_cents"]:
            logger.warning(
                "Amount mismatch for order %s: requested %d, total %d",
                order_id,
                amount_cents,
                order["total_cents"],
            )
            raise AmountMismatchError(expected_cents=order["total_cents"], actual_cents=amount_cents)

        currency = (currency or order["currency"]).upper()
        if currency != order["currency"].upper():
            raise ValidationError(f"Currency {currency} does not match order currency {order['currency']}")

        try:
            async with self.locks.acquire(f"payment-intent:{order_id}", self.lock_timeout):
                return await self._create_locked(order, amount_cents, currency, idempotency_key)
        except LockTimeoutError as e:
            raise OrderBusyError(order_id) from e

    async def _create_locked(
        self,
        order: Order,
        amount_cents: int,
        currency: str,
        idempotency_key: str | None,
    ) -> PaymentIntent:
        existing = await self._live_intent(order, amount_cents, currency)
        if existing is not None:
            logger.info("Reusing pending intent %s for order %s", existing["id"], order["id"])
            return existing

        provider_intent = await self.provider.create_intent(
            amount_cents,
            currency,
            metadata={"order_id": order["id"], "customer_id": order["customer_id"]},
            idempotency_key=idempotency_key,
        )

        now = utcnow().isoformat()
        intent = PaymentIntent(
            id=str(uuid.uuid4()),
            order_id=order["id"],
            provider_payment_id=provider_intent["provider_payment_id"],
            amount_cents=amount_cents,
            currency=currency,
            status=PaymentIntentStatus.PENDING.value,
            client_secret=provider_intent["client_secret"],
            failure_reason=None,
            captured_at=None,
            failed_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            stored = await self.intents.insert(intent)
        except DuplicateRecordError:
            # Another worker stored a live intent for this order first
            logger.warning(
                "Intent insert for order %s lost a race; provider payment %s left unused",
                order["id"],
                provider_intent["provider_payment_id"],
            )
            existing = await self._live_intent(order, amount_cents, currency)
            if existing is None:
                raise PaymentStateError(f"Order {order['id']} payment intent conflicts with a concurrent request")
            return existing
        logger.info(
            "Payment intent %s (%s) created for order %s: %d %s",
            stored["id"],
            stored["provider_payment_id"],
            order["id"],
            amount_cents,
            currency,
        )
        return stored

    async def _live_intent(self, order: Order, amount_cents: int, currency: str) -> PaymentIntent | None:
        """Return the reusable PENDING intent, if any.

        Raises:
            PaymentStateError: If the order is paid or pending at another amount.
        """
        for existing in await self.intents.list_for_order(order["id"]):
            if existing["status"] == PaymentIntentStatus.CAPTURED.value:
                raise PaymentStateError(f"Order {order['id']} has already been paid")
            if existing["status"] == PaymentIntentStatus.PENDING.value:
                if existing["amount_cents"] == amount_cents and existing["currency"] == currency:
                    return existing
                raise PaymentStateError(f"Order {order['id']} already has a pending payment for a different amount")
        return None

    async def apply_provider_event(
        self,
        provider_payment_id: str,
        outcome: PaymentOutcome,
        order_id: str | None = None,
        reason: str | None = None,
    ) -> PaymentIntent | None:
        """Apply a settlement outcome reported by the provider.

        Unknown intents, intents no longer PENDING and order id mismatches
        are no-ops; the current state is returned unchanged.

        Returns:
            The intent after applying the outcome, or None if unknown.
        """
        intent = await self.intents.get_by_provider_payment_id(provider_payment_id)
        if intent is None:
            logger.warning("Provider event for unknown payment %s ignored", provider_payment_id)
            return None

        if order_id and order_id != intent["order_id"]:
            logger.warning(
                "Provider event for %s names order %s but intent belongs to %s; ignored",
                provider_payment_id,
                order_id,
                intent["order_id"],
            )
            return intent

        if intent["status"] != PaymentIntentStatus.PENDING.value:
            logger.info("Intent %s already %s; %s event ignored", intent["id"], intent["status"], outcome.value)
            return intent

        now = utcnow().isoformat()
        if outcome == PaymentOutcome.SUCCEEDED:
            target = PaymentIntentStatus.CAPTURED
            changes = {"captured_at": now, "updated_at": now}
        else:
            target = PaymentIntentStatus.FAILED
            changes = {"failed_at": now, "failure_reason": reason or "Payment failed", "updated_at": now}

        updated = await self.intents.transition_status(
            intent["id"],
            PaymentIntentStatus.PENDING.value,
            target.value,
            changes,
        )
        if updated is None:
            # Another delivery settled it first
            return await self.intents.get(intent["id"])

        if target == PaymentIntentStatus.CAPTURED:
            logger.info("Payment captured for order %s (intent %s)", updated["order_id"], updated["id"])
        else:
            logger.warning(
                "Payment failed for order %s (intent %s): %s",
                updated["order_id"],
                updated["id"],
                updated["failure_reason"],
            )
        return updated

    async def get_intent(self, intent_id: str, actor: UserContext) -> PaymentIntent:
        """Fetch an intent for a party to its order."""
        intent = await self.intents.get(intent_id)
        if intent is None:
            raise NotFoundError(f"Payment intent {intent_id} not found")
        if not actor.is_admin:
            order = await self.orders.get(intent["order_id"])
            if order is None or not is_party(order, actor):
                raise AuthorizationError("You do not have access to this payment")
        return intent

    async def fulfillment_gate(self, order: Order) -> None:
        """Block forward transitions while the order's payment is unsettled.

        Raises:
            PaymentRequiredError: If the latest payment failed with no retry
                in flight, or capture is required and has not happened.
        """
        intents = await self.intents.list_for_order(order["id"])
        statuses = {intent["status"] for intent in intents}

        if PaymentIntentStatus.CAPTURED.value in statuses:
            return

        if (
            intents
            and intents[-1]["status"] == PaymentIntentStatus.FAILED.value
            and PaymentIntentStatus.PENDING.value not in statuses
        ):
            raise PaymentRequiredError("Payment failed; a new payment is required before the order can progress")

        if self.require_captured_payment and (order.get("payment_method") or "").lower() != "cash":
            raise PaymentRequiredError()
