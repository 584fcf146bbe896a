"""Payment provider webhook ingestion.

Deliveries are verified, recorded in the webhook ledger keyed by event id,
applied to the payment tracker, and acknowledged. The ledger row is the
only arbiter of which delivery applies an event: a delivery applies only
after creating the row or re-claiming its expired lease.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from src.api.middleware.error_handler import InvalidSignatureError, ValidationError
from src.core.webhook_signature import SignatureVerificationError, verify_signature
from src.models.payment import PaymentOutcome
from src.models.webhook_event import WebhookEvent
from src.repositories.interface import WebhookEventRepository
from src.schemas.common import utcnow
from src.services.payment_service import PaymentIntentTracker

logger = logging.getLogger(__name__)

EVENT_OUTCOMES: dict[str, PaymentOutcome] = {
    "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
    "payment.captured": PaymentOutcome.SUCCEEDED,
    "payment.success": PaymentOutcome.SUCCEEDED,
    "charge.succeeded": PaymentOutcome.SUCCEEDED,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
    "payment.failed": PaymentOutcome.FAILED,
    "charge.failed": PaymentOutcome.FAILED,
}

# Ack statuses
PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
ACCEPTED = "accepted"
FAILED = "failed"


@dataclass
class WebhookResult:
    """Acknowledgement for a single delivery."""

    status: str
    event_id: str | None = None

    @property
    def http_status(self) -> int:
        return 202 if self.status == ACCEPTED else 200


@dataclass
class ProviderEventFields:
    """Fields the tracker needs, pulled from a provider payload."""

    provider_payment_id: str | None
    order_id: str | None
    reason: str | None


def extract_event_fields(event: dict[str, Any]) -> ProviderEventFields:
    """Locate payment id, order id and failure reason in a provider event.

    Supports Stripe-shaped payloads (``data.object``) and flat ``data``.
    """
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else data

    # Charge events carry the intent id separately from their own id
    provider_payment_id = obj.get("payment_intent") if isinstance(obj.get("payment_intent"), str) else obj.get("id")
    provider_payment_id = (
        provider_payment_id
        or data.get("payment_id")
        or data.get("providerPaymentId")
        or data.get("provider_payment_id")
    )

    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    order_id = metadata.get("orderId") or metadata.get("order_id") or data.get("orderId") or data.get("order_id")

    last_error = obj.get("last_payment_error") if isinstance(obj.get("last_payment_error"), dict) else {}
    reason = last_error.get("message") or obj.get("failure_message") or data.get("reason")

    return ProviderEventFields(
        provider_payment_id=str(provider_payment_id) if provider_payment_id else None,
        order_id=str(order_id) if order_id else None,
        reason=reason,
    )


class WebhookIngestor:
    """Verifies, deduplicates and applies payment provider webhooks."""

    def __init__(
        self,
        events: WebhookEventRepository,
        tracker: PaymentIntentTracker,
        secret: str,
        tolerance_seconds: int = 300,
        processing_timeout: float = 5.0,
        max_attempts: int = 5,
        retry_base_seconds: int = 30,
        lease_seconds: int = 60,
    ) -> None:
        self.events = events
        self.tracker = tracker
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.processing_timeout = processing_timeout
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.lease = timedelta(seconds=max(lease_seconds, processing_timeout * 2))
        self._tasks: set[asyncio.Task] = set()

    def verify(self, raw_body: bytes, signature_header: str | None) -> None:
        """Check the delivery's signature before anything is recorded.

        Raises:
            InvalidSignatureError: If verification fails.
        """
        try:
            verify_signature(raw_body, signature_header, self.secret, self.tolerance_seconds)
        except SignatureVerificationError as e:
            logger.warning("Rejected webhook delivery: %s", e)
            raise InvalidSignatureError() from e

    @staticmethod
    def parse(raw_body: bytes) -> tuple[str, str, dict[str, Any]]:
        """Decode the event and return (event id, type, payload).

        Raises:
            ValidationError: If the body is not a JSON object with an id.
        """
        try:
            event = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Malformed webhook payload") from e
        if not isinstance(event, dict):
            raise ValidationError("Webhook payload must be a JSON object")

        event_id = event.get("id") or event.get("event_id") or event.get("eventId")
        if not event_id:
            raise ValidationError("Webhook payload has no event id")
        event_type = event.get("type") or event.get("event") or ""
        return str(event_id), str(event_type), event

    async def ingest(self, raw_body: bytes, signature_header: str | None) -> WebhookResult:
        """Handle one delivery end to end.

        Returns:
            WebhookResult: ``processed``/``ignored`` when applied in time,
            ``duplicate`` when another delivery owns the event, and
            ``accepted`` when the apply is still running or queued for retry.
        """
        self.verify(raw_body, signature_header)
        event_id, event_type, payload = self.parse(raw_body)

        now = utcnow()
        row = WebhookEvent(
            event_id=event_id,
            type=event_type,
            payload=payload,
            received_at=now.isoformat(),
            processed=False,
            processed_at=None,
            attempts=0,
            last_error=None,
            lease_expires_at=(now + self.lease).isoformat(),
            next_retry_at=None,
            dead_lettered=False,
        )

        if not await self.events.try_insert(row):
            claimed = await self.events.try_claim(event_id, now, now + self.lease)
            if claimed is None:
                logger.info("Duplicate webhook %s (%s) acknowledged", event_id, event_type)
                return WebhookResult(status=DUPLICATE, event_id=event_id)
            logger.info("Re-claimed webhook %s after %d failed attempts", event_id, claimed["attempts"])
            row = claimed

        task = asyncio.create_task(self.process_claimed(row))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        try:
            status = await asyncio.wait_for(asyncio.shield(task), timeout=self.processing_timeout)
        except asyncio.TimeoutError:
            logger.warning("Webhook %s still applying after %.1fs; acknowledged as accepted", event_id, self.processing_timeout)
            return WebhookResult(status=ACCEPTED, event_id=event_id)

        if status == FAILED:
            return WebhookResult(status=ACCEPTED, event_id=event_id)
        return WebhookResult(status=status, event_id=event_id)

    async def process_claimed(self, row: WebhookEvent) -> str:
        """Apply a ledger row whose lease this caller holds.

        Returns:
            ``processed``, ``ignored`` or ``failed``.
        """
        event_id = row["event_id"]
        outcome = EVENT_OUTCOMES.get(row["type"])
        try:
            if outcome is None:
                logger.debug("Unhandled webhook event type %s (%s)", row["type"], event_id)
            else:
                fields = extract_event_fields(row["payload"])
                if fields.provider_payment_id is None:
                    logger.warning("Webhook %s (%s) has no payment id; ignored", event_id, row["type"])
                    outcome = None
                else:
                    await self.tracker.apply_provider_event(
                        fields.provider_payment_id,
                        outcome,
                        order_id=fields.order_id,
                        reason=fields.reason,
                    )
            await self.events.mark_processed(event_id, utcnow())
        except Exception as e:
            await self._record_failure(row, e)
            return FAILED

        return PROCESSED if outcome is not None else IGNORED

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        """Exponential backoff: base, 2x base, 4x base, ..."""
        return now + timedelta(seconds=self.retry_base_seconds * 2 ** (attempts - 1))

    async def _record_failure(self, row: WebhookEvent, error: Exception) -> None:
        attempts = row["attempts"] + 1
        dead_lettered = attempts >= self.max_attempts
        now = utcnow()
        next_retry = None if dead_lettered else self.next_retry_at(attempts, now)

        await self.events.record_failure(
            row["event_id"],
            attempts=attempts,
            error=str(error)[:1000],
            released_at=now,
            next_retry_at=next_retry,
            dead_lettered=dead_lettered,
        )
        if dead_lettered:
            logger.error(
                "Webhook %s (%s) dead-lettered after %d attempts: %s",
                row["event_id"],
                row["type"],
                attempts,
                error,
            )
        else:
            logger.error(
                "Webhook %s (%s) apply failed (attempt %d/%d), retry at %s: %s",
                row["event_id"],
                row["type"],
                attempts,
                self.max_attempts,
                next_retry.isoformat(),
                error,
            )

    async def drain(self) -> None:
        """Wait for applies still running in the background."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class WebhookRetryWorker:
    """Re-applies failed webhook events once their backoff has elapsed."""

    def __init__(self, ingestor: WebhookIngestor, events: WebhookEventRepository, batch_size: int = 50) -> None:
        self.ingestor = ingestor
        self.events = events
        self.batch_size = batch_size

    async def sweep(self) -> int:
        """Retry every due event this worker can claim.

        Returns:
            int: Number of events re-applied successfully.
        """
        now = utcnow()
        due = await self.events.list_due_for_retry(now, limit=self.batch_size)
        applied = 0
        for row in due:
            claimed = await self.events.try_claim(row["event_id"], now, now + self.ingestor.lease)
            if claimed is None:
                continue
            if await self.ingestor.process_claimed(claimed) != FAILED:
                applied += 1
        if due:
            logger.info("Webhook retry sweep: %d due, %d applied", len(due), applied)
        return applied
