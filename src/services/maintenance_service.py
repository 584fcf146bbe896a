"""Background retention pruning and webhook retry sweeps."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from src.repositories.interface import WebhookEventRepository
from src.schemas.common import utcnow
from src.services.idempotency_service import IdempotencyGuard
from src.services.webhook_service import WebhookRetryWorker

logger = logging.getLogger(__name__)


class MaintenanceWorker:
    """Periodic housekeeping for the idempotency store and webhook ledger."""

    def __init__(
        self,
        idempotency: IdempotencyGuard,
        events: WebhookEventRepository,
        retry_worker: WebhookRetryWorker,
        interval_seconds: int = 300,
        webhook_retention_days: int = 30,
    ) -> None:
        self.idempotency = idempotency
        self.events = events
        self.retry_worker = retry_worker
        self.interval_seconds = interval_seconds
        self.webhook_retention = timedelta(days=webhook_retention_days)
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start background maintenance task."""
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info("Maintenance task started (every %ds)", self.interval_seconds)

    async def stop(self) -> None:
        """Stop background maintenance task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Maintenance task stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    async def run_once(self) -> dict[str, int]:
        """Run every housekeeping step once; a failing step does not stop the others."""
        results = {"idempotency_pruned": 0, "webhooks_pruned": 0, "webhooks_retried": 0}

        try:
            results["webhooks_retried"] = await self.retry_worker.sweep()
        except Exception as e:
            logger.error("Webhook retry sweep failed: %s", e)

        try:
            results["idempotency_pruned"] = await self.idempotency.prune_expired()
        except Exception as e:
            logger.error("Idempotency pruning failed: %s", e)

        try:
            results["webhooks_pruned"] = await self.events.prune_processed(utcnow() - self.webhook_retention)
            if results["webhooks_pruned"]:
                logger.info("Pruned %d webhook ledger rows", results["webhooks_pruned"])
        except Exception as e:
            logger.error("Webhook ledger pruning failed: %s", e)

        return results
