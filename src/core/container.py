"""Service wiring for the configured storage and payment backends."""

import logging
from dataclasses import dataclass

from src.core.config import Settings
from src.core.locks import KeyedLock
from src.repositories.interface import (
    IdempotencyRepository,
    OrderRepository,
    PaymentIntentRepository,
    WebhookEventRepository,
)
from src.services.driver_assignment_service import DriverAssignmentService, MaxActiveOrdersPolicy
from src.services.idempotency_service import IdempotencyGuard
from src.services.maintenance_service import MaintenanceWorker
from src.services.menu_catalog_service import MenuCatalog, StaticMenuCatalog, SupabaseMenuCatalog
from src.services.notification_service import HttpNotifier, LoggingNotifier, NotificationDispatcher, Notifier
from src.services.order_service import OrderService
from src.services.order_state_machine import OrderStateMachine
from src.services.payment_provider import LocalPaymentProvider, PaymentProvider, StripePaymentProvider
from src.services.payment_service import PaymentIntentTracker
from src.services.webhook_service import WebhookIngestor, WebhookRetryWorker

logger = logging.getLogger(__name__)


@dataclass
class Repositories:
    orders: OrderRepository
    intents: PaymentIntentRepository
    events: WebhookEventRepository
    idempotency: IdempotencyRepository


@dataclass
class ServiceContainer:
    """Long-lived services shared by all requests."""

    settings: Settings
    repositories: Repositories
    notifications: NotificationDispatcher
    orders: OrderService
    assignments: DriverAssignmentService
    payments: PaymentIntentTracker
    webhooks: WebhookIngestor
    idempotency: IdempotencyGuard
    maintenance: MaintenanceWorker


def build_repositories(settings: Settings) -> Repositories:
    """Create repositories for ``settings.storage_backend``."""
    if settings.storage_backend == "supabase":
        from src.core.supabase import get_supabase_client
        from src.repositories.supabase_repository import (
            SupabaseIdempotencyRepository,
            SupabaseOrderRepository,
            SupabasePaymentIntentRepository,
            SupabaseWebhookEventRepository,
        )

        client = get_supabase_client()
        return Repositories(
            orders=SupabaseOrderRepository(client),
            intents=SupabasePaymentIntentRepository(client),
            events=SupabaseWebhookEventRepository(client),
            idempotency=SupabaseIdempotencyRepository(client),
        )

    from src.repositories.memory import (
        InMemoryIdempotencyRepository,
        InMemoryOrderRepository,
        InMemoryPaymentIntentRepository,
        InMemoryWebhookEventRepository,
    )

    return Repositories(
        orders=InMemoryOrderRepository(),
        intents=InMemoryPaymentIntentRepository(),
        events=InMemoryWebhookEventRepository(),
        idempotency=InMemoryIdempotencyRepository(),
    )


def build_menu_catalog(settings: Settings) -> MenuCatalog:
    if settings.storage_backend == "supabase":
        from src.core.supabase import get_supabase_client

        return SupabaseMenuCatalog(get_supabase_client())
    if settings.menu_catalog_file:
        return StaticMenuCatalog.from_file(settings.menu_catalog_file)
    logger.warning("No menu catalog configured; every order will be rejected")
    return StaticMenuCatalog()


def build_notifier(settings: Settings) -> Notifier:
    if settings.notification_service_url:
        return HttpNotifier(settings.notification_service_url, timeout=settings.notification_timeout_seconds)
    return LoggingNotifier()


def build_payment_provider(settings: Settings) -> PaymentProvider:
    if settings.payment_provider == "stripe":
        return StripePaymentProvider()
    return LocalPaymentProvider()


def build_container(
    settings: Settings,
    repositories: Repositories | None = None,
    catalog: MenuCatalog | None = None,
    notifier: Notifier | None = None,
    provider: PaymentProvider | None = None,
) -> ServiceContainer:
    """Wire every service for the given settings.

    Collaborators may be passed in to override the configured ones.
    """
    repositories = repositories or build_repositories(settings)
    locks = KeyedLock()
    notifications = NotificationDispatcher(notifier or build_notifier(settings))

    payments = PaymentIntentTracker(
        repositories.orders,
        repositories.intents,
        provider or build_payment_provider(settings),
        locks=locks,
        lock_timeout=settings.order_lock_timeout_seconds,
        require_captured_payment=settings.require_captured_payment,
    )
    orders = OrderService(
        repositories.orders,
        catalog or build_menu_catalog(settings),
        notifications,
        OrderStateMachine(settings.cancellation_policy_table),
        locks=locks,
        payments=payments,
        lock_timeout=settings.order_lock_timeout_seconds,
        default_currency=settings.default_currency,
    )
    assignments = DriverAssignmentService(
        orders,
        MaxActiveOrdersPolicy(repositories.orders, settings.driver_max_active_orders),
    )
    webhooks = WebhookIngestor(
        repositories.events,
        payments,
        secret=settings.webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        processing_timeout=settings.webhook_processing_timeout_seconds,
        max_attempts=settings.webhook_max_attempts,
        retry_base_seconds=settings.webhook_retry_base_seconds,
    )
    idempotency = IdempotencyGuard(repositories.idempotency, retention_hours=settings.idempotency_retention_hours)
    maintenance = MaintenanceWorker(
        idempotency,
        repositories.events,
        WebhookRetryWorker(webhooks, repositories.events),
        interval_seconds=settings.maintenance_interval_seconds,
        webhook_retention_days=settings.webhook_retention_days,
    )

    logger.info(
        "Services wired: storage=%s payments=%s notifier=%s",
        settings.storage_backend,
        settings.payment_provider,
        type(notifications.notifier).__name__,
    )
    return ServiceContainer(
        settings=settings,
        repositories=repositories,
        notifications=notifications,
        orders=orders,
        assignments=assignments,
        payments=payments,
        webhooks=webhooks,
        idempotency=idempotency,
        maintenance=maintenance,
    )
