"""Pytest configuration and fixtures."""

import os
import time
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import jwt
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-order-core-tests")
os.environ.setdefault("WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("PAYMENT_PROVIDER", "local")

TEST_JWT_SECRET = os.environ["JWT_SECRET"]
TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]

MENU_ITEMS: list[dict[str, Any]] = [
    {
        "id": "burger",
        "vendor_id": "vendor-1",
        "name": "Classic Burger",
        "price_cents": 1299,
        "modifiers": [{"name": "cheese", "price_cents": 150}, {"name": "bacon", "price_cents": 200}],
    },
    {"id": "fries", "vendor_id": "vendor-1", "name": "Fries", "price_cents": 499},
    {"id": "family-meal", "vendor_id": "vendor-1", "name": "Family Meal", "price_cents": 2599},
    {"id": "water", "vendor_id": "vendor-1", "name": "Tap Water", "price_cents": 0},
    {"id": "seasonal-pie", "vendor_id": "vendor-1", "name": "Seasonal Pie", "price_cents": 899, "available": False},
    {"id": "sushi", "vendor_id": "vendor-2", "name": "Sushi Set", "price_cents": 1800},
]


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def menu_catalog() -> Any:
    """Static catalog seeded with the test menu."""
    from src.services.menu_catalog_service import StaticMenuCatalog

    return StaticMenuCatalog(MENU_ITEMS)


@pytest.fixture
def mock_notifier() -> AsyncMock:
    """Notifier recording status change notifications."""
    notifier = AsyncMock()
    notifier.notify_status_change = AsyncMock(return_value=None)
    return notifier


@pytest.fixture
def container(test_settings: Any, menu_catalog: Any, mock_notifier: AsyncMock) -> Any:
    """Fully wired services over fresh in-memory repositories."""
    from src.core.container import build_container

    return build_container(test_settings, catalog=menu_catalog, notifier=mock_notifier)


@pytest.fixture
def customer() -> Any:
    from src.models.order import ActorRole
    from src.schemas.auth import UserContext

    return UserContext(user_id="customer-1", role=ActorRole.CUSTOMER)


@pytest.fixture
def vendor() -> Any:
    from src.models.order import ActorRole
    from src.schemas.auth import UserContext

    return UserContext(user_id="vendor-1", role=ActorRole.VENDOR)


@pytest.fixture
def driver() -> Any:
    from src.models.order import ActorRole
    from src.schemas.auth import UserContext

    return UserContext(user_id="driver-1", role=ActorRole.DRIVER)


@pytest.fixture
def admin() -> Any:
    from src.models.order import ActorRole
    from src.schemas.auth import UserContext

    return UserContext(user_id="admin-1", role=ActorRole.ADMIN)


def create_test_token(
    sub: str = "customer-1",
    role: str = "CUSTOMER",
    email: str | None = "test@example.com",
    exp_offset: int = 3600,
    secret: str = TEST_JWT_SECRET,
) -> str:
    """Create a signed bearer token."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "role": role,
        "email": email,
        "exp": now + exp_offset,
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    """Factory for Authorization headers.

    Usage: ``auth_headers("vendor-1", "VENDOR")``.
    """

    def _headers(sub: str = "customer-1", role: str = "CUSTOMER", **extra: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_test_token(sub=sub, role=role)}", **extra}

    return _headers


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = mock_response

    with patch("src.core.supabase.get_supabase_client", return_value=mock_client):
        yield mock_client


@pytest.fixture
def client(container: Any) -> Generator[TestClient, None, None]:
    """Provide a test client over the in-memory container.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.main import create_app

    app = create_app()
    app.state.container = container

    with TestClient(app) as test_client:
        yield test_client
