"""Unit tests for FastAPI dependency injection functions."""

import time
from unittest.mock import patch

import pytest

from src.api.deps import get_current_user, get_idempotency_key, require_roles
from src.api.middleware.auth import AuthError, AuthErrorCode
from src.api.middleware.error_handler import AuthenticationError, AuthorizationError, ValidationError
from src.models.order import ActorRole
from src.schemas.auth import TokenPayload, UserContext


def _payload(role: str = "VENDOR") -> TokenPayload:
    now = int(time.time())
    return TokenPayload(sub="vendor-1", role=role, email="v@example.com", exp=now + 3600, iat=now)


class TestGetCurrentUser:
    """Tests for get_current_user dependency."""

    @pytest.mark.asyncio
    @patch("src.api.deps.decode_jwt")
    async def test_extracts_user_context_correctly(self, mock_decode) -> None:
        mock_decode.return_value = _payload()

        user = await get_current_user("Bearer valid-token")

        assert isinstance(user, UserContext)
        assert user.user_id == "vendor-1"
        assert user.role == ActorRole.VENDOR
        mock_decode.assert_called_once_with("valid-token")

    @pytest.mark.asyncio
    async def test_missing_header_raises_401(self) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await get_current_user("")

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    @pytest.mark.asyncio
    async def test_non_bearer_scheme_raises_401(self) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await get_current_user("Basic dXNlcjpwYXNz")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    @patch("src.api.deps.decode_jwt")
    async def test_expired_token_raises_401(self, mock_decode) -> None:
        mock_decode.side_effect = AuthError("Token has expired", AuthErrorCode.TOKEN_EXPIRED)

        with pytest.raises(AuthenticationError) as exc_info:
            await get_current_user("Bearer expired")

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Token has expired"
        assert exc_info.value.error_type == "authentication_error"

    @pytest.mark.asyncio
    @patch("src.api.deps.decode_jwt")
    async def test_unknown_role_raises_401(self, mock_decode) -> None:
        mock_decode.return_value = _payload(role="PIRATE")

        with pytest.raises(AuthenticationError) as exc_info:
            await get_current_user("Bearer token")

        assert exc_info.value.status_code == 401


class TestRequireRoles:
    """Tests for the role-gating dependency factory."""

    @pytest.mark.asyncio
    async def test_allows_listed_role(self) -> None:
        dependency = require_roles(ActorRole.VENDOR, ActorRole.ADMIN)
        user = UserContext(user_id="vendor-1", role=ActorRole.VENDOR)

        assert await dependency(user) is user

    @pytest.mark.asyncio
    async def test_rejects_other_roles_with_403(self) -> None:
        dependency = require_roles(ActorRole.VENDOR, ActorRole.ADMIN)

        with pytest.raises(AuthorizationError) as exc_info:
            await dependency(UserContext(user_id="driver-1", role=ActorRole.DRIVER))

        assert exc_info.value.status_code == 403


class TestIdempotencyKeyHeader:
    """Tests for Idempotency-Key header parsing."""

    @pytest.mark.asyncio
    async def test_absent_header_is_none(self) -> None:
        assert await get_idempotency_key(None) is None

    @pytest.mark.asyncio
    async def test_header_is_stripped(self) -> None:
        assert await get_idempotency_key("  key-123 ") == "key-123"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["   ", "k" * 256])
    async def test_blank_or_oversized_key_rejected(self, value: str) -> None:
        with pytest.raises(ValidationError):
            await get_idempotency_key(value)
