"""Authentication schemas for JWT tokens and user context."""

from pydantic import BaseModel, ConfigDict, Field

from src.models.order import ActorRole


class UserContext(BaseModel):
    """Authenticated actor extracted from a bearer token.

    Services receive this as the actor performing an operation.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    user_id: str = Field(description="Unique identifier for the user (from JWT sub claim)")
    role: ActorRole = Field(description="Actor role used for authorization")
    email: str | None = Field(default=None, description="User's email address if available")

    @property
    def is_admin(self) -> bool:
        """Check whether the actor bypasses ownership checks."""
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


# Used for transitions the platform performs on its own behalf
SYSTEM_ACTOR = UserContext(user_id="system", role=ActorRole.SYSTEM)


class TokenPayload(BaseModel):
    """Bearer token claims.

    Represents the claims contained in an access token issued by the
    platform's auth service.
    """

    model_config = ConfigDict(from_attributes=True)

    sub: str = Field(description="Subject - the user's id")
    role: str = Field(description="User's role")
    email: str | None = Field(default=None, description="User's email address")
    exp: int = Field(description="Expiration timestamp (Unix epoch)")
    iat: int = Field(description="Issued at timestamp (Unix epoch)")
    aud: str | None = Field(default=None, description="Audience - intended recipient")
    iss: str | None = Field(default=None, description="Issuer - token issuer URL")

    def to_user_context(self) -> UserContext:
        """Convert token payload to UserContext.

        Accepts roles with or without a ``ROLE_`` prefix, in any case.

        Raises:
            ValueError: If the role is unknown or reserved for the platform.
        """
        role = ActorRole(self.role.upper().removeprefix("ROLE_"))
        if role == ActorRole.SYSTEM:
            raise ValueError("SYSTEM role cannot be presented by a client token")
        return UserContext(
            user_id=self.sub,
            role=role,
            email=self.email,
        )
