"""Authentication data models.

Verified identity placed on ``request.state.user`` by the authentication
layer and read by the ability guards.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class AuthenticatedUser(BaseModel):
    """Verified user identity.

    Represents a verified identity, not a raw token. Permission data is
    not carried here; the ability engine loads it from the catalog.
    """

    user_id: str = Field(description="Unique user identifier")
    organization_id: str | None = Field(default=None, description="Verified organization")
    email: str | None = Field(default=None, description="User's email")
    name: str | None = Field(default=None, description="User's display name")

    # Token metadata
    token_exp: datetime | None = Field(default=None, description="When the token expires")
    session_id: str | None = Field(default=None, description="Session identifier")
