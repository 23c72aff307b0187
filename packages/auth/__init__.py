"""Authentication models.

The authentication layer verifies the caller and places an
AuthenticatedUser on ``request.state.user`` for the ability guards.
"""

from packages.auth.models import AuthenticatedUser

__all__ = [
    "AuthenticatedUser",
]
