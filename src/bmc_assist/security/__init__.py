"""Bearer token authentication for BMC Assist."""

from .auth import AuthenticatedUser, IdentityVerifier, get_current_user

__all__ = [
    "AuthenticatedUser",
    "IdentityVerifier",
    "get_current_user",
]
