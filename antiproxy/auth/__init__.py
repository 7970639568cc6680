"""Auth module: credential lifecycle for the upstream backends.

Public API: CredentialManager, OAuthClient and the credential stores.
"""

from antiproxy.auth.manager import CredentialManager
from antiproxy.auth.oauth import OAuthClient, TokenGrant, generate_state
from antiproxy.auth.store import (
    Credential,
    CredentialStore,
    JsonCredentialStore,
    MemoryCredentialStore,
)

__all__ = [
    "CredentialManager",
    "OAuthClient",
    "TokenGrant",
    "generate_state",
    # Stores
    "Credential",
    "CredentialStore",
    "JsonCredentialStore",
    "MemoryCredentialStore",
]
