"""antiproxy: serve an IDE-bundled model backend over the Anthropic Messages protocol."""

from antiproxy.config import Settings, configure_logging
from antiproxy.errors import (
    AntiProxyError,
    BackendProtocolError,
    BackendUnavailable,
    CredentialRefreshFailed,
    LocalServiceNotInitialized,
    NotAuthenticated,
    ResponseTimeout,
    UnknownBackend,
)
from antiproxy.schemas import BackendKind, ChatRequest, ChatResponse, ContentBlock, Message
from antiproxy.service import ChatService, build_service

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "configure_logging",
    "ChatService",
    "build_service",
    # Data
    "BackendKind",
    "ChatRequest",
    "ChatResponse",
    "ContentBlock",
    "Message",
    # Errors
    "AntiProxyError",
    "BackendProtocolError",
    "BackendUnavailable",
    "CredentialRefreshFailed",
    "LocalServiceNotInitialized",
    "NotAuthenticated",
    "ResponseTimeout",
    "UnknownBackend",
]
