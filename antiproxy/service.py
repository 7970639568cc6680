"""Chat service: the contract exposed to the HTTP front door.

Wires components in dependency order:
  Settings -> CredentialStore -> OAuthClient -> CredentialManager
  -> EndpointFailover -> CloudBackend
  -> Discovery + Encoder -> CascadeOrchestrator -> CascadeBackend
and picks a backend per request.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator

import httpx

from antiproxy.auth.manager import CredentialManager
from antiproxy.auth.oauth import OAuthClient
from antiproxy.auth.store import CredentialStore, JsonCredentialStore
from antiproxy.backends.base import ChatBackend
from antiproxy.backends.cascade import CascadeBackend, CascadeOrchestrator
from antiproxy.backends.cloud import CloudBackend
from antiproxy.backends.failover import EndpointFailover
from antiproxy.config import Settings
from antiproxy.errors import AntiProxyError, UnknownBackend
from antiproxy.rpc.discovery import Discovery, StaticDiscovery
from antiproxy.rpc.encoder import ProtoRequestEncoder
from antiproxy.schemas import BackendKind, ChatRequest, ChatResponse
from antiproxy.translate.stream import error_event

logger = logging.getLogger(__name__)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


class ChatService:
    """Runs chat requests against the selected backend."""

    def __init__(
        self,
        backends: dict[BackendKind, ChatBackend],
        default_backend: BackendKind = BackendKind.CLOUD,
        credentials: CredentialManager | None = None,
    ) -> None:
        if default_backend not in backends:
            raise ValueError(f"default backend {default_backend} is not configured")
        self._backends = backends
        self._default = default_backend
        self.credentials = credentials
        self._owned_http: list[httpx.AsyncClient] = []

    def backend(self, kind: BackendKind | str | None = None) -> ChatBackend:
        if not kind:
            return self._backends[self._default]
        try:
            return self._backends[BackendKind(kind)]
        except (KeyError, ValueError):
            raise UnknownBackend(f"Backend {kind} is not configured") from None

    async def create_chat_completion(
        self,
        request: ChatRequest,
        backend: BackendKind | str | None = None,
    ) -> ChatResponse:
        """Non-streaming completion. Failures raise AntiProxyError subclasses."""
        chat_backend = self.backend(backend)
        try:
            native = await chat_backend.normalize(request)
            raw = await chat_backend.execute(native, stream=False)
            response = chat_backend.to_response(raw)
        except AntiProxyError as e:
            logger.error("%s completion failed: %s", chat_backend.kind, e)
            raise
        except Exception as e:
            logger.exception("%s completion failed unexpectedly", chat_backend.kind)
            raise AntiProxyError.wrap(e) from e

        logger.info(
            "%s completion: model=%s blocks=%d stop=%s",
            chat_backend.kind,
            request.model,
            len(response.content_blocks),
            response.stop_reason,
        )
        return response

    async def create_chat_completion_stream(
        self,
        request: ChatRequest,
        backend: BackendKind | str | None = None,
    ) -> AsyncIterator[str]:
        """Streaming completion as SSE strings.

        Finite and non-restartable. Errors become a final ``error`` event;
        the iterator never raises once started.
        """
        message_id = new_message_id()
        try:
            chat_backend = self.backend(backend)
        except UnknownBackend as e:
            logger.error("Stream rejected: %s", e)
            yield error_event(e).encode()
            return
        try:
            native = await chat_backend.normalize(request)
            raw = await chat_backend.execute(native, stream=True)
            for event in chat_backend.to_stream(raw, request.model, message_id):
                yield event.encode()
        except Exception as e:
            if isinstance(e, AntiProxyError):
                logger.error("%s stream failed: %s", chat_backend.kind, e)
            else:
                logger.exception("%s stream failed unexpectedly", chat_backend.kind)
            yield error_event(e).encode()

    async def close(self) -> None:
        for chat_backend in self._backends.values():
            await chat_backend.close()
        for client in self._owned_http:
            await client.aclose()
        self._owned_http.clear()


def build_service(
    settings: Settings,
    store: CredentialStore | None = None,
    discovery: Discovery | None = None,
) -> ChatService:
    """Create every component from settings.

    ``store`` and ``discovery`` default to the JSON file store and the
    settings-provided language server coordinates.
    """
    store = store or JsonCredentialStore(settings.credentials_path)
    oauth_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
    )
    oauth = OAuthClient(settings, oauth_http)
    credentials = CredentialManager(
        store,
        oauth,
        provider=settings.credentials_provider,
        refresh_margin=settings.refresh_margin_seconds,
    )

    cloud_http = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        ),
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
    )
    failover = EndpointFailover(cloud_http, settings.cloud_base_urls, settings.user_agent)

    orchestrator = CascadeOrchestrator(
        discovery or StaticDiscovery.from_settings(settings),
        ProtoRequestEncoder(),
        poll_interval=settings.cascade_poll_interval,
        timeout=settings.cascade_timeout,
        request_timeout=settings.cascade_request_timeout,
    )

    service = ChatService(
        {
            BackendKind.CLOUD: CloudBackend(credentials, failover, settings),
            BackendKind.CASCADE: CascadeBackend(
                credentials, orchestrator, chunk_size=settings.stream_chunk_size
            ),
        },
        default_backend=BackendKind(settings.default_backend),
        credentials=credentials,
    )
    service._owned_http.extend([oauth_http, cloud_http])

    if not credentials.is_authenticated:
        logger.warning("No stored credential; chat requests will fail until login")
    logger.info(
        "Chat service ready: default=%s, cloud endpoints=%d",
        settings.default_backend,
        len(settings.cloud_base_urls),
    )
    return service
