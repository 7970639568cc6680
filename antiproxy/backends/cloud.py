"""Cloud (JSON/REST) backend."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from antiproxy.auth.manager import CredentialManager
from antiproxy.backends.base import ChatBackend
from antiproxy.backends.failover import EndpointFailover
from antiproxy.config import Settings
from antiproxy.schemas import BackendKind, ChatRequest, ChatResponse
from antiproxy.translate.aggregate import aggregate, parse_chunks, require_payload
from antiproxy.translate.normalizer import normalize_cloud

logger = logging.getLogger(__name__)


class CloudBackend(ChatBackend):
    kind = BackendKind.CLOUD

    def __init__(
        self,
        credentials: CredentialManager,
        failover: EndpointFailover,
        settings: Settings,
    ) -> None:
        self._credentials = credentials
        self._failover = failover
        self._settings = settings

    async def normalize(self, request: ChatRequest) -> dict[str, Any]:
        project_id = await self._credentials.project_id()
        native = normalize_cloud(
            request,
            project_id=project_id,
            default_max_tokens=self._settings.default_max_tokens,
            thinking_floor=self._settings.thinking_min_output_tokens,
        )
        logger.debug(
            "Cloud request: model=%s messages=%d tools=%d",
            native["model"],
            len(native["request"]["contents"]),
            len(native["request"].get("tools", [])),
        )
        return native

    async def execute(self, native: dict[str, Any], stream: bool = False) -> str:
        token = await self._credentials.current_access_token()
        path = self._settings.stream_path if stream else self._settings.generate_path
        return await self._failover.send(path, native, token)

    def to_response(self, raw: str) -> ChatResponse:
        return aggregate(parse_chunks(raw))

    def to_chunks(self, raw: str) -> Iterable[dict[str, Any]]:
        return require_payload(parse_chunks(raw))
