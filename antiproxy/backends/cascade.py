"""Cascade session orchestrator for the local language-server backend.

The local service never returns an answer from the submit call. Instead:

  1. Create:   StartCascade; a fresh cascade per request (reusing one
     trips the service's "executor not idle" fault)
  2. Snapshot: read the trajectory length as a watermark
  3. Submit:   SendUserCascadeMessage with the binary payload
  4. Poll:     re-read the trajectory until a terminal step appears past
     the watermark
  5. Timeout:  give up after the deadline; the cascade is abandoned
  6. Sanitize: run the answer through the IDE-context filter

The service listens on loopback with a self-signed certificate. TLS
verification is disabled only on the dedicated client built here.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from antiproxy.auth.manager import CredentialManager
from antiproxy.backends.base import ChatBackend
from antiproxy.errors import (
    BackendProtocolError,
    BackendUnavailable,
    LocalServiceNotInitialized,
    NotAuthenticated,
    ResponseTimeout,
)
from antiproxy.rpc.discovery import Discovery, LanguageServerInfo
from antiproxy.rpc.encoder import RequestEncoder, SubmitFields
from antiproxy.schemas import BackendKind, ChatRequest, ChatResponse, ContentBlock, StopReason
from antiproxy.translate.filters import TextFilter, strip_contamination, strip_ide_context
from antiproxy.translate.normalizer import CascadeRequest, normalize_cascade
from antiproxy.translate.stream import synthetic_chunks

logger = logging.getLogger(__name__)

_SERVICE = "/exa.language_server_pb.LanguageServerService"
START_CASCADE = f"{_SERVICE}/StartCascade"
GET_TRAJECTORY = f"{_SERVICE}/GetCascadeTrajectory"
SEND_MESSAGE = f"{_SERVICE}/SendUserCascadeMessage"

STEP_PLANNER_RESPONSE = "CORTEX_STEP_TYPE_PLANNER_RESPONSE"
STEP_NOTIFY_USER = "CORTEX_STEP_TYPE_NOTIFY_USER"
STATUS_DONE = "CORTEX_STEP_STATUS_DONE"


@dataclass
class CascadeSession:
    """One backend-side cascade. Never reused across requests."""

    cascade_id: str
    watermark: int = 0
    created_at: float = field(default_factory=time.time)


def step_text(step: dict[str, Any]) -> str | None:
    """Answer text of a terminal step, or None if the step is not terminal."""
    step_type = step.get("type")
    if step_type == STEP_PLANNER_RESPONSE:
        if step.get("status") != STATUS_DONE:
            return None
        planner = step.get("plannerResponse") or {}
        return planner.get("modifiedResponse") or planner.get("response") or None
    if step_type == STEP_NOTIFY_USER:
        notify = step.get("notifyUser") or {}
        return notify.get("notificationContent") or None
    return None


def find_answer(steps: list[dict[str, Any]], watermark: int) -> str | None:
    """Pick the answer among steps past the watermark.

    The most recent completed planner response wins; a notify-user step is
    the fallback.
    """
    new_steps = steps[watermark:]
    for step in reversed(new_steps):
        if step.get("type") == STEP_PLANNER_RESPONSE:
            text = step_text(step)
            if text:
                return text
    for step in new_steps:
        if step.get("type") == STEP_NOTIFY_USER:
            text = step_text(step)
            if text:
                return text
    return None


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class CascadeOrchestrator:
    """Drives create -> snapshot -> submit -> poll for one request at a time."""

    def __init__(
        self,
        discovery: Discovery,
        encoder: RequestEncoder,
        poll_interval: float = 0.5,
        timeout: float = 120.0,
        request_timeout: float = 30.0,
        leak_filter: TextFilter = strip_ide_context,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._discovery = discovery
        self._encoder = encoder
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._request_timeout = request_timeout
        self._leak_filter = leak_filter
        self._clock = clock
        self._sleep = sleep
        self._clients: dict[str, httpx.AsyncClient] = {}

    def ensure_ready(self) -> LanguageServerInfo:
        """Current server coordinates. Raises before any I/O when absent."""
        info = self._discovery.discover()
        if info is None or not info.csrf_token:
            raise LocalServiceNotInitialized("Language server not found (port/CSRF token missing)")
        return info

    async def run(self, request: CascadeRequest, token: str) -> str:
        """Send one message in a fresh cascade and wait for the answer."""
        info = self.ensure_ready()
        if not token:
            raise LocalServiceNotInitialized("No session token for the language server")

        client = self._client_for(info)
        headers = {"x-codeium-csrf-token": info.csrf_token, "connect-protocol-version": "1"}

        session = await self._create(client, headers, token)
        session.watermark = len(await self._trajectory(client, headers, session.cascade_id))
        logger.debug("Cascade %s watermark=%d", session.cascade_id, session.watermark)

        await self._submit(client, headers, session, request, token)
        text = await self._poll(client, headers, session)
        return self._sanitize(text)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    # ------------------------------------------------------------------
    # State machine steps
    # ------------------------------------------------------------------

    async def _create(
        self, client: httpx.AsyncClient, headers: dict[str, str], token: str
    ) -> CascadeSession:
        data = await self._call_json(client, START_CASCADE, headers, {
            "metadata": {"ideName": "antigravity", "apiKey": token},
        })
        cascade_id = data.get("cascadeId")
        if not cascade_id:
            raise BackendProtocolError("StartCascade returned no cascadeId")
        logger.info("Cascade created: %s", cascade_id)
        return CascadeSession(cascade_id=cascade_id)

    async def _trajectory(
        self, client: httpx.AsyncClient, headers: dict[str, str], cascade_id: str
    ) -> list[dict[str, Any]]:
        data = await self._call_json(client, GET_TRAJECTORY, headers, {"cascadeId": cascade_id})
        trajectory = data.get("trajectory") if isinstance(data.get("trajectory"), dict) else data
        steps = trajectory.get("steps") or []
        if not isinstance(steps, list):
            raise BackendProtocolError("Trajectory steps is not a list")
        return [s for s in steps if isinstance(s, dict)]

    async def _submit(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str],
        session: CascadeSession,
        request: CascadeRequest,
        token: str,
    ) -> None:
        payload = self._encoder.encode(SubmitFields(
            session_id=session.cascade_id,
            message=request.message,
            credential=token,
            model=request.model,
        ))
        await self._post(
            client,
            SEND_MESSAGE,
            {**headers, "Content-Type": self._encoder.content_type},
            content=payload,
        )
        logger.debug("Message submitted to cascade %s (%d bytes)", session.cascade_id, len(payload))

    async def _poll(
        self, client: httpx.AsyncClient, headers: dict[str, str], session: CascadeSession
    ) -> str:
        deadline = self._clock() + self._timeout
        polls = 0
        while True:
            await self._sleep(self._poll_interval)
            polls += 1
            try:
                steps = await self._trajectory(client, headers, session.cascade_id)
            except (BackendUnavailable, BackendProtocolError) as e:
                logger.warning("Trajectory poll %d failed for %s: %s", polls, session.cascade_id, e)
                steps = []

            text = find_answer(steps, session.watermark)
            if text is not None:
                logger.info("Cascade %s answered after %d poll(s)", session.cascade_id, polls)
                return text

            if self._clock() >= deadline:
                logger.warning("Cascade %s timed out after %d poll(s)", session.cascade_id, polls)
                raise ResponseTimeout(self._timeout, session.cascade_id)

    def _sanitize(self, text: str) -> str:
        try:
            return self._leak_filter(text)
        except Exception:
            logger.warning("Leak filter raised, returning answer unfiltered", exc_info=True)
            return text

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _client_for(self, info: LanguageServerInfo) -> httpx.AsyncClient:
        if not _is_loopback(info.host):
            raise LocalServiceNotInitialized(f"Refusing non-loopback language server host: {info.host}")
        client = self._clients.get(info.base_url)
        if client is None:
            # Self-signed loopback certificate; this client talks to nothing else
            client = httpx.AsyncClient(
                base_url=info.base_url,
                verify=False,
                timeout=httpx.Timeout(self._request_timeout),
            )
            self._clients[info.base_url] = client
        return client

    async def _post(
        self,
        client: httpx.AsyncClient,
        path: str,
        headers: dict[str, str],
        *,
        content: bytes | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            if json_body is not None:
                response = await client.post(path, json=json_body, headers=headers)
            else:
                response = await client.post(path, content=content, headers=headers)
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"Language server call {path} failed: {e}", cause=e) from e
        if not 200 <= response.status_code < 300:
            raise BackendUnavailable(
                f"Language server call {path} returned {response.status_code}: {response.text[:300]}"
            )
        return response

    async def _call_json(
        self,
        client: httpx.AsyncClient,
        path: str,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._post(
            client, path, {**headers, "Content-Type": "application/json"}, json_body=body
        )
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise BackendProtocolError(f"Malformed response from {path}: {e}", e) from e
        if not isinstance(data, dict):
            raise BackendProtocolError(f"Unexpected response shape from {path}")
        return data


class CascadeBackend(ChatBackend):
    """Local language-server backend. Answers arrive whole, never streamed."""

    kind = BackendKind.CASCADE

    def __init__(
        self,
        credentials: CredentialManager,
        orchestrator: CascadeOrchestrator,
        chunk_size: int = 20,
        contamination_filter: TextFilter = strip_contamination,
    ) -> None:
        self._credentials = credentials
        self._orchestrator = orchestrator
        self._chunk_size = chunk_size
        self._contamination_filter = contamination_filter

    async def normalize(self, request: ChatRequest) -> CascadeRequest:
        return normalize_cascade(request, self._contamination_filter)

    async def execute(self, native: CascadeRequest, stream: bool = False) -> str:
        self._orchestrator.ensure_ready()
        try:
            token = await self._credentials.current_access_token()
        except NotAuthenticated as e:
            raise LocalServiceNotInitialized("No session token for the language server", e) from e
        return await self._orchestrator.run(native, token)

    def to_response(self, raw: str) -> ChatResponse:
        return ChatResponse(
            content_blocks=[ContentBlock(type="text", text=raw)],
            stop_reason=StopReason.END_TURN,
        )

    def to_chunks(self, raw: str) -> Iterable[dict[str, Any]]:
        return synthetic_chunks(raw, self._chunk_size)

    async def close(self) -> None:
        await self._orchestrator.close()
