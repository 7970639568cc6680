"""Tests for the cascade session state machine and its backend."""

import itertools
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from antiproxy.auth.manager import CredentialManager
from antiproxy.auth.oauth import OAuthClient, TokenGrant
from antiproxy.auth.store import Credential, MemoryCredentialStore
from antiproxy.backends.cascade import (
    GET_TRAJECTORY,
    SEND_MESSAGE,
    START_CASCADE,
    STATUS_DONE,
    STEP_NOTIFY_USER,
    STEP_PLANNER_RESPONSE,
    CascadeBackend,
    CascadeOrchestrator,
    find_answer,
)
from antiproxy.errors import (
    BackendProtocolError,
    LocalServiceNotInitialized,
    NotAuthenticated,
    ResponseTimeout,
)
from antiproxy.rpc.discovery import StaticDiscovery
from antiproxy.rpc.encoder import ProtoRequestEncoder, SubmitFields
from antiproxy.schemas import ChatRequest, Message, StopReason
from antiproxy.translate.normalizer import CascadeRequest
from tests.conftest import mock_response

BASE_URL = "https://127.0.0.1:1234"


def _planner(text: str, status: str = STATUS_DONE) -> dict[str, Any]:
    return {"type": STEP_PLANNER_RESPONSE, "status": status, "plannerResponse": {"response": text}}


def _notify(text: str) -> dict[str, Any]:
    return {"type": STEP_NOTIFY_USER, "notifyUser": {"notificationContent": text}}


class FakeLanguageServer:
    """Answers the three RPCs from scripted trajectories."""

    def __init__(self, trajectories: list[list[dict[str, Any]]], cascade_id: str = "casc-1") -> None:
        self.trajectories = trajectories
        self.cascade_id = cascade_id
        self.calls: list[str] = []
        self.submitted: bytes | None = None
        self.submit_headers: dict[str, str] = {}

    def post(self, path, json=None, content=None, headers=None):
        self.calls.append(path)
        if path == START_CASCADE:
            return mock_response(200, {"cascadeId": self.cascade_id} if self.cascade_id else {})
        if path == SEND_MESSAGE:
            self.submitted = content
            self.submit_headers = headers
            return mock_response(200, text="")
        if path == GET_TRAJECTORY:
            index = min(self.calls.count(GET_TRAJECTORY), len(self.trajectories)) - 1
            return mock_response(200, {"trajectory": {"steps": self.trajectories[index]}})
        return mock_response(404, text="no such method")

    @property
    def polls(self) -> int:
        # First trajectory read is the watermark snapshot
        return self.calls.count(GET_TRAJECTORY) - 1


def _orchestrator(server=None, discovery=None, **kwargs) -> CascadeOrchestrator:
    orchestrator = CascadeOrchestrator(
        discovery or StaticDiscovery(port=1234, csrf_token="csrf"),
        ProtoRequestEncoder(),
        poll_interval=0.0,
        sleep=AsyncMock(),
        **kwargs,
    )
    if server is not None:
        client = AsyncMock(spec=httpx.AsyncClient)
        client.post.side_effect = server.post
        orchestrator._clients[BASE_URL] = client
    return orchestrator


REQUEST = CascadeRequest(model="MODEL_CLAUDE_4_5_SONNET", message="what is 2+2?")


# ---------------------------------------------------------------------------
# Answer selection
# ---------------------------------------------------------------------------


class TestFindAnswer:
    def test_only_steps_past_watermark(self):
        steps = [_planner("old answer"), {"type": "CORTEX_STEP_TYPE_USER_INPUT"}]
        assert find_answer(steps, 2) is None
        assert find_answer(steps + [_planner("new")], 2) == "new"

    def test_latest_planner_wins(self):
        steps = [_planner("first"), _planner("second")]
        assert find_answer(steps, 0) == "second"

    def test_unfinished_planner_ignored(self):
        steps = [_planner("partial", status="CORTEX_STEP_STATUS_GENERATING")]
        assert find_answer(steps, 0) is None

    def test_modified_response_preferred(self):
        step = _planner("raw")
        step["plannerResponse"]["modifiedResponse"] = "edited"
        assert find_answer([step], 0) == "edited"

    def test_notify_user_fallback(self):
        steps = [_planner("partial", status="CORTEX_STEP_STATUS_GENERATING"), _notify("need input")]
        assert find_answer(steps, 0) == "need input"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TestCascadeOrchestrator:
    @pytest.mark.asyncio
    async def test_answer_past_watermark(self):
        """Watermark 2; the third step is a finished planner response."""
        history = [_planner("stale"), {"type": "CORTEX_STEP_TYPE_USER_INPUT"}]
        server = FakeLanguageServer([
            history,
            history,
            history + [_planner("4")],
            history + [_planner("4"), _planner("never read")],
        ])
        orchestrator = _orchestrator(server)

        assert await orchestrator.run(REQUEST, "session-token") == "4"
        assert server.calls[:3] == [START_CASCADE, GET_TRAJECTORY, SEND_MESSAGE]
        assert server.polls == 2

    @pytest.mark.asyncio
    async def test_headers_and_payload(self):
        server = FakeLanguageServer([[], [_planner("ok")]])
        orchestrator = _orchestrator(server)

        await orchestrator.run(REQUEST, "session-token")

        client = orchestrator._clients[BASE_URL]
        start_call = client.post.call_args_list[0]
        assert start_call.kwargs["json"] == {"metadata": {"ideName": "antigravity", "apiKey": "session-token"}}
        assert start_call.kwargs["headers"]["x-codeium-csrf-token"] == "csrf"
        assert server.submit_headers["Content-Type"] == "application/proto"
        assert b"what is 2+2?" in server.submitted
        assert b"casc-1" in server.submitted
        assert b"MODEL_CLAUDE_4_5_SONNET" in server.submitted

    @pytest.mark.asyncio
    async def test_notify_user_answer(self):
        server = FakeLanguageServer([[], [_notify("Please confirm")]])
        assert await _orchestrator(server).run(REQUEST, "tok") == "Please confirm"

    @pytest.mark.asyncio
    async def test_answer_sanitized(self):
        server = FakeLanguageServer([[], [_planner("<user_information>os</user_information>\nAnswer")]])
        assert await _orchestrator(server).run(REQUEST, "tok") == "Answer"

    @pytest.mark.asyncio
    async def test_timeout(self):
        ticks = itertools.count()
        server = FakeLanguageServer([[], [_planner("slow", status="CORTEX_STEP_STATUS_GENERATING")]])
        orchestrator = _orchestrator(server, timeout=3.0, clock=lambda: next(ticks))

        with pytest.raises(ResponseTimeout) as exc_info:
            await orchestrator.run(REQUEST, "tok")

        assert exc_info.value.cascade_id == "casc-1"
        assert exc_info.value.timeout == 3.0
        assert server.polls == 3

    @pytest.mark.asyncio
    async def test_transient_poll_failure_keeps_polling(self):
        server = FakeLanguageServer([[], [], [_planner("recovered")]])
        real_post = server.post
        failed = []

        def flaky(path, **kwargs):
            if path == GET_TRAJECTORY and server.calls.count(GET_TRAJECTORY) == 1 and not failed:
                failed.append(path)
                raise httpx.ReadTimeout("slow")
            return real_post(path, **kwargs)

        orchestrator = _orchestrator(server)
        orchestrator._clients[BASE_URL].post.side_effect = flaky

        assert await orchestrator.run(REQUEST, "tok") == "recovered"
        assert failed

    @pytest.mark.asyncio
    async def test_no_language_server(self):
        orchestrator = _orchestrator(discovery=StaticDiscovery())
        with pytest.raises(LocalServiceNotInitialized):
            await orchestrator.run(REQUEST, "tok")
        assert orchestrator._clients == {}

    @pytest.mark.asyncio
    async def test_missing_token(self):
        server = FakeLanguageServer([[]])
        with pytest.raises(LocalServiceNotInitialized):
            await _orchestrator(server).run(REQUEST, "")
        assert server.calls == []

    @pytest.mark.asyncio
    async def test_start_without_cascade_id(self):
        server = FakeLanguageServer([[]], cascade_id="")
        with pytest.raises(BackendProtocolError, match="cascadeId"):
            await _orchestrator(server).run(REQUEST, "tok")
        assert SEND_MESSAGE not in server.calls

    @pytest.mark.asyncio
    async def test_non_loopback_host_refused(self):
        orchestrator = _orchestrator(discovery=StaticDiscovery(port=1234, csrf_token="c", host="10.0.0.5"))
        with pytest.raises(LocalServiceNotInitialized, match="non-loopback"):
            await orchestrator.run(REQUEST, "tok")

    @pytest.mark.asyncio
    async def test_close_releases_clients(self):
        orchestrator = _orchestrator(FakeLanguageServer([[]]))
        client = orchestrator._clients[BASE_URL]
        await orchestrator.close()
        client.aclose.assert_awaited_once()
        assert orchestrator._clients == {}


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------


class TestProtoRequestEncoder:
    def test_layout(self):
        payload = ProtoRequestEncoder().encode(SubmitFields("c", "hi", "k", "m"))
        # field 1 (cascade id), length 1, "c"
        assert payload[:3] == b"\x0a\x01c"
        # field 2 item -> field 1 "hi"
        assert payload[3:9] == b"\x12\x04\x0a\x02hi"

    def test_long_message_varint_length(self):
        message = "x" * 300
        payload = ProtoRequestEncoder().encode(SubmitFields("c", message, "k", "m"))
        assert message.encode() in payload
        # item length 303 needs a two-byte varint
        assert b"\x12\xaf\x02\x0a\xac\x02" in payload

    def test_utf8(self):
        payload = ProtoRequestEncoder().encode(SubmitFields("c", "你好", "k", "m"))
        assert "你好".encode() in payload


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class TestCascadeBackend:
    def _backend(self, answer="The answer is four.", chunk_size=5):
        credentials = MagicMock(spec=CredentialManager)
        credentials.current_access_token = AsyncMock(return_value="tok")
        orchestrator = MagicMock(spec=CascadeOrchestrator)
        orchestrator.run = AsyncMock(return_value=answer)
        return CascadeBackend(credentials, orchestrator, chunk_size=chunk_size), credentials, orchestrator

    @pytest.mark.asyncio
    async def test_aggregated(self):
        backend, _, orchestrator = self._backend()
        request = ChatRequest(model="claude-sonnet-4-5", messages=(Message(role="user", content="2+2?"),))

        native = await backend.normalize(request)
        raw = await backend.execute(native)
        response = backend.to_response(raw)

        orchestrator.run.assert_awaited_once_with(native, "tok")
        assert response.content_blocks[0].text == "The answer is four."
        assert response.stop_reason == StopReason.END_TURN

    def test_synthetic_stream(self):
        backend, _, _ = self._backend(answer="abcdefghijk", chunk_size=4)
        events = list(backend.to_stream("abcdefghijk", "claude-sonnet-4-5", "msg_1"))
        deltas = [e.data["delta"]["text"] for e in events if e.name == "content_block_delta"]
        assert deltas == ["abcd", "efgh", "ijk"]
        assert events[-1].name == "message_stop"

    @pytest.mark.asyncio
    async def test_not_logged_in(self):
        backend, credentials, orchestrator = self._backend()
        credentials.current_access_token.side_effect = NotAuthenticated()
        with pytest.raises(LocalServiceNotInitialized):
            await backend.execute(REQUEST)
        orchestrator.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_server_fails_before_token_refresh(self):
        """An expiring credential is not refreshed when no language server is known."""
        now = 1_700_000_000.0
        store = MemoryCredentialStore()
        store.put("antigravity", Credential("old", "ref", now + 10))
        oauth = MagicMock(spec=OAuthClient)
        oauth.refresh = AsyncMock(return_value=TokenGrant("new", 3600))
        credentials = CredentialManager(store, oauth, clock=lambda: now)
        backend = CascadeBackend(credentials, _orchestrator(discovery=StaticDiscovery()))

        with pytest.raises(LocalServiceNotInitialized):
            await backend.execute(REQUEST)

        assert oauth.refresh.await_count == 0
        assert store.get("antigravity").access_token == "old"

    def test_empty_answer_streams_one_empty_block(self):
        backend, _, _ = self._backend(answer="")
        events = list(backend.to_stream("", "claude-sonnet-4-5", "msg_1"))

        assert [e.name for e in events] == [
            "message_start",
            "content_block_start",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        assert events[1].data["content_block"] == {"type": "text", "text": ""}
        assert [b.to_wire() for b in backend.to_response("").content_blocks] == [{"type": "text", "text": ""}]
