"""Tests for sequential endpoint failover."""

import httpx
import pytest

from antiproxy.backends.failover import EndpointFailover
from antiproxy.errors import BackendUnavailable
from tests.conftest import mock_http_client, mock_response

URLS = ["https://a.example", "https://b.example/", "https://c.example"]
PATH = "/v1internal:generateContent"


class TestEndpointFailover:
    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        http = mock_http_client(mock_response(200, text='{"ok": 1}'))
        failover = EndpointFailover(http, URLS, "agent/1.0")

        body = await failover.send(PATH, {"x": 1}, "tok")

        assert body == '{"ok": 1}'
        assert http.post.await_count == 1
        call = http.post.await_args
        assert call.args[0] == "https://a.example/v1internal:generateContent"
        assert call.kwargs["json"] == {"x": 1}
        assert call.kwargs["headers"]["Authorization"] == "Bearer tok"
        assert call.kwargs["headers"]["User-Agent"] == "agent/1.0"

    @pytest.mark.asyncio
    async def test_falls_through_to_third(self):
        """500, then a connection error, then success: third body, three posts in order."""
        http = mock_http_client(
            mock_response(500, text="internal"),
            httpx.ConnectError("refused"),
            mock_response(200, text="third"),
        )
        failover = EndpointFailover(http, URLS, "agent/1.0")

        body = await failover.send(PATH, {}, "tok")

        assert body == "third"
        urls = [c.args[0] for c in http.post.await_args_list]
        assert urls == [
            "https://a.example/v1internal:generateContent",
            "https://b.example/v1internal:generateContent",
            "https://c.example/v1internal:generateContent",
        ]

    @pytest.mark.asyncio
    async def test_all_fail(self):
        last = httpx.ReadTimeout("slow")
        http = mock_http_client(
            mock_response(429, text="quota"),
            mock_response(503, text="down"),
            last,
        )
        failover = EndpointFailover(http, URLS, "agent/1.0")

        with pytest.raises(BackendUnavailable) as exc_info:
            await failover.send(PATH, {}, "tok")

        err = exc_info.value
        assert err.cause is last
        assert err.__cause__ is last
        assert [reason for _, reason in err.attempts] == ["HTTP 429", "HTTP 503", "ReadTimeout: slow"]
        assert http.post.await_count == 3

    @pytest.mark.asyncio
    async def test_last_status_error_is_cause(self):
        http = mock_http_client(mock_response(401, text="unauthorized"))
        failover = EndpointFailover(http, URLS[:1], "agent/1.0")

        with pytest.raises(BackendUnavailable) as exc_info:
            await failover.send(PATH, {}, "tok")
        assert "401" in str(exc_info.value.cause)

    def test_requires_candidates(self):
        with pytest.raises(ValueError):
            EndpointFailover(mock_http_client(), [], "agent/1.0")

    def test_base_urls_copy(self):
        failover = EndpointFailover(mock_http_client(), URLS, "agent/1.0")
        failover.base_urls.append("https://evil.example")
        assert failover.base_urls == URLS
