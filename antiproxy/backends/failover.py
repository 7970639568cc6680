"""Sequential endpoint failover for the cloud backend.

Candidates are tried strictly in order, one attempt each, no backoff.
The first 2xx body wins; the candidate list is the only redundancy.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from antiproxy.errors import BackendUnavailable

logger = logging.getLogger(__name__)


class EndpointFailover:
    """POSTs a JSON payload to the first base URL that accepts it."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_urls: Sequence[str],
        user_agent: str,
    ) -> None:
        if not base_urls:
            raise ValueError("at least one base URL is required")
        self._http = http
        self._base_urls = list(base_urls)
        self._user_agent = user_agent

    @property
    def base_urls(self) -> list[str]:
        return list(self._base_urls)

    async def send(self, path: str, payload: dict[str, Any], access_token: str) -> str:
        """Return the raw body from the first successful candidate.

        Raises BackendUnavailable carrying the last failure when every
        candidate fails.
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {access_token}",
            "User-Agent": self._user_agent,
            "Accept": "application/json",
        }
        last_error: Exception | None = None
        attempts: list[tuple[str, str]] = []

        for base_url in self._base_urls:
            url = f"{base_url.rstrip('/')}{path}"
            logger.debug("Trying API: %s", url)
            try:
                response = await self._http.post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                logger.warning("Request failed on %s: %s", base_url, e)
                last_error = e
                attempts.append((base_url, f"{type(e).__name__}: {e}"))
                continue

            if 200 <= response.status_code < 300:
                logger.info("API request successful on %s", base_url)
                return response.text

            body = response.text
            logger.warning("API error on %s: %d %s", base_url, response.status_code, body[:300])
            last_error = RuntimeError(f"Backend API error: {response.status_code} {body[:500]}")
            attempts.append((base_url, f"HTTP {response.status_code}"))

        raise BackendUnavailable(
            f"All {len(self._base_urls)} endpoints failed; last error: {last_error}",
            cause=last_error,
            attempts=attempts,
        ) from last_error
