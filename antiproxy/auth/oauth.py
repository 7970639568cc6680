"""Identity provider calls: token exchange, refresh, account lookups.

Uses its own httpx client; token endpoints never see backend traffic.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from antiproxy.config import Settings
from antiproxy.errors import OAuthError

logger = logging.getLogger(__name__)

_CLIENT_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}


@dataclass
class TokenGrant:
    """Result of a token endpoint call."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None


def generate_state() -> str:
    """Random value for the OAuth ``state`` parameter."""
    return secrets.token_urlsafe(24)


class OAuthClient:
    """Thin async client for the identity provider."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        )
        if not settings.oauth_client_id:
            logger.warning("ANTI_OAUTH_CLIENT_ID is not set, token refresh will fail")

    def build_auth_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self._settings.oauth_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._settings.oauth_scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self._settings.oauth_auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Trade an authorization code for access + refresh tokens."""
        data = await self._token_request({
            "code": code,
            "client_id": self._settings.oauth_client_id,
            "client_secret": self._settings.oauth_client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        })
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in", 3600)),
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""
        data = await self._token_request({
            "client_id": self._settings.oauth_client_id,
            "client_secret": self._settings.oauth_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in", 3600)),
        )

    async def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        response = await self._http.get(
            self._settings.oauth_userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code != 200:
            raise OAuthError(f"Failed to get user info: {response.status_code}", response.status_code)
        return response.json()

    async def fetch_project_id(self, access_token: str) -> str | None:
        """Look up the cloud project bound to the account.

        Returns None on any failure; callers fall back to "unknown".
        """
        try:
            response = await self._http.post(
                self._settings.oauth_project_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                    "User-Agent": "google-api-nodejs-client/9.15.1",
                    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
                    "Client-Metadata": json.dumps(_CLIENT_METADATA),
                },
                json={"metadata": _CLIENT_METADATA},
            )
        except httpx.HTTPError as e:
            logger.warning("Project lookup failed: %s", e)
            return None
        if response.status_code != 200:
            logger.warning("Project lookup returned %d", response.status_code)
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("Project lookup returned a non-JSON body")
            return None
        if not isinstance(data, dict):
            return None
        return data.get("cloudaicompanionProject") or None

    async def close(self) -> None:
        await self._http.aclose()

    async def _token_request(self, form: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.post(
                self._settings.oauth_token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise OAuthError(
                f"Token request failed: {response.status_code} {response.text[:300]}",
                response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise OAuthError(f"Token response is not JSON: {e}", response.status_code) from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise OAuthError("Token response missing access_token", response.status_code)
        return data
