"""Credential lifecycle. Hands out a valid access token, refreshing as needed.

One manager per process. Concurrent callers that hit an expiring token
share a single in-flight refresh task instead of each calling the token
endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from antiproxy.auth.oauth import OAuthClient
from antiproxy.auth.store import Credential, CredentialStore
from antiproxy.errors import CredentialRefreshFailed, NotAuthenticated, OAuthError

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 300


class CredentialManager:
    """Owns the current credential for one provider."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: OAuthClient,
        provider: str = "antigravity",
        refresh_margin: float = REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._provider = provider
        self._margin = refresh_margin
        self._clock = clock
        self._credential: Credential | None = store.get(provider)
        self._refresh_task: asyncio.Task[str] | None = None
        self._project_lock = asyncio.Lock()

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def is_authenticated(self) -> bool:
        return bool(self._credential and self._credential.access_token)

    def set_credential(
        self,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
        email: str | None = None,
    ) -> Credential:
        """Install a credential obtained elsewhere (login flow, manual paste)."""
        expires_at = self._clock() + expires_in if expires_in else 0.0
        self._credential = Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            email=email,
        )
        self._store.put(self._provider, self._credential)
        logger.info("Credential set for %s", email or self._provider)
        return self._credential

    def clear(self) -> None:
        self._credential = None
        self._store.delete(self._provider)
        logger.info("Credential cleared for %s", self._provider)

    async def current_access_token(self) -> str:
        """Return a usable access token, refreshing first when close to expiry.

        Raises NotAuthenticated when no credential is held and
        CredentialRefreshFailed when the token cannot be renewed.
        """
        credential = self._credential
        if credential is None or not credential.access_token:
            raise NotAuthenticated()

        if not self._needs_refresh(credential):
            return credential.access_token

        if not credential.refresh_token:
            if self._clock() >= credential.expires_at:
                raise CredentialRefreshFailed()
            # Inside the margin but still valid, nothing to refresh with
            return credential.access_token

        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(
                self._refresh(credential), name="credential-refresh"
            )
            self._refresh_task.add_done_callback(self._clear_refresh_task)
        return await asyncio.shield(self._refresh_task)

    async def project_id(self) -> str:
        """Cloud project for request envelopes, looked up once and cached."""
        credential = self._credential
        if credential is None:
            raise NotAuthenticated()
        if credential.project_id:
            return credential.project_id

        async with self._project_lock:
            if self._credential and self._credential.project_id:
                return self._credential.project_id
            token = await self.current_access_token()
            project = await self._oauth.fetch_project_id(token)
            if not project:
                return "unknown"
            # A refresh may have replaced the credential while awaiting
            current = self._credential
            if current is None:
                raise NotAuthenticated()
            current.project_id = project
            self._store.put(self._provider, current)
            return project

    def _needs_refresh(self, credential: Credential) -> bool:
        expires_at = credential.expires_at
        return expires_at > 0 and self._clock() > expires_at - self._margin

    def _clear_refresh_task(self, task: asyncio.Task[str]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            # Retrieved here so an unawaited failure never warns at GC time
            logger.debug("Refresh task finished with error: %s", task.exception())

    async def _refresh(self, credential: Credential) -> str:
        now = self._clock()
        try:
            grant = await self._oauth.refresh(credential.refresh_token or "")
        except OAuthError as e:
            logger.error("Token refresh failed: %s", e)
            raise CredentialRefreshFailed(cause=e) from e

        refreshed = Credential(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=now + grant.expires_in,
            email=credential.email,
            project_id=credential.project_id,
        )
        self._store.put(self._provider, refreshed)
        self._credential = refreshed
        logger.info("Token refreshed (expires in %ds)", grant.expires_in)
        return refreshed.access_token
