"""Locate the local language server (port + CSRF token).

A missing server is an ordinary state: the IDE simply is not running.
Discovery returns None rather than raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from antiproxy.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageServerInfo:
    port: int
    csrf_token: str
    host: str = "127.0.0.1"

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}"


@runtime_checkable
class Discovery(Protocol):
    def discover(self) -> LanguageServerInfo | None:
        """Current server coordinates, or None when not running."""
        ...


class StaticDiscovery:
    """Coordinates supplied up front (settings, or set after a scan)."""

    def __init__(self, port: int | None = None, csrf_token: str = "", host: str = "127.0.0.1") -> None:
        self._info: LanguageServerInfo | None = None
        self.update(port, csrf_token, host)

    @classmethod
    def from_settings(cls, settings: Settings) -> StaticDiscovery:
        return cls(
            settings.language_server_port,
            settings.language_server_csrf_token,
            settings.language_server_host,
        )

    def update(self, port: int | None, csrf_token: str, host: str = "127.0.0.1") -> None:
        if port and csrf_token:
            self._info = LanguageServerInfo(port=port, csrf_token=csrf_token, host=host)
            logger.info("Language server at %s:%d", host, port)
        else:
            self._info = None

    def discover(self) -> LanguageServerInfo | None:
        return self._info
