"""Credential persistence keyed by provider.

The manager only needs get/put; where the bytes live is up to the store.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class Credential:
    """OAuth credential for one account."""

    access_token: str
    refresh_token: str | None = None
    expires_at: float = 0.0  # epoch seconds, 0 = unknown
    email: str | None = None
    project_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            expires_at=float(data.get("expires_at") or 0.0),
            email=data.get("email"),
            project_id=data.get("project_id"),
        )


@runtime_checkable
class CredentialStore(Protocol):
    """Protocol that all credential stores must implement."""

    def get(self, provider: str) -> Credential | None:
        """Return the stored credential for ``provider`` or None."""
        ...

    def put(self, provider: str, credential: Credential) -> None:
        """Persist ``credential``, replacing any previous one."""
        ...

    def delete(self, provider: str) -> None:
        """Forget the credential for ``provider``."""
        ...


class MemoryCredentialStore:
    """Process-local store. Nothing survives a restart."""

    def __init__(self) -> None:
        self._items: dict[str, Credential] = {}

    def get(self, provider: str) -> Credential | None:
        return self._items.get(provider)

    def put(self, provider: str, credential: Credential) -> None:
        self._items[provider] = credential

    def delete(self, provider: str) -> None:
        self._items.pop(provider, None)


class JsonCredentialStore:
    """Durable store backed by a single JSON file.

    Layout: ``{"<provider>": {access_token, refresh_token, ...}}``.
    Writes go through a temp file and ``os.replace`` so a crash mid-write
    never leaves a truncated file behind.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def get(self, provider: str) -> Credential | None:
        data = self._load().get(provider)
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        return Credential.from_dict(data)

    def put(self, provider: str, credential: Credential) -> None:
        data = self._load()
        data[provider] = credential.to_dict()
        self._save(data)

    def delete(self, provider: str) -> None:
        data = self._load()
        if data.pop(provider, None) is not None:
            self._save(data)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read credentials from %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".auth-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
