"""Common interface for chat backends.

Both backends follow the same steps (normalize, execute, then
to_response or to_stream), so the service drives either one without
knowing which transport sits underneath.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from typing import Any

from antiproxy.schemas import BackendKind, ChatRequest, ChatResponse
from antiproxy.translate.stream import (
    ConversionState,
    StreamEvent,
    finish_message,
    start_message,
    translate_chunk,
)


class ChatBackend(ABC):
    """One transport to the underlying model."""

    kind: BackendKind

    @abstractmethod
    async def normalize(self, request: ChatRequest) -> Any:
        """Client request -> backend-native request."""

    @abstractmethod
    async def execute(self, native: Any, stream: bool = False) -> Any:
        """Run the native request; returns the raw backend output."""

    @abstractmethod
    def to_response(self, raw: Any) -> ChatResponse:
        """Raw output -> aggregated response."""

    @abstractmethod
    def to_chunks(self, raw: Any) -> Iterable[dict[str, Any]]:
        """Raw output -> chunks in arrival order, for the stream translator."""

    def to_stream(self, raw: Any, model: str, message_id: str) -> Iterator[StreamEvent]:
        """Raw output -> ordered protocol events, message_start to message_stop."""
        # Resolved first so a rejected body fails before message_start
        chunks = self.to_chunks(raw)
        state = ConversionState()
        events, state = start_message(state, model, message_id)
        yield from events
        for chunk in chunks:
            events, state = translate_chunk(chunk, state)
            yield from events
        events, state = finish_message(state)
        yield from events

    async def close(self) -> None:
        """Release transport resources."""
