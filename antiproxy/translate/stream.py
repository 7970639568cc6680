"""Translate backend chunks into Anthropic Messages stream events.

The translator is a set of pure functions over an immutable
``ConversionState``: each step takes the state and returns the events to
emit plus the next state. No state is shared between requests.

Guarantees for any chunk sequence:
  - at most one content block is open at a time
  - blocks close in the order they were opened
  - finish_message() closes whatever is still open

Cascade answers are not streamed by the backend at all. ``synthetic_chunks``
slices the final text into fixed-size windows and feeds them through the
same translator. That is a compatibility shim, not a low-latency stream:
the first delta only arrives once the whole answer exists.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from typing import Any

from antiproxy.errors import AntiProxyError
from antiproxy.schemas import StopReason, Usage
from antiproxy.translate.aggregate import (
    chunk_finish_reason,
    chunk_parts,
    chunk_usage,
    new_tool_id,
)


@dataclass(frozen=True)
class StreamEvent:
    """One protocol event: SSE event name plus JSON data."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        return format_sse(self.name, self.data)


@dataclass(frozen=True)
class ConversionState:
    """Cross-chunk state for one streaming response."""

    started: bool = False
    block_open: bool = False
    block_index: int = -1
    block_type: str | None = None  # "text" or "tool_use"
    next_index: int = 0
    text: str = ""  # all text emitted so far
    saw_tool_use: bool = False
    finish_reason: str | None = None
    usage: Usage | None = None


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def error_event(err: Exception) -> StreamEvent:
    wrapped = AntiProxyError.wrap(err)
    return StreamEvent(
        "error",
        {"type": "error", "error": {"type": wrapped.error_type, "message": str(wrapped)}},
    )


# ---------------------------------------------------------------------------
# Block helpers
# ---------------------------------------------------------------------------


def _open_block(
    state: ConversionState, block_type: str, content_block: dict[str, Any]
) -> tuple[list[StreamEvent], ConversionState]:
    events, state = _close_block(state)
    index = state.next_index
    events.append(StreamEvent(
        "content_block_start",
        {"type": "content_block_start", "index": index, "content_block": content_block},
    ))
    return events, replace(
        state,
        block_open=True,
        block_index=index,
        block_type=block_type,
        next_index=index + 1,
    )


def _close_block(state: ConversionState) -> tuple[list[StreamEvent], ConversionState]:
    if not state.block_open:
        return [], state
    event = StreamEvent(
        "content_block_stop", {"type": "content_block_stop", "index": state.block_index}
    )
    return [event], replace(state, block_open=False, block_type=None)


def _text_delta(state: ConversionState, text: str) -> tuple[list[StreamEvent], ConversionState]:
    events: list[StreamEvent] = []
    if not (state.block_open and state.block_type == "text"):
        events, state = _open_block(state, "text", {"type": "text", "text": ""})
    events.append(StreamEvent(
        "content_block_delta",
        {
            "type": "content_block_delta",
            "index": state.block_index,
            "delta": {"type": "text_delta", "text": text},
        },
    ))
    return events, replace(state, text=state.text + text)


def _tool_use(
    state: ConversionState, function_call: dict[str, Any]
) -> tuple[list[StreamEvent], ConversionState]:
    # Tool calls arrive complete: open, one input delta, close
    events, state = _open_block(state, "tool_use", {
        "type": "tool_use",
        "id": function_call.get("id") or new_tool_id(),
        "name": function_call.get("name", ""),
        "input": {},
    })
    events.append(StreamEvent(
        "content_block_delta",
        {
            "type": "content_block_delta",
            "index": state.block_index,
            "delta": {
                "type": "input_json_delta",
                "partial_json": json.dumps(function_call.get("args") or {}, ensure_ascii=False),
            },
        },
    ))
    closing, state = _close_block(state)
    return events + closing, replace(state, saw_tool_use=True)


# ---------------------------------------------------------------------------
# Public steps
# ---------------------------------------------------------------------------


def start_message(
    state: ConversionState, model: str, message_id: str
) -> tuple[list[StreamEvent], ConversionState]:
    if state.started:
        return [], state
    event = StreamEvent("message_start", {
        "type": "message_start",
        "message": {
            "id": message_id,
            "type": "message",
            "role": "assistant",
            "model": model,
            "content": [],
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": 0, "output_tokens": 0},
        },
    })
    return [event], replace(state, started=True)


def translate_chunk(
    chunk: dict[str, Any], state: ConversionState
) -> tuple[list[StreamEvent], ConversionState]:
    """Events for one backend chunk, in part order."""
    events: list[StreamEvent] = []
    for part in chunk_parts(chunk):
        text = part.get("text")
        if text:
            step, state = _text_delta(state, text)
            events.extend(step)
        function_call = part.get("functionCall")
        if isinstance(function_call, dict):
            step, state = _tool_use(state, function_call)
            events.extend(step)

    finish_reason = chunk_finish_reason(chunk)
    if finish_reason:
        state = replace(state, finish_reason=finish_reason)
    usage = chunk_usage(chunk)
    if usage is not None:
        state = replace(state, usage=usage)
    return events, state


def stop_reason_for(state: ConversionState) -> StopReason:
    if state.saw_tool_use:
        return StopReason.TOOL_USE
    if state.finish_reason == "MAX_TOKENS":
        return StopReason.MAX_TOKENS
    return StopReason.END_TURN


def finish_message(state: ConversionState) -> tuple[list[StreamEvent], ConversionState]:
    """Close any open block, then message_delta + message_stop.

    A message that produced no block gets one empty text block, matching
    the aggregated response.
    """
    events, state = _close_block(state)
    if state.next_index == 0:
        opened, state = _open_block(state, "text", {"type": "text", "text": ""})
        closed, state = _close_block(state)
        events.extend(opened + closed)
    usage = state.usage or Usage()
    events.append(StreamEvent("message_delta", {
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason_for(state).value, "stop_sequence": None},
        "usage": {"input_tokens": usage.input_tokens, "output_tokens": usage.output_tokens},
    }))
    events.append(StreamEvent("message_stop", {"type": "message_stop"}))
    return events, state


# ---------------------------------------------------------------------------
# Synthetic streaming
# ---------------------------------------------------------------------------


def slice_text(text: str, size: int) -> list[str]:
    """Fixed-size character windows, in order."""
    if size < 1:
        raise ValueError("size must be >= 1")
    return [text[i:i + size] for i in range(0, len(text), size)]


def synthetic_chunks(text: str, size: int) -> Iterator[dict[str, Any]]:
    """Wrap each window as a text-only chunk the translator understands."""
    for window in slice_text(text, size):
        yield {"candidates": [{"content": {"parts": [{"text": window}]}}]}
