"""Parse cloud backend bodies and aggregate them into a ChatResponse.

Even the non-streaming endpoint may answer with a JSON array of
progressive chunks, so both paths share ``parse_chunks``.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from antiproxy.errors import BackendProtocolError
from antiproxy.schemas import ChatResponse, ContentBlock, StopReason, Usage

logger = logging.getLogger(__name__)


def parse_chunks(raw: str) -> list[dict[str, Any]]:
    """Split a raw body into chunk dicts.

    Accepts a JSON array, a single JSON object, or SSE ``data:`` lines.
    """
    text = raw.strip()
    if not text:
        return []
    try:
        if text.startswith("["):
            data = json.loads(text)
            return [c for c in data if isinstance(c, dict)]
        if text.startswith("{"):
            return [json.loads(text)]
        chunks = []
        for line in text.splitlines():
            if not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if payload and payload != "[DONE]":
                chunks.append(json.loads(payload))
        if chunks:
            return chunks
    except json.JSONDecodeError as e:
        raise BackendProtocolError(f"Malformed backend response: {e}", e) from e
    raise BackendProtocolError(f"Unrecognized backend response: {text[:200]}")


def chunk_payload(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """The generateContent payload, wrapped in ``response`` or bare."""
    payload = chunk.get("response")
    if isinstance(payload, dict):
        return payload
    if "candidates" in chunk or "usageMetadata" in chunk:
        return chunk
    return None


def chunk_parts(chunk: dict[str, Any]) -> list[dict[str, Any]]:
    payload = chunk_payload(chunk) or {}
    candidates = payload.get("candidates") or [{}]
    content = candidates[0].get("content") or {}
    return [p for p in content.get("parts") or [] if isinstance(p, dict)]


def chunk_finish_reason(chunk: dict[str, Any]) -> str | None:
    payload = chunk_payload(chunk) or {}
    candidates = payload.get("candidates") or [{}]
    return candidates[0].get("finishReason")


def chunk_usage(chunk: dict[str, Any]) -> Usage | None:
    payload = chunk_payload(chunk) or {}
    meta = payload.get("usageMetadata") or chunk.get("usageMetadata")
    if not meta:
        return None
    return Usage(
        input_tokens=meta.get("promptTokenCount") or 0,
        output_tokens=(meta.get("candidatesTokenCount") or 0) + (meta.get("thoughtsTokenCount") or 0),
    )


def new_tool_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:8]}"


def tool_block(function_call: dict[str, Any]) -> ContentBlock:
    return ContentBlock(
        type="tool_use",
        id=function_call.get("id") or new_tool_id(),
        name=function_call.get("name", ""),
        input=function_call.get("args") or {},
    )


def require_payload(chunks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Reject an empty chunk list or one whose last chunk carries no payload."""
    if not chunks:
        raise BackendProtocolError("Empty response from backend")
    if chunk_payload(chunks[-1]) is None:
        raise BackendProtocolError("No valid response payload from backend")
    return chunks


def aggregate(chunks: list[dict[str, Any]]) -> ChatResponse:
    """Fold cloud chunks into content blocks, stop reason and usage."""
    last = require_payload(chunks)[-1]

    blocks: list[ContentBlock] = []
    for chunk in chunks:
        for part in chunk_parts(chunk):
            # Thinking models may answer inside thought parts
            text = part.get("text")
            if text:
                if blocks and blocks[-1].type == "text":
                    blocks[-1].text = (blocks[-1].text or "") + text
                else:
                    blocks.append(ContentBlock(type="text", text=text))
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                blocks.append(tool_block(function_call))

    has_tool_use = any(b.type == "tool_use" for b in blocks)
    if not blocks:
        blocks.append(ContentBlock(type="text", text=""))

    if has_tool_use:
        stop_reason = StopReason.TOOL_USE
    elif chunk_finish_reason(last) == "MAX_TOKENS":
        stop_reason = StopReason.MAX_TOKENS
    else:
        stop_reason = StopReason.END_TURN

    return ChatResponse(
        content_blocks=blocks,
        stop_reason=stop_reason,
        usage=chunk_usage(last) or Usage(),
    )
