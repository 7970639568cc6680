"""Convert client chat requests into each backend's native request shape.

Cloud backend: a JSON envelope around ``contents``/``generationConfig``,
with tool schemas stripped down to what the backend's validator accepts.
Cascade backend: only the last user turn, filtered for pasted transcripts.
"""

from __future__ import annotations

import json
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any

from antiproxy.schemas import ChatRequest, Message
from antiproxy.translate.filters import TextFilter, strip_contamination

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
THINKING_MIN_OUTPUT_TOKENS = 1000

# Client model id -> cloud backend model id
CLOUD_MODEL_ALIASES: dict[str, str] = {
    "claude-sonnet-4-5": "claude-sonnet-4-5",
    "claude-sonnet-4-5-thinking": "claude-sonnet-4-5-thinking",
    "claude-opus-4-5-thinking": "claude-opus-4-5-thinking",
    # Dated ids sent by Claude clients
    "claude-sonnet-4-5-20251001": "claude-sonnet-4-5",
    "claude-sonnet-4-5-20251022": "claude-sonnet-4-5",
    # haiku is not served; fall back to sonnet
    "claude-haiku-4-5": "claude-sonnet-4-5",
    "claude-haiku-4-5-thinking": "claude-sonnet-4-5-thinking",
    "claude-haiku-4-5-20251001": "claude-sonnet-4-5",
    "claude-haiku-4-5-20251022": "claude-sonnet-4-5",
    "claude-opus-4": "claude-opus-4",
    "claude-opus-4-thinking": "claude-opus-4-thinking",
    "claude-sonnet-4": "claude-sonnet-4",
    "claude-sonnet-4-thinking": "claude-sonnet-4-thinking",
    "gemini-3-pro": "gemini-3-pro",
    "gemini-3-pro-high": "gemini-3-pro-high",
    "gemini-3-pro-low": "gemini-3-pro-low",
    "gemini-3-flash": "gemini-3-flash",
    "gemini-2-5-pro": "gemini-2-5-pro",
    "gemini-2-5-flash": "gemini-2-5-flash",
    # GPT-OSS needs the effort suffix
    "gpt-oss-120b": "gpt-oss-120b-medium",
    "gpt-oss-120b-medium": "gpt-oss-120b-medium",
}

# Client model id -> local service model enum
CASCADE_MODEL_ALIASES: dict[str, str] = {
    "claude-sonnet-4-5": "MODEL_CLAUDE_4_5_SONNET",
    "claude-sonnet-4-5-thinking": "MODEL_CLAUDE_4_5_SONNET_THINKING",
    "claude-opus-4-5-thinking": "MODEL_CLAUDE_4_5_OPUS_THINKING",
    "claude-sonnet-4-5-20251001": "MODEL_CLAUDE_4_5_SONNET",
    "claude-sonnet-4-5-20251022": "MODEL_CLAUDE_4_5_SONNET",
    "claude-haiku-4-5": "MODEL_CLAUDE_4_5_SONNET",
    "claude-haiku-4-5-20251001": "MODEL_CLAUDE_4_5_SONNET",
    "gemini-3-pro-high": "MODEL_GOOGLE_GEMINI_3_PRO_HIGH",
    "gemini-3-pro-low": "MODEL_GOOGLE_GEMINI_3_PRO_LOW",
    "gemini-3-flash": "MODEL_GOOGLE_GEMINI_3_FLASH",
    "gpt-oss-120b": "MODEL_OPENAI_GPT_OSS_120B_MEDIUM",
    "gpt-oss-120b-medium": "MODEL_OPENAI_GPT_OSS_120B_MEDIUM",
}

# JSON-schema keywords the cloud tool validator rejects
UNSUPPORTED_SCHEMA_KEYS = frozenset({
    # Metadata
    "$schema", "$id", "$ref", "$defs", "definitions", "$comment",
    # Validation
    "exclusiveMinimum", "exclusiveMaximum", "minimum", "maximum",
    "minLength", "maxLength", "pattern", "format",
    "minItems", "maxItems", "uniqueItems", "minContains", "maxContains",
    "minProperties", "maxProperties",
    # Composition
    "additionalItems", "patternProperties", "dependencies", "dependentRequired",
    "dependentSchemas", "propertyNames", "const", "contentMediaType",
    "contentEncoding", "contentSchema", "if", "then", "else",
    "allOf", "anyOf", "oneOf", "not",
    # Annotations
    "title", "examples", "default", "readOnly", "writeOnly", "deprecated",
    "additionalProperties", "unevaluatedItems", "unevaluatedProperties",
})

_THINKING_FAMILIES = ("gemini-3", "gpt-oss")
_TOOL_FAMILY = "claude"


@dataclass(frozen=True)
class CascadeRequest:
    """Native request for the local cascade service."""

    model: str
    message: str


# ---------------------------------------------------------------------------
# Model aliases
# ---------------------------------------------------------------------------


def _resolve(model: str, table: dict[str, str]) -> str:
    mapped = table.get(model)
    if mapped is None:
        logger.debug("Unknown model: %s, mapping as-is", model)
        return model
    return mapped


def cloud_model_name(model: str) -> str:
    return _resolve(model, CLOUD_MODEL_ALIASES)


def cascade_model_name(model: str) -> str:
    return _resolve(model, CASCADE_MODEL_ALIASES)


# ---------------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------------


def extract_text(content: Any) -> str:
    """Flatten message content (string or typed blocks) into plain text."""
    if isinstance(content, str):
        return content

    if isinstance(content, list | tuple):
        parts: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                parts.append(block["text"])
            elif block_type == "tool_use":
                pretty = json.dumps(block.get("input"), indent=2, ensure_ascii=False)
                parts.append(f"[Tool Call: {block.get('name')}]\n{pretty}")
            elif block_type == "tool_result":
                inner = block.get("content")
                if isinstance(inner, str):
                    parts.append(inner)
                elif isinstance(inner, list):
                    for item in inner:
                        if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
                            parts.append(item["text"])
        return "\n".join(parts) or "[No text content]"

    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return content["text"]

    return json.dumps(content, ensure_ascii=False)


def _rolling_hash(text: str) -> int:
    """32-bit signed ``h*31 + c`` over UTF-16 code units."""
    data = text.encode("utf-16-le", errors="surrogatepass")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def session_id_for(messages: tuple[Message, ...] | list[Message]) -> str:
    """Session id derived from the first user message.

    Identical prompts map to the same id across processes. Without a user
    message the id is random.
    """
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is not None:
        h = _rolling_hash(extract_text(first_user.content))
        return f"-{abs(h) * 10**12}"
    return f"-{random.randrange(9 * 10**18)}"


def effective_max_tokens(
    model: str,
    requested: int | None,
    default: int = DEFAULT_MAX_TOKENS,
    thinking_floor: int = THINKING_MIN_OUTPUT_TOKENS,
) -> int:
    """Thinking models spend part of the budget on reasoning; raise to the floor."""
    value = requested or default
    if any(family in model for family in _THINKING_FAMILIES):
        value = max(value, thinking_floor)
    return value


def clean_json_schema(schema: Any) -> Any:
    """Drop keywords the backend validator rejects, at every depth.

    Keys under ``properties`` are property names, not keywords, and are
    always kept. Idempotent.
    """
    if not isinstance(schema, dict):
        return schema

    result: dict[str, Any] = {}
    for key, value in schema.items():
        if key in UNSUPPORTED_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            result[key] = {name: clean_json_schema(prop) for name, prop in value.items()}
        elif isinstance(value, list):
            result[key] = [clean_json_schema(item) for item in value]
        else:
            result[key] = clean_json_schema(value)
    return result


# ---------------------------------------------------------------------------
# Backend requests
# ---------------------------------------------------------------------------


def normalize_cloud(
    request: ChatRequest,
    project_id: str | None = None,
    default_max_tokens: int = DEFAULT_MAX_TOKENS,
    thinking_floor: int = THINKING_MIN_OUTPUT_TOKENS,
) -> dict[str, Any]:
    """Build the cloud ``generateContent`` envelope."""
    model = cloud_model_name(request.model)
    contents = [
        {
            "role": "model" if msg.role == "assistant" else msg.role,
            "parts": [{"text": extract_text(msg.content)}],
        }
        for msg in request.messages
    ]

    inner: dict[str, Any] = {
        "contents": contents,
        "sessionId": session_id_for(request.messages),
        "generationConfig": {
            "maxOutputTokens": effective_max_tokens(
                model, request.max_tokens, default_max_tokens, thinking_floor
            ),
        },
    }

    # Only the claude family validates tools; others reject the schemas
    if _TOOL_FAMILY in model:
        inner["toolConfig"] = {"functionCallingConfig": {"mode": "VALIDATED"}}
        if request.tools:
            inner["tools"] = [
                {
                    "functionDeclarations": [{
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": clean_json_schema(tool.input_schema),
                    }]
                }
                for tool in request.tools
            ]
    elif request.tools:
        logger.debug("Dropping %d tool(s) for non-tool model %s", len(request.tools), model)

    return {
        "model": model,
        "userAgent": "antigravity",
        "project": project_id or "unknown",
        "requestId": f"agent-{uuid.uuid4()}",
        "request": inner,
    }


def normalize_cascade(
    request: ChatRequest,
    contamination_filter: TextFilter = strip_contamination,
) -> CascadeRequest:
    """Forward only the last user turn; history stays on the client side."""
    last_user = next((m for m in reversed(request.messages) if m.role == "user"), None)
    text = extract_text(last_user.content) if last_user is not None else ""
    try:
        text = contamination_filter(text)
    except Exception:
        logger.warning("Contamination filter raised, forwarding message unchanged", exc_info=True)
    return CascadeRequest(model=cascade_model_name(request.model), message=text)
