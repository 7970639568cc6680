"""Heuristic text filters for the cascade backend.

Two pluggable steps, both plain ``str -> str`` callables:

* ``strip_contamination``: applied to the outgoing user message. Clients
  sometimes paste a whole prior conversation into one turn; when that
  happens, sentences where the backend identified itself or described the
  IDE are removed so they are not fed back to it.
* ``strip_ide_context``: applied to the recovered answer. Removes
  environment disclosures (open files, cursor position, metadata tags).

Patterns are bilingual (English/Chinese) and will need tuning; swap the
callable rather than editing the orchestrator.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

logger = logging.getLogger(__name__)

TextFilter = Callable[[str], str]

# Literal markers of an embedded transcript
_CONTAMINATION_MARKERS = re.compile(
    r"(?:^|\n)\s*(?:Human|Assistant|User)\s*:|用户\s*[:：]|助手\s*[:：]|conversation\s*:",
    re.IGNORECASE,
)

# Sentences disclosing backend identity or IDE context
_LEAD = r"^\s*(?:(?:Human|Assistant|User|用户|助手)\s*[:：]\s*)?"
_DISCLOSURE_PATTERNS = [
    # Leading observations about the environment
    re.compile(_LEAD + r"I (?:notice|can see|see) (?:that )?(?:you|your)\b", re.IGNORECASE),
    re.compile(_LEAD + r"(?:Looking at|Based on) (?:your|the) (?:open|active|current) (?:file|editor|workspace)", re.IGNORECASE),
    re.compile(_LEAD + r"我(?:注意到|看到)"),
    re.compile(_LEAD + r"(?:根据|从)(?:你|您)的(?:工作区|编辑器|打开的文件)"),
    # Self-identification
    re.compile(r"\bI(?:'m| am) (?:Antigravity|Cascade|an AI (?:coding )?assistant (?:in|inside|built into))", re.IGNORECASE),
    re.compile(r"\b(?:Antigravity|Cascade),? (?:an|the|your) (?:agentic )?(?:AI )?(?:coding )?assistant", re.IGNORECASE),
    re.compile(r"我是\s*(?:Antigravity|Cascade|.{0,12}(?:编程|编码|AI)\s*助手)", re.IGNORECASE),
    # IDE specifics
    re.compile(r"\b(?:your|the) (?:IDE|editor|workspace) (?:has|shows|is)\b", re.IGNORECASE),
    re.compile(r"\bcursor is (?:on|at) line\b", re.IGNORECASE),
    re.compile(r"(?:当前|活动)(?:文件|编辑器|工作区)"),
]

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])[ \t]*")
_BLANK_RUNS = re.compile(r"\n{3,}")

# Context blocks the local service may echo back
_CONTEXT_TAGS = re.compile(
    r"<(user_information|ADDITIONAL_METADATA|EPHEMERAL_MESSAGE|user_rules|workspace_information)>"
    r".*?</\1>\s*",
    re.DOTALL,
)
_CONTEXT_LINES = [
    re.compile(r"^\s*The user'?s OS version is\b.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*The user has \d+ active workspaces?\b.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*(?:The )?(?:USER'?s )?(?:current|active) (?:document|file) is\b.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*Cursor is on line:?\s*\d+.*$", re.IGNORECASE | re.MULTILINE),
]


def has_contamination(text: str) -> bool:
    return bool(_CONTAMINATION_MARKERS.search(text))


def _is_disclosure(sentence: str) -> bool:
    return any(p.search(sentence) for p in _DISCLOSURE_PATTERNS)


def _collapse(text: str) -> str:
    return _BLANK_RUNS.sub("\n\n", text).strip()


def strip_contamination(text: str) -> str:
    """Remove disclosure sentences from a message carrying a pasted transcript.

    Messages without a transcript marker pass through unchanged. Any
    failure returns the input untouched.
    """
    if not text or not has_contamination(text):
        return text
    try:
        lines: list[str] = []
        for line in text.split("\n"):
            sentences = [s for s in _SENTENCE_SPLIT.split(line) if s]
            kept = [s for s in sentences if not _is_disclosure(s)]
            if sentences and not kept:
                lines.append("")
                continue
            lines.append(" ".join(s.strip() for s in kept) if len(kept) != len(sentences) else line)
        cleaned = _collapse("\n".join(lines))
    except Exception:
        logger.warning("Contamination filter failed, passing message through", exc_info=True)
        return text
    if cleaned != text:
        logger.debug("Contamination filter removed %d chars", len(text) - len(cleaned))
    return cleaned


def strip_ide_context(text: str) -> str:
    """Remove IDE/environment context echoed into a cascade answer."""
    if not text:
        return text
    try:
        cleaned = _CONTEXT_TAGS.sub("", text)
        for pattern in _CONTEXT_LINES:
            cleaned = pattern.sub("", cleaned)
        return _collapse(cleaned)
    except Exception:
        logger.warning("IDE context filter failed, passing text through", exc_info=True)
        return text
