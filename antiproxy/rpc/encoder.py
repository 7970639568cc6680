"""Binary payload for the cascade message-submission call.

The local service expects protobuf wire format. Only length-delimited
fields are needed (strings and nested messages), so the encoder writes
those directly. The field layout is the service's contract; the rest of
the core treats the bytes as opaque.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

# SendUserCascadeMessageRequest
_FIELD_CASCADE_ID = 1
_FIELD_ITEMS = 2
_FIELD_METADATA = 3
_FIELD_CASCADE_CONFIG = 5
# TextOrScopeItem
_FIELD_ITEM_TEXT = 1
# Metadata
_FIELD_IDE_NAME = 1
_FIELD_API_KEY = 4
# CascadeConfig -> PlannerConfig
_FIELD_PLANNER_CONFIG = 1
_FIELD_REQUESTED_MODEL = 15

_WIRE_LENGTH_DELIMITED = 2


@dataclass(frozen=True)
class SubmitFields:
    """Field contract for one submission."""

    session_id: str
    message: str
    credential: str
    model: str


@runtime_checkable
class RequestEncoder(Protocol):
    content_type: str

    def encode(self, fields: SubmitFields) -> bytes:
        ...


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _field(number: int, payload: bytes) -> bytes:
    return _varint((number << 3) | _WIRE_LENGTH_DELIMITED) + _varint(len(payload)) + payload


def _string(number: int, value: str) -> bytes:
    return _field(number, value.encode("utf-8"))


class ProtoRequestEncoder:
    """Encodes ``SubmitFields`` as a SendUserCascadeMessageRequest."""

    content_type = "application/proto"

    def __init__(self, ide_name: str = "antigravity") -> None:
        self._ide_name = ide_name

    def encode(self, fields: SubmitFields) -> bytes:
        item = _string(_FIELD_ITEM_TEXT, fields.message)
        metadata = _string(_FIELD_IDE_NAME, self._ide_name) + _string(_FIELD_API_KEY, fields.credential)
        planner = _string(_FIELD_REQUESTED_MODEL, fields.model)
        config = _field(_FIELD_PLANNER_CONFIG, planner)
        return (
            _string(_FIELD_CASCADE_ID, fields.session_id)
            + _field(_FIELD_ITEMS, item)
            + _field(_FIELD_METADATA, metadata)
            + _field(_FIELD_CASCADE_CONFIG, config)
        )
