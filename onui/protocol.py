"""
Native-messaging protocol: envelopes, payload models and stdio framing.

Every message on the raw stdio transport is a 4-byte little-endian unsigned
length followed by that many bytes of UTF-8 JSON. Browsers use the same
framing when they spawn a native host, so one codec serves both the
browser-brokered channel and a host driven directly.

Request:  {type, requestId, sentAt, payload}
Response: {ok, requestId, data, error}
"""

import json
import struct
from dataclasses import dataclass
from typing import Any, Iterator, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from .errors import ProtocolError

HEADER = struct.Struct("<I")
HEADER_SIZE = HEADER.size

# requestId used when a frame is too broken to recover the caller's id
UNKNOWN_REQUEST_ID = "unknown"

REQUEST_PING = "PING"
REQUEST_UPSERT_PAGE_SNAPSHOT = "UPSERT_PAGE_SNAPSHOT"
REQUEST_DELETE_PAGE = "DELETE_PAGE"
REQUEST_GET_CHANGES_SINCE = "GET_CHANGES_SINCE"

REQUEST_TYPES = (
    REQUEST_PING,
    REQUEST_UPSERT_PAGE_SNAPSHOT,
    REQUEST_DELETE_PAGE,
    REQUEST_GET_CHANGES_SINCE,
)


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NativeRequest:
    type: str
    request_id: str
    sent_at: float
    payload: Any

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "requestId": self.request_id,
            "sentAt": self.sent_at,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class NativeResponse:
    ok: bool
    request_id: str
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "requestId": self.request_id,
            "data": self.data,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "NativeResponse":
        return cls(
            ok=bool(d.get("ok")),
            request_id=str(d.get("requestId", UNKNOWN_REQUEST_ID)),
            data=d.get("data"),
            error=d.get("error"),
        )


def is_native_request(value: Any) -> bool:
    """True if ``value`` has the request envelope's required fields and types."""
    if not isinstance(value, dict):
        return False
    sent_at = value.get("sentAt")
    return (
        isinstance(value.get("type"), str)
        and isinstance(value.get("requestId"), str)
        and isinstance(sent_at, (int, float))
        and not isinstance(sent_at, bool)
        and "payload" in value
    )


def create_response(
    request_id: str, ok: bool, data: Any = None, error: Optional[str] = None,
) -> NativeResponse:
    return NativeResponse(ok=ok, request_id=request_id, data=data, error=error)


def parse_request(raw: bytes) -> NativeRequest:
    """Decode one frame payload into a request envelope.

    Raises:
        ProtocolError: Invalid JSON or missing/mistyped envelope fields
    """
    try:
        value = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError("Invalid JSON payload") from e
    if not is_native_request(value):
        raise ProtocolError("Invalid request envelope")
    return NativeRequest(
        type=value["type"],
        request_id=value["requestId"],
        sent_at=value["sentAt"],
        payload=value["payload"],
    )


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class AnnotationPayload(BaseModel):
    """An annotation as pushed by the extension; unknown fields are kept."""
    model_config = ConfigDict(extra="allow")

    id: StrictStr
    updatedAt: int | float


class UpsertPageSnapshotPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_url: str = Field(alias="pageUrl")
    page_title: str = Field(default="", alias="pageTitle")
    annotations: list[AnnotationPayload] = Field(default_factory=list)

    def annotation_dicts(self) -> list[dict[str, Any]]:
        return [a.model_dump() for a in self.annotations]


class DeletePagePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_url: str = Field(alias="pageUrl")


class GetChangesSincePayload(BaseModel):
    since: int | float = 0
    limit: StrictInt = Field(default=200, ge=0)


class MetadataPatch(BaseModel):
    """Partial metadata update: only fields that are set get applied."""
    model_config = ConfigDict(extra="forbid")

    status: Optional[Literal["pending", "acknowledged", "resolved", "dismissed"]] = None
    intent: Optional[Literal["fix", "change", "question", "approve"]] = None
    severity: Optional[Literal["blocking", "important", "suggestion"]] = None
    comment: Optional[str] = None

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

def encode_frame(message: Any) -> bytes:
    """Length-prefix a JSON-serializable message (or a NativeResponse/Request)."""
    if isinstance(message, (NativeResponse, NativeRequest)):
        message = message.to_dict()
    payload = json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return HEADER.pack(len(payload)) + payload


class FrameDecoder:
    """
    Incremental decoder for a length-prefixed byte stream.

    Input is treated as an unbounded stream: bytes are buffered until a
    full header, then a full payload, is available. Whatever follows a
    complete frame stays buffered for the next decode.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    @property
    def buffered(self) -> bytes:
        return bytes(self._buffer)

    def decode(self) -> Optional[bytes]:
        """Return the next complete payload, or None if more bytes are needed."""
        if len(self._buffer) < HEADER_SIZE:
            return None
        (length,) = HEADER.unpack_from(self._buffer, 0)
        end = HEADER_SIZE + length
        if len(self._buffer) < end:
            return None
        payload = bytes(self._buffer[HEADER_SIZE:end])
        del self._buffer[:end]
        return payload

    def __iter__(self) -> Iterator[bytes]:
        while True:
            payload = self.decode()
            if payload is None:
                return
            yield payload


def read_frame(data: bytes) -> Optional[bytes]:
    """Decode the first complete frame in ``data`` (None if incomplete)."""
    decoder = FrameDecoder()
    decoder.feed(data)
    return decoder.decode()
