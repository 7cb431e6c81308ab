# src/cursor_rotator/cursor_wire.py
"""
Wire format of the upstream chat service.

The service speaks the Connect streaming protocol with protobuf payloads.
Every message, in both directions, is wrapped in an envelope:

    1 byte   flags   (0x01 = gzip compressed, 0x02 = end of stream)
    4 bytes  length  (big-endian)
    N bytes  payload

Requests carry one `ChatMessage`. Responses are a sequence of
`StreamChatResponse` messages (field 1 holds a text fragment) followed by one
end-of-stream envelope whose payload is JSON: `{}` on success, or an object
with an `error` key when the upstream rejected the request.
"""

import gzip
import json
import struct
import uuid
import logging
from typing import Any, Dict, List, Optional, Tuple

lib_logger = logging.getLogger("cursor_rotator")

UPSTREAM_URL = "https://api2.cursor.sh/aiserver.v1.AiService/StreamChat"
DEFAULT_CLIENT_VERSION = "0.42.3"
DEFAULT_TIMEZONE = "Asia/Shanghai"
CONTENT_TYPE = "application/connect+proto"

FLAG_COMPRESSED = 0x01
FLAG_END_STREAM = 0x02
ENVELOPE_HEADER_SIZE = 5

ROLE_USER = 1
ROLE_ASSISTANT = 2

# protobuf wire types
WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_FIXED32 = 5


# --- Encoding ---


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def _key(field_number: int, wire_type: int) -> bytes:
    return _varint((field_number << 3) | wire_type)


def _bytes_field(field_number: int, payload: bytes) -> bytes:
    return _key(field_number, WIRE_LENGTH_DELIMITED) + _varint(len(payload)) + payload


def _string_field(field_number: int, value: Optional[str]) -> bytes:
    # proto3 omits fields holding their default value
    if not value:
        return b""
    return _bytes_field(field_number, value.encode("utf-8"))


def _int_field(field_number: int, value: int) -> bytes:
    if not value:
        return b""
    return _key(field_number, WIRE_VARINT) + _varint(value)


def flatten_content(content: Any) -> str:
    """Reduces OpenAI message content (string or list of parts) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                texts.append(part.get("text") or "")
        return "\n".join(texts)
    return str(content)


def _encode_message(message: Dict[str, Any]) -> bytes:
    role = ROLE_USER if message.get("role") == "user" else ROLE_ASSISTANT
    return (
        _string_field(1, flatten_content(message.get("content")))
        + _int_field(2, role)
        + _string_field(13, str(uuid.uuid4()))
    )


def encode_chat_request(
    messages: List[Dict[str, Any]], model: str, instruction: str = ""
) -> bytes:
    """
    Serializes chat messages into one enveloped `ChatMessage`.

    ChatMessage fields: messages=2 (repeated), instructions=4, projectPath=5,
    model=7, requestId=9, conversationId=15.
    """
    body = b"".join(_bytes_field(2, _encode_message(m)) for m in messages)
    if instruction:
        body += _bytes_field(4, _string_field(1, instruction))
    body += _string_field(5, "/path/to/project")
    body += _bytes_field(7, _string_field(1, model))
    body += _string_field(9, str(uuid.uuid4()))
    body += _string_field(15, str(uuid.uuid4()))
    return struct.pack(">BI", 0, len(body)) + body


# --- Decoding ---


def _read_varint(data: bytes, offset: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ValueError("Truncated varint in upstream message")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7


def decode_response_text(payload: bytes) -> str:
    """Extracts field 1 (the text fragment) from a `StreamChatResponse`. Other fields are skipped."""
    texts = []
    offset = 0
    while offset < len(payload):
        key, offset = _read_varint(payload, offset)
        field_number, wire_type = key >> 3, key & 0x07
        if wire_type == WIRE_VARINT:
            _, offset = _read_varint(payload, offset)
        elif wire_type == WIRE_FIXED64:
            offset += 8
        elif wire_type == WIRE_FIXED32:
            offset += 4
        elif wire_type == WIRE_LENGTH_DELIMITED:
            length, offset = _read_varint(payload, offset)
            value = payload[offset:offset + length]
            offset += length
            if field_number == 1:
                texts.append(value.decode("utf-8", errors="replace"))
        else:
            raise ValueError(f"Unsupported protobuf wire type {wire_type}")
    return "".join(texts)


def _is_empty_json(text: str) -> bool:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return False
    return value is None or value == {} or value == []


class EnvelopeDecoder:
    """
    Turns raw network chunks into decoded text units, one per complete envelope.

    Network chunk boundaries do not line up with envelope boundaries, so an
    incomplete trailing envelope is kept until the next chunk completes it.
    """

    def __init__(self):
        self._buffer = b""

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += chunk
        texts: List[str] = []
        while len(self._buffer) >= ENVELOPE_HEADER_SIZE:
            flags, length = struct.unpack(">BI", self._buffer[:ENVELOPE_HEADER_SIZE])
            end = ENVELOPE_HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            payload = self._buffer[ENVELOPE_HEADER_SIZE:end]
            self._buffer = self._buffer[end:]

            if flags & FLAG_COMPRESSED:
                payload = gzip.decompress(payload)

            if flags & FLAG_END_STREAM:
                text = payload.decode("utf-8", errors="replace")
                if text.strip() and not _is_empty_json(text):
                    texts.append(text)
            else:
                text = decode_response_text(payload)
                if text:
                    texts.append(text)
        return texts


def build_upstream_headers(
    credential: str,
    checksum: str,
    client_version: str = DEFAULT_CLIENT_VERSION,
    timezone: str = DEFAULT_TIMEZONE,
) -> Dict[str, str]:
    """Headers for one upstream call. Trace and request ids are fresh on every call."""
    return {
        "Content-Type": CONTENT_TYPE,
        "authorization": f"Bearer {credential}",
        "connect-accept-encoding": "gzip",
        "connect-protocol-version": "1",
        "user-agent": "connect-es/1.4.0",
        "x-amzn-trace-id": f"Root={uuid.uuid4()}",
        "x-cursor-checksum": checksum,
        "x-cursor-client-version": client_version,
        "x-cursor-timezone": timezone,
        "x-ghost-mode": "false",
        "x-request-id": str(uuid.uuid4()),
    }
