# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Hybrid line / length-prefixed wire framing.

Control messages (every request, and every reply except chunk replies) are a
single UTF-8 JSON object terminated by ``\\n``. A chunk reply is a JSON header
line followed by exactly ``header.s`` raw payload bytes with no delimiter; the
payload may contain ``\\n`` and must be read by length, never by line.

Chunk header schema (protocol version 1):

    s   payload length in bytes (after compression)
    o   offset of the chunk in the artifact
    c   CRC16 of the original (uncompressed) bytes
    f   1 when the payload is gzip-compressed, else 0
    p   integer percent complete
    id  chunk sequence number
    h   CRC16 of the header's canonical JSON with ``h`` excluded

The canonical JSON is the compact encoding (no spaces) of the header fields in
their transmitted order, ``h`` removed. Fields added by later protocol versions
are appended before ``h`` and covered by the same CRC, so a reader that does not
know them still validates the header.
"""

from __future__ import annotations

import gzip
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Union

from .errors import FrameError
from .integrity import crc16

PROTOCOL_VERSION = 1
HEADER_FIELDS: tuple[str, ...] = ("s", "o", "c", "f", "p", "id")
HEADER_CRC_FIELD = "h"
DELIMITER = b"\n"

FLAG_COMPRESSED = 0x01


def canonical_header(fields: Mapping[str, Any]) -> bytes:
    """Encode header fields the way the header CRC is computed.

    Args:
        fields: Header mapping; an ``h`` entry, if present, is ignored.

    Returns:
        Compact UTF-8 JSON of every field except ``h`` in mapping order.
    """
    body = {k: v for k, v in fields.items() if k != HEADER_CRC_FIELD}
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class ChunkHeader:
    """Header line that precedes a chunk payload.

    Attributes:
        size: Payload bytes that follow the header (``s``).
        offset: Offset of the chunk in the artifact (``o``).
        data_crc16: CRC16 of the original bytes (``c``).
        compressed: Payload is gzip-compressed (``f``).
        progress: Integer percent complete (``p``).
        chunk_id: Chunk sequence number (``id``).
        header_crc16: CRC16 of the canonical header (``h``).
        extra: Fields beyond the version-1 schema, preserved in order.
    """

    size: int
    offset: int
    data_crc16: int
    compressed: bool
    progress: int
    chunk_id: int
    header_crc16: int = 0
    extra: tuple[tuple[str, Any], ...] = field(default=())

    def fields(self) -> dict:
        """Return the header fields without ``h``, in wire order."""
        out: dict[str, Any] = {
            "s": self.size,
            "o": self.offset,
            "c": self.data_crc16,
            "f": 1 if self.compressed else 0,
            "p": self.progress,
            "id": self.chunk_id,
        }
        out.update(self.extra)
        return out

    def to_dict(self) -> dict:
        out = self.fields()
        out[HEADER_CRC_FIELD] = self.header_crc16
        return out

    @classmethod
    def build(
        cls,
        *,
        size: int,
        offset: int,
        data_crc16: int,
        compressed: bool,
        progress: int,
        chunk_id: int,
    ) -> "ChunkHeader":
        """Create a header and stamp its own CRC."""
        header = cls(size, offset, data_crc16, compressed, progress, chunk_id)
        return cls(
            size,
            offset,
            data_crc16,
            compressed,
            progress,
            chunk_id,
            header_crc16=crc16(canonical_header(header.fields())),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChunkHeader":
        """Parse and validate a received header.

        Args:
            data: Decoded header JSON object.

        Returns:
            Validated ChunkHeader.

        Raises:
            FrameError: If a field is missing, ill-typed, or the header CRC
                does not match.
        """
        for name in HEADER_FIELDS + (HEADER_CRC_FIELD,):
            value = data.get(name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise FrameError(f"Chunk header field '{name}' missing or invalid")

        expected = crc16(canonical_header(data))
        if expected != data[HEADER_CRC_FIELD]:
            raise FrameError(
                f"Chunk header CRC mismatch: expected {expected}, got {data[HEADER_CRC_FIELD]}"
            )

        extra = tuple((k, v) for k, v in data.items() if k not in HEADER_FIELDS and k != HEADER_CRC_FIELD)
        return cls(
            size=data["s"],
            offset=data["o"],
            data_crc16=data["c"],
            compressed=bool(data["f"] & FLAG_COMPRESSED),
            progress=data["p"],
            chunk_id=data["id"],
            header_crc16=data[HEADER_CRC_FIELD],
            extra=extra,
        )


@dataclass(frozen=True)
class ChunkFrame:
    """A chunk header together with its raw (possibly compressed) payload."""

    header: ChunkHeader
    payload: bytes

    def to_bytes(self) -> bytes:
        return encode_chunk(self.header, self.payload)


@dataclass(frozen=True)
class ChunkRequest:
    """Parsed ``download`` request.

    Attributes:
        session_id: Session the chunk belongs to.
        offset: First byte requested.
        requested_size: Bytes requested before server-side clamping.
        compression_requested: Device accepts a gzip payload.
        retry: Device marks this request as a re-request of a failed chunk.
    """

    session_id: str
    offset: int
    requested_size: int
    compression_requested: bool = False
    retry: bool = False


def encode_control(message: Mapping[str, Any]) -> bytes:
    """Encode a control message as one JSON line."""
    return json.dumps(message, separators=(",", ":")).encode("utf-8") + DELIMITER


def encode_chunk(header: ChunkHeader, payload: bytes) -> bytes:
    """Encode a chunk reply: header line followed by exactly ``len(payload)`` bytes."""
    if header.size != len(payload):
        raise ValueError(f"header size {header.size} does not match payload length {len(payload)}")
    return json.dumps(header.to_dict(), separators=(",", ":")).encode("utf-8") + DELIMITER + payload


def compress_payload(data: bytes) -> bytes:
    """gzip ``data`` with a fixed mtime so equal input gives equal output."""
    return gzip.compress(data, mtime=0)


def decode_payload(header: ChunkHeader, payload: bytes) -> bytes:
    """Return the original chunk bytes, decompressing when ``f`` is set.

    Raises:
        FrameError: If a compressed payload cannot be decompressed.
    """
    if not header.compressed:
        return payload
    try:
        return gzip.decompress(payload)
    except (OSError, EOFError, ValueError) as ex:
        raise FrameError(f"Cannot decompress chunk at offset {header.offset}: {ex}") from ex


def verify_chunk(header: ChunkHeader, data: bytes) -> bool:
    """Check decoded chunk bytes against the header's data CRC."""
    return crc16(data) == header.data_crc16


class ByteSource(Protocol):
    """Blocking byte stream the frame reader pulls from."""

    def receive_until(self, delimiter: bytes, timeout: float) -> bytes: ...

    def receive_exact(self, size: int, timeout: float) -> bytes: ...


Message = Union[dict, ChunkFrame]


def parse_control(line: bytes) -> dict:
    """Decode one JSON control line.

    Raises:
        FrameError: If the line is not a UTF-8 JSON object.
    """
    try:
        obj = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as ex:
        raise FrameError(f"Malformed JSON line: {ex}") from ex
    if not isinstance(obj, dict):
        raise FrameError("JSON line is not an object")
    return obj


def is_chunk_header(obj: Mapping[str, Any]) -> bool:
    """A line is a chunk header when it carries the length prefix and header CRC."""
    return "s" in obj and HEADER_CRC_FIELD in obj and "status" not in obj


class FrameReader:
    """Demultiplexes control lines and length-prefixed chunk replies.

    Args:
        source: Transport offering ``receive_until`` and ``receive_exact``.
    """

    def __init__(self, source: ByteSource):
        self.source = source

    def read_message(self, timeout: float, data_timeout: Optional[float] = None) -> Message:
        """Read the next message.

        After a chunk header line the reader consumes exactly ``s`` raw bytes,
        whatever they contain, before any further line parsing.

        Args:
            timeout: Timeout for the JSON line, in seconds.
            data_timeout: Timeout for the binary payload (defaults to ``timeout``).

        Returns:
            A control dict, or a ChunkFrame for chunk replies.

        Raises:
            FrameError: Undecodable line or corrupt chunk header.
        """
        line = self.source.receive_until(DELIMITER, timeout).strip(b"\r")
        obj = parse_control(line)
        if not is_chunk_header(obj):
            return obj
        header = ChunkHeader.from_dict(obj)
        payload = self.source.receive_exact(header.size, data_timeout if data_timeout is not None else timeout)
        return ChunkFrame(header=header, payload=payload)
