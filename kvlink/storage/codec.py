"""
Value Codec for Byte-Oriented Stores

Records are JSON-encoded and prefixed with a one-byte marker:
    0x00 + raw JSON bytes
    0x01 + LZ4 frame of the JSON bytes (payloads above the threshold)

Uses LZ4 frame compression for speed; auth records are small, so most
values stay uncompressed and only large attribute blobs pay the cost.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import lz4.frame

from kvlink.core import constants as C

_RAW_MARKER = b"\x00"
_LZ4_MARKER = b"\x01"


@dataclass(frozen=True, slots=True)
class ValueCodec:
    """Encode/decode store values."""

    compress: bool = True
    threshold: int = C.COMPRESSION_THRESHOLD_BYTES

    def encode(self, value: Any) -> bytes:
        data = json.dumps(value, separators=(",", ":")).encode("utf-8")

        if self.compress and len(data) > self.threshold:
            return _LZ4_MARKER + lz4.frame.compress(data)
        return _RAW_MARKER + data

    def decode(self, data: bytes) -> Any:
        """
        Decode bytes written by ``encode``.

        Raises:
            ValueError: Empty input or unknown marker
        """
        if len(data) == 0:
            raise ValueError("Empty value data")

        marker, payload = data[:1], data[1:]
        if marker == _LZ4_MARKER:
            payload = lz4.frame.decompress(payload)
        elif marker != _RAW_MARKER:
            raise ValueError(f"Unknown value marker: {marker!r}")

        return json.loads(payload.decode("utf-8"))
