# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Integrity helpers: CRC16 for chunks and headers, MD5/SHA256 for whole images.

Functions:
- crc16: bit-serial CRC-16/ARC (poly 0xA001 reflected, init 0xFFFF).
- digest: one-shot hex digest of a byte string.
- file_digests: streaming MD5 + SHA256 of a file in a single pass.

Classes:
- DigestKind: supported whole-file digest algorithms.
- IncrementalDigest: rolling digest fed chunk by chunk, finalized once.
"""

from __future__ import annotations

import enum
import hashlib
from pathlib import Path

CRC16_INIT = 0xFFFF
CRC16_POLY = 0xA001


class DigestKind(str, enum.Enum):
    """Whole-file digest algorithms understood by the protocol."""

    MD5 = "md5"
    SHA256 = "sha256"

    @classmethod
    def parse(cls, value: "str | DigestKind") -> "DigestKind":
        """Resolve a digest kind from a case-insensitive name.

        Args:
            value: Digest name such as ``"md5"`` or ``"SHA256"``.

        Returns:
            Matching DigestKind.

        Raises:
            ValueError: If the name is not a supported digest.
        """
        if isinstance(value, DigestKind):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported hash type: {value!r}") from None


def crc16(data: bytes | bytearray | memoryview | str) -> int:
    """Compute the CRC-16/ARC checksum of ``data``.

    Table-free bit-serial form: each byte is XORed into the register, then
    eight shift steps XOR in 0xA001 whenever the low bit was set.

    Args:
        data: Bytes to checksum. ``str`` input is UTF-8 encoded first.

    Returns:
        16-bit checksum. ``crc16(b"123456789") == 0xBB3D``.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    crc = CRC16_INIT
    for byte in bytes(data):
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ CRC16_POLY
            else:
                crc >>= 1
    return crc & 0xFFFF


def _new_hash(kind: DigestKind):
    return hashlib.md5() if kind is DigestKind.MD5 else hashlib.sha256()


def digest(data: bytes, kind: "str | DigestKind" = DigestKind.MD5) -> str:
    """Return the lowercase hex digest of ``data``.

    Args:
        data: Bytes to hash.
        kind: ``"md5"`` or ``"sha256"``.

    Returns:
        Hex digest string.
    """
    h = _new_hash(DigestKind.parse(kind))
    h.update(data)
    return h.hexdigest()


class IncrementalDigest:
    """Rolling digest that never needs the whole image in memory.

    Args:
        kind: Digest algorithm, ``"md5"`` by default.
    """

    def __init__(self, kind: "str | DigestKind" = DigestKind.MD5):
        self.kind = DigestKind.parse(kind)
        self._hash = _new_hash(self.kind)
        self._final: str | None = None
        self.bytes_seen = 0

    def update(self, data: bytes) -> None:
        """Fold ``data`` into the running digest.

        Raises:
            RuntimeError: If the digest was already finalized.
        """
        if self._final is not None:
            raise RuntimeError("digest already finalized")
        self._hash.update(data)
        self.bytes_seen += len(data)

    def hexdigest(self) -> str:
        """Finalize (once) and return the hex digest."""
        if self._final is None:
            self._final = self._hash.hexdigest()
        return self._final

    @property
    def finalized(self) -> bool:
        return self._final is not None


def file_digests(path: str | Path, chunk_size: int = 1024 * 1024) -> tuple[str, str]:
    """Hash a file with MD5 and SHA256 in one streaming pass.

    Args:
        path: File to hash.
        chunk_size: Read block size in bytes.

    Returns:
        (md5_hex, sha256_hex)
    """
    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(chunk_size), b""):
            md5.update(block)
            sha256.update(block)
    return md5.hexdigest(), sha256.hexdigest()
