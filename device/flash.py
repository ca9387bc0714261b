"""Flash-write primitive and bounded staging buffer.

FlashTarget is the platform's OTA write interface. FileFlashTarget is a
host-side implementation that stages the new image next to the active one and
swaps it in atomically on ``end()``, so an aborted or failed update leaves the
active image untouched.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Optional

from device.errors import FlashError
from fota.integrity import IncrementalDigest


class FlashTarget(ABC):
    """Write interface of the update partition."""

    @abstractmethod
    def begin_update(self, size: int) -> None:
        """Prepare to receive ``size`` bytes. Raises FlashError when out of space."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write ``data``; returns the number of bytes accepted."""

    @abstractmethod
    def set_expected_digest(self, hex_digest: str) -> None: ...

    @abstractmethod
    def end(self) -> bool:
        """Finalize and commit the staged image; False if it cannot be committed."""

    @abstractmethod
    def abort(self) -> None:
        """Discard the staged image. Safe to call at any time."""


class FileFlashTarget(FlashTarget):
    """Stage to ``<active>.staged`` and replace ``active_path`` on commit.

    Args:
        active_path: File holding the running image.
        hash_type: Digest kind checked against ``set_expected_digest`` on ``end()``.
        max_size: Capacity of the update partition, or None for unbounded.
    """

    def __init__(self, active_path: str | Path, hash_type: str = "md5", max_size: Optional[int] = None):
        self.active_path = Path(active_path)
        self.staged_path = self.active_path.with_name(self.active_path.name + ".staged")
        self.hash_type = hash_type
        self.max_size = max_size
        self.logger = logging.getLogger(__name__)
        self._fh: Optional[BinaryIO] = None
        self._digest: Optional[IncrementalDigest] = None
        self._expected: Optional[str] = None
        self._size = 0
        self.written = 0

    @property
    def in_progress(self) -> bool:
        return self._fh is not None

    def begin_update(self, size: int) -> None:
        if self.max_size is not None and size > self.max_size:
            raise FlashError(f"Image of {size} bytes exceeds partition size {self.max_size}")
        self.abort()
        try:
            self.staged_path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.staged_path, "wb")
        except OSError as ex:
            raise FlashError(f"Cannot open staging file {self.staged_path}: {ex}") from ex
        self._digest = IncrementalDigest(self.hash_type)
        self._expected = None
        self._size = size
        self.written = 0

    def write(self, data: bytes) -> int:
        if self._fh is None:
            raise FlashError("write without begin_update")
        if self.written + len(data) > self._size:
            raise FlashError(f"write past declared size {self._size}")
        try:
            n = self._fh.write(data)
        except OSError as ex:
            raise FlashError(f"Staging write failed: {ex}") from ex
        self._digest.update(data[:n])
        self.written += n
        return n

    def set_expected_digest(self, hex_digest: str) -> None:
        self._expected = hex_digest.lower()

    def end(self) -> bool:
        if self._fh is None:
            raise FlashError("end without begin_update")
        if self.written != self._size:
            self.logger.error("Staged %d of %d bytes, refusing to commit", self.written, self._size)
            return False
        actual = self._digest.hexdigest()
        if self._expected is not None and actual != self._expected:
            self.logger.error("Staged image digest %s != expected %s", actual, self._expected)
            return False
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
            self._fh.close()
            self._fh = None
            os.replace(self.staged_path, self.active_path)
        except OSError as ex:
            raise FlashError(f"Commit failed: {ex}") from ex
        self.logger.info("Committed %d byte image to %s", self.written, self.active_path)
        return True

    def abort(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError as ex:
                self.logger.debug("Error closing staging file: %s", ex)
            self._fh = None
        self.staged_path.unlink(missing_ok=True)
        self.written = 0


class StagingBuffer:
    """Bounded RAM buffer in front of a FlashTarget.

    Bytes are flushed in blocks of ``size``; a block the target does not accept
    completely raises FlashError.

    Args:
        target: Flash target receiving the blocks.
        size: Buffer capacity in bytes.
    """

    def __init__(self, target: FlashTarget, size: int = 1024):
        if size <= 0:
            raise ValueError("staging buffer size must be positive")
        self.target = target
        self.size = size
        self._buf = bytearray()
        self.flushed = 0

    def __len__(self) -> int:
        return len(self._buf)

    def _write_block(self, block: bytes) -> None:
        n = self.target.write(block)
        if n != len(block):
            raise FlashError(f"Short flash write: {n} of {len(block)} bytes")
        self.flushed += n

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            room = self.size - len(self._buf)
            self._buf += view[:room]
            view = view[room:]
            if len(self._buf) >= self.size:
                self._write_block(bytes(self._buf))
                self._buf.clear()

    def flush(self) -> None:
        if self._buf:
            self._write_block(bytes(self._buf))
            self._buf.clear()

    def reset(self) -> None:
        self._buf.clear()
        self.flushed = 0
