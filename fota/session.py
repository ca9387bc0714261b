# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Per-device transfer session state."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from catalog.firmware_repository import FirmwareArtifact


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"


def plan_chunks(size_bytes: int, default_chunk: int) -> int:
    """Number of ``default_chunk`` sized chunks covering ``size_bytes`` (at least 1)."""
    return max(1, math.ceil(size_bytes / default_chunk))


@dataclass
class TransferSession:
    """Server-tracked state of one device's transfer of one firmware version.

    Sessions are owned by the SessionRegistry and only mutated under its lock.

    Attributes:
        session_id: Opaque 16 hex character identifier.
        device_id: Device that issued ``check``.
        firmware: Artifact snapshot taken at ``check`` time.
        chunk_size: Current server-side chunk size, kept within bounds.
        total_chunks: ``ceil(size / default_chunk)``.
        last_offset: High-water mark of bytes served; never decreases.
        downloaded_chunk_count: Chunks served over the session's life.
        state: ACTIVE, INTERRUPTED or COMPLETED.
        started_at: Clock value at creation.
        interrupted_at: Clock value of the last interruption, or None.
        connection_id: Connection the session is bound to, or None.
    """

    session_id: str
    device_id: str
    firmware: "FirmwareArtifact"
    chunk_size: int
    total_chunks: int
    started_at: float
    last_offset: int = 0
    downloaded_chunk_count: int = 0
    state: SessionState = SessionState.ACTIVE
    interrupted_at: Optional[float] = None
    connection_id: Optional[int] = None

    @property
    def version(self) -> str:
        return self.firmware.version

    @property
    def size_bytes(self) -> int:
        return self.firmware.size_bytes

    def record_chunk(self, offset: int, size: int) -> None:
        """Account for a served chunk ``[offset, offset + size)``."""
        end = offset + size
        if end > self.last_offset:
            self.last_offset = end
        self.downloaded_chunk_count += 1

    def resize(self, new_size: int, lo: int, hi: int) -> int:
        """Set the chunk size, clamped to ``[lo, hi]``; returns the stored size."""
        self.chunk_size = max(lo, min(hi, new_size))
        return self.chunk_size

    def progress_percent(self, offset: Optional[int] = None) -> int:
        """Integer percent of the artifact covered up to ``offset`` (default ``last_offset``)."""
        if self.size_bytes <= 0:
            return 100
        done = self.last_offset if offset is None else offset
        return min(100, done * 100 // self.size_bytes)

    def snapshot(self) -> dict:
        """Plain dict view for logging and listings."""
        return {
            "sessionId": self.session_id,
            "device": self.device_id,
            "version": self.version,
            "name": self.firmware.name,
            "state": self.state.value,
            "chunkSize": self.chunk_size,
            "lastOffset": self.last_offset,
            "downloadedChunks": self.downloaded_chunk_count,
            "totalChunks": self.total_chunks,
            "progress": self.progress_percent(),
        }
