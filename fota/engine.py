# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Protocol engine: request dispatch for check, download, verify and resume.

The engine is transport-agnostic. A connection handler feeds it one request
line at a time together with the connection's ConnectionContext, and writes
back the bytes of the returned Reply. Protocol, session and data errors become
structured error replies; the engine never asks for the connection to close.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Union

from catalog.errors import ArtifactChangedError, ArtifactNotFoundError, CatalogError, ChunkRangeError
from catalog.versions import is_newer_version

from .config import ServerConfig
from .errors import (
    REQUEST_ERROR,
    ChunkReadError,
    FirmwareNotFoundError,
    FotaError,
    FrameError,
    ProtocolError,
    SessionError,
)
from .integrity import DigestKind, crc16
from .registry import SessionRegistry
from .session import TransferSession
from .wire import (
    PROTOCOL_VERSION,
    ChunkFrame,
    ChunkHeader,
    ChunkRequest,
    compress_payload,
    encode_control,
    parse_control,
)

if TYPE_CHECKING:
    from catalog.service import FirmwareCatalog
    from catalog.transfer_log import TransferLog

ACTIONS = ("check", "download", "verify", "resume")

_connection_ids = itertools.count(1)


@dataclass
class ConnectionContext:
    """Per-connection counters and bindings.

    Attributes:
        connection_id: Process-unique connection number.
        peer: Remote address, for logging.
        device_id: Last device id seen on this connection.
        session_id: Session bound by the last ``check``, ``resume`` or ``download``.
        requests: Download requests issued on this connection.
        retries: Download requests counted as retries.
        bytes_sent: Payload bytes written on this connection.
        served_high: Per session, the highest chunk end served on this connection.
    """

    connection_id: int = field(default_factory=lambda: next(_connection_ids))
    peer: str = ""
    device_id: str = ""
    session_id: Optional[str] = None
    requests: int = 0
    retries: int = 0
    bytes_sent: int = 0
    served_high: dict[str, int] = field(default_factory=dict)

    @property
    def retry_ratio(self) -> float:
        return self.retries / self.requests if self.requests else 0.0


@dataclass(frozen=True)
class ControlReply:
    """A one-line JSON reply."""

    payload: dict

    def to_bytes(self) -> bytes:
        return encode_control(self.payload)


@dataclass(frozen=True)
class ChunkReply:
    """A chunk header line followed by its length-prefixed payload."""

    frame: ChunkFrame

    def to_bytes(self) -> bytes:
        return self.frame.to_bytes()


Reply = Union[ControlReply, ChunkReply]


@dataclass
class EngineStats:
    connections: int = 0
    chunks_served: int = 0
    retries: int = 0
    successful_downloads: int = 0
    failed_downloads: int = 0
    bytes_served: int = 0


# --- Request field helpers --- #
def _field_str(req: dict, name: str, default: Optional[str] = None) -> str:
    value = req.get(name, default)
    if not isinstance(value, str) or not value:
        raise ProtocolError.MissingField(name, "non-empty string")
    return value


def _field_int(req: dict, name: str, default: Optional[int] = None) -> int:
    value = req.get(name, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ProtocolError.MissingField(name, "non-negative integer")
    return value


def _field_bool(req: dict, name: str) -> bool:
    value = req.get(name, False)
    if not isinstance(value, bool):
        raise ProtocolError.MissingField(name, "boolean")
    return value


class ProtocolEngine:
    """Server-side implementation of the chunked transfer protocol.

    Args:
        config: Protocol constants.
        catalog: Firmware source.
        registry: Shared session registry.
        transfer_log: Optional audit log receiving session status changes.
    """

    def __init__(
        self,
        config: ServerConfig,
        catalog: "FirmwareCatalog",
        registry: SessionRegistry,
        transfer_log: "Optional[TransferLog]" = None,
    ):
        self.config = config
        self.catalog = catalog
        self.registry = registry
        self.transfer_log = transfer_log
        self.stats = EngineStats()
        self._stats_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    # --- Bookkeeping --- #
    def _count(self, **deltas: int) -> None:
        with self._stats_lock:
            for name, delta in deltas.items():
                setattr(self.stats, name, getattr(self.stats, name) + delta)

    def stats_snapshot(self) -> dict:
        with self._stats_lock:
            out = dict(vars(self.stats))
        out["active_sessions"] = len(self.registry)
        return out

    def _log_transfer(self, session: TransferSession, status: str) -> None:
        if self.transfer_log is None:
            return
        try:
            self.transfer_log.record(
                session_id=session.session_id,
                device_id=session.device_id,
                version=session.version,
                status=status,
                size_bytes=session.size_bytes,
                last_offset=session.last_offset,
            )
        except Exception:
            self.logger.exception("Failed to write transfer log for session %s", session.session_id)

    def connection_opened(self, ctx: ConnectionContext) -> None:
        self._count(connections=1)
        self.logger.info("Device connected: %s (connection %d)", ctx.peer or "?", ctx.connection_id)

    def connection_lost(self, ctx: ConnectionContext) -> None:
        """Mark the session bound to a dropped connection as interrupted."""
        self.logger.info(
            "Device disconnected: %s (connection %d, %d requests, %d retries, %d bytes)",
            ctx.device_id or ctx.peer or "?",
            ctx.connection_id,
            ctx.requests,
            ctx.retries,
            ctx.bytes_sent,
        )
        if ctx.session_id is None:
            return
        if self.registry.mark_interrupted(ctx.session_id, ctx.connection_id):
            session = self.registry.get(ctx.session_id)
            if session is not None:
                self._log_transfer(session, "interrupted")

    def sessions_evicted(self, sessions: list[TransferSession]) -> None:
        """Sweeper callback: record evictions of unfinished sessions."""
        for session in sessions:
            self.logger.info("Session %s evicted (%s)", session.session_id, session.state.value)
            self._log_transfer(session, "evicted")

    # --- Dispatch --- #
    def handle_line(self, ctx: ConnectionContext, line: bytes) -> Reply:
        """Handle one request line and return the reply to send.

        Never raises for protocol, session or data errors; those are returned
        as structured error replies.
        """
        try:
            try:
                request = parse_control(line)
            except FrameError as ex:
                raise ProtocolError(ex.message) from ex
            return self.dispatch(ctx, request)
        except FotaError as ex:
            if ex.code == REQUEST_ERROR:
                self.logger.warning("Bad request on connection %d: %s", ctx.connection_id, ex.message)
            return ControlReply(ex.to_reply())
        except Exception as ex:
            self.logger.exception("Unhandled error on connection %d", ctx.connection_id)
            return ControlReply(FotaError(f"Internal server error: {ex}").to_reply())

    def dispatch(self, ctx: ConnectionContext, request: dict) -> Reply:
        action = request.get("action")
        if action not in ACTIONS:
            raise ProtocolError.UnknownAction(action)
        device = request.get("device")
        if isinstance(device, str) and device:
            ctx.device_id = device

        if action == "check":
            return ControlReply(
                self.check(ctx, _field_str(request, "device"), _field_str(request, "version", "0.0.0"))
            )
        if action == "download":
            req = ChunkRequest(
                session_id=_field_str(request, "sessionId"),
                offset=_field_int(request, "offset"),
                requested_size=_field_int(request, "size", self.config.default_chunk),
                compression_requested=_field_bool(request, "compression"),
                retry=_field_bool(request, "retry"),
            )
            return ChunkReply(self.download(ctx, req))
        if action == "verify":
            return ControlReply(
                self.verify(
                    ctx,
                    _field_str(request, "sessionId"),
                    _field_str(request, "hash"),
                    _field_str(request, "hashType", "md5"),
                )
            )
        return ControlReply(self.resume(ctx, _field_str(request, "sessionId")))

    # --- Handlers --- #
    def check(self, ctx: ConnectionContext, device_id: str, current_version: str) -> dict:
        """Resolve the latest firmware and create or resume the device's session.

        Raises:
            FirmwareNotFoundError: If the catalog is empty.
        """
        try:
            artifact = self.catalog.latest()
        except ArtifactNotFoundError as ex:
            raise FirmwareNotFoundError(str(ex)) from ex
        except CatalogError as ex:
            self.logger.error("Catalog unavailable: %s", ex)
            raise FotaError(f"Catalog unavailable: {ex}") from ex

        session, resumed = self.registry.create_or_resume(device_id, artifact, ctx.connection_id)
        ctx.session_id = session.session_id
        if not resumed:
            self._log_transfer(session, "in_progress")

        update = is_newer_version(artifact.version, current_version)
        self.logger.info(
            "Check from %s: current v%s, latest v%s (%d bytes), update=%s, resume=%d",
            device_id,
            current_version,
            artifact.version,
            artifact.size_bytes,
            update,
            session.last_offset,
        )
        return {
            "status": "success",
            "version": artifact.version,
            "name": artifact.name,
            "size": artifact.size_bytes,
            "md5": artifact.md5,
            "sha256": artifact.sha256,
            "sessionId": session.session_id,
            "chunkSize": session.chunk_size,
            "totalChunks": session.total_chunks,
            "resumeOffset": session.last_offset,
            "downloadedChunks": session.downloaded_chunk_count,
            "compressionSupported": True,
            "updateAvailable": update,
            "currentVersion": current_version,
            "resumed": resumed,
            "protocol": PROTOCOL_VERSION,
        }

    def _adapt_chunk_size(self, ctx: ConnectionContext, session: TransferSession) -> None:
        cfg = self.config
        if ctx.requests <= cfg.warmup_requests:
            return
        ratio = ctx.retry_ratio
        current = session.chunk_size
        if ratio > cfg.retry_ratio_threshold and current > cfg.min_chunk:
            new_size = self.registry.resize(session.session_id, current // 2)
            self.logger.warning(
                "Retry ratio %.2f on connection %d: chunk size %d -> %d",
                ratio,
                ctx.connection_id,
                current,
                new_size,
            )
        elif cfg.grow_back and ratio < cfg.recovery_ratio and current < cfg.default_chunk:
            new_size = self.registry.resize(session.session_id, min(current * 2, cfg.default_chunk))
            self.logger.info("Retry ratio %.2f recovered: chunk size %d -> %d", ratio, current, new_size)

    def download(self, ctx: ConnectionContext, request: ChunkRequest) -> ChunkFrame:
        """Serve one chunk of the session's artifact.

        Raises:
            SessionError: If the session is unknown.
            ChunkReadError: If the chunk cannot be read.
        """
        session = self.registry.get(request.session_id)
        if session is None:
            raise SessionError(request.session_id)
        if session.connection_id != ctx.connection_id:
            # download without check/resume on this connection
            session = self.registry.bind(session.session_id, ctx.connection_id)
        ctx.session_id = session.session_id

        ctx.requests += 1
        is_retry = request.retry or request.offset < ctx.served_high.get(session.session_id, 0)
        if is_retry:
            ctx.retries += 1
            self._count(retries=1)
        self._adapt_chunk_size(ctx, session)

        effective = self.config.clamp_chunk(min(request.requested_size, session.chunk_size))
        try:
            data, actual = self.catalog.chunk(session.firmware, request.offset, effective)
        except (ChunkRangeError, ArtifactChangedError, CatalogError, OSError) as ex:
            if not is_retry:
                ctx.retries += 1
                self._count(retries=1)
            self.logger.warning("Read error for session %s at offset %d: %s", session.session_id, request.offset, ex)
            raise ChunkReadError(str(ex), retryable=not isinstance(ex, ChunkRangeError)) from ex

        data_crc = crc16(data)
        payload, compressed = data, False
        if request.compression_requested and actual > self.config.compression_min_size:
            packed = compress_payload(data)
            if len(packed) < actual * self.config.compression_ratio:
                payload, compressed = packed, True

        total = session.size_bytes
        header = ChunkHeader.build(
            size=len(payload),
            offset=request.offset,
            data_crc16=data_crc,
            compressed=compressed,
            progress=(request.offset + actual) * 100 // total,
            chunk_id=request.offset // self.config.default_chunk,
        )

        self.registry.record_chunk(session.session_id, request.offset, actual)
        end = request.offset + actual
        if end > ctx.served_high.get(session.session_id, 0):
            ctx.served_high[session.session_id] = end
        ctx.bytes_sent += len(payload)
        self._count(chunks_served=1, bytes_served=len(payload))

        self.logger.debug(
            "Chunk %s: offset=%d size=%d->%d crc=%d comp=%s prog=%d%%",
            session.session_id,
            request.offset,
            actual,
            len(payload),
            data_crc,
            compressed,
            header.progress,
        )
        return ChunkFrame(header=header, payload=payload)

    def verify(self, ctx: ConnectionContext, session_id: str, received: str, hash_type: str = "md5") -> dict:
        """Compare a device's digest with the session artifact's.

        Raises:
            SessionError: If the session is unknown.
            ProtocolError: If ``hash_type`` is unsupported.
        """
        session = self.registry.get(session_id)
        if session is None:
            raise SessionError(session_id)
        try:
            kind = DigestKind.parse(hash_type)
        except ValueError as ex:
            raise ProtocolError(str(ex)) from ex

        expected = session.firmware.digest(kind)
        verified = received.lower() == expected.lower()
        if verified:
            self.registry.complete(session_id)
            self._count(successful_downloads=1)
            self._log_transfer(session, "ok")
            self.logger.info("Firmware verified for %s (%s, session %s)", session.device_id, kind.value, session_id)
        else:
            self._count(failed_downloads=1)
            self._log_transfer(session, "failed")
            self.logger.warning("Hash mismatch for %s (%s, session %s)", session.device_id, kind.value, session_id)

        return {
            "status": "success",
            "verified": verified,
            "expectedHash": expected,
            "receivedHash": received,
            "hashType": kind.value,
            "message": "Firmware integrity verified" if verified else "Hash mismatch detected",
        }

    def resume(self, ctx: ConnectionContext, session_id: str) -> dict:
        """Rebind a session to this connection and report its progress.

        Raises:
            SessionError: If the session is unknown.
        """
        session = self.registry.bind(session_id, ctx.connection_id)
        ctx.session_id = session_id
        self.logger.info(
            "Resume for %s: offset=%d, chunks=%d/%d",
            session.device_id,
            session.last_offset,
            session.downloaded_chunk_count,
            session.total_chunks,
        )
        return {
            "status": "success",
            "lastOffset": session.last_offset,
            "downloadedChunks": session.downloaded_chunk_count,
            "totalChunks": session.total_chunks,
            "resumeAvailable": True,
            "sessionId": session_id,
            "firmwareSize": session.size_bytes,
            "chunkSize": session.chunk_size,
        }
