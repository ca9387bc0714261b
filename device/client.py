"""Device-side update client.

DeviceTransferClient drives the chunked transfer protocol from the device:

    IDLE -> CHECKING -> DOWNLOADING <-> RECONNECTING -> VERIFYING
         -> APPLYING -> REBOOTING            (or FAILED at any point)

Requests are strictly sequential. Each chunk is validated (header CRC, data
CRC), optionally decompressed, streamed through a bounded staging buffer into
the flash target and folded into a rolling digest, so the image is never held
in memory. Transport failures lead to RECONNECTING and a ``resume``; integrity,
flash and exhausted-retry failures abort the staged image and end in FAILED.
Cancellation is honoured only between chunks.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from catalog.versions import is_newer_version
from device.config import DeviceConfig
from device.errors import (
    DeviceError,
    FlashError,
    IntegrityError,
    ServerRejected,
    TransportError,
    UpdateCancelled,
)
from device.flash import FlashTarget, StagingBuffer
from device.transport import Transport
from fota.errors import INVALID_SESSION, NO_FIRMWARE, FrameError
from fota.integrity import IncrementalDigest
from fota.wire import ChunkFrame, FrameReader, decode_payload, encode_control, verify_chunk

T = TypeVar("T")


class Phase(str, enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    RECONNECTING = "reconnecting"
    VERIFYING = "verifying"
    APPLYING = "applying"
    REBOOTING = "rebooting"
    FAILED = "failed"


class UpdateResult(str, enum.Enum):
    NO_UPDATE = "no_update"
    APPLIED = "applied"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DeviceDownloadState:
    """Progress of the current update attempt.

    Attributes:
        current_offset: Bytes received, validated and staged.
        total_size: Size of the image being downloaded.
        expected_digest: Declared digest of ``hash_type``.
        running_digest: Rolling digest over the staged bytes.
        phase: Current state machine phase.
        session_id: Server session of this attempt.
        chunk_size: Chunk size requested from the server.
        version: Version being downloaded.
        attempts: Attempts started by the current ``run_update``.
        error: Reason of the last failure, if any.
    """

    current_offset: int = 0
    total_size: int = 0
    expected_digest: str = ""
    running_digest: IncrementalDigest = field(default_factory=IncrementalDigest)
    phase: Phase = Phase.IDLE
    session_id: Optional[str] = None
    chunk_size: int = 0
    version: str = ""
    attempts: int = 0
    error: Optional[str] = None


class _SessionLost(DeviceError):
    """Server no longer knows the session; the transfer restarts from CHECKING."""


class DeviceTransferClient:
    """Consumer side of the chunked transfer protocol.

    Args:
        config: Device settings.
        transport: Link to the server.
        flash: Update partition writer.
        restart: Called after a committed update to reboot the device.
        cancel_event: Set by the caller to stop between chunks.
        progress_cb: Called with ``(done_bytes, total_bytes)`` after each chunk.
    """

    def __init__(
        self,
        config: DeviceConfig,
        transport: Transport,
        flash: FlashTarget,
        restart: Optional[Callable[[], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ):
        self.config = config
        self.transport = transport
        self.flash = flash
        self.restart = restart
        self.cancel_event = cancel_event or threading.Event()
        self.progress_cb = progress_cb
        self.reader = FrameReader(transport)
        self.staging = StagingBuffer(flash, config.buffer_size)
        self.state = DeviceDownloadState(running_digest=IncrementalDigest(config.hash_type))
        self.logger = logging.getLogger(__name__)

    # --- Phases and links --- #
    def _set_phase(self, phase: Phase) -> None:
        if phase is not self.state.phase:
            self.logger.debug("Phase %s -> %s", self.state.phase.value, phase.value)
        self.state.phase = phase

    def _check_cancel(self) -> None:
        if self.cancel_event.is_set():
            raise UpdateCancelled("update cancelled")

    def _backoff(self, attempt: int) -> None:
        if self.cancel_event.wait(self.config.reconnect_backoff * attempt):
            raise UpdateCancelled("update cancelled during reconnect")

    def _ensure_connected(self) -> None:
        if not self.transport.is_connected():
            self.transport.connect()

    def _request(self, message: dict) -> dict | ChunkFrame:
        """Send one request and read its reply.

        A reply that cannot be framed leaves the stream position unknown, so it
        is reported as a transport failure and the link is dropped.
        """
        self.transport.send(encode_control(message), self.config.request_timeout)
        try:
            return self.reader.read_message(self.config.request_timeout, self.config.data_timeout)
        except FrameError as ex:
            self.transport.close()
            raise TransportError(f"Undecodable reply: {ex.message}") from ex

    def _control(self, message: dict) -> dict:
        reply = self._request(message)
        if isinstance(reply, ChunkFrame):
            self.transport.close()
            raise TransportError("Chunk frame received where a control reply was expected")
        if reply.get("status") == "error":
            raise ServerRejected(reply.get("code", "ERROR"), reply.get("message", ""), bool(reply.get("retryable")))
        return reply

    def _base_request(self, action: str, **fields) -> dict:
        msg = {"device": self.config.device_id, "action": action}
        msg.update(fields)
        return msg

    def _with_link(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` on a connected link, reconnecting on transport failures."""
        last: Optional[TransportError] = None
        for attempt in range(self.config.max_reconnects + 1):
            self._check_cancel()
            try:
                self._ensure_connected()
                return fn()
            except TransportError as ex:
                last = ex
                self.transport.close()
                self.logger.warning("Transport error (attempt %d): %s", attempt + 1, ex)
                if attempt < self.config.max_reconnects:
                    self._backoff(attempt + 1)
        raise TransportError(f"Link unavailable after {self.config.max_reconnects} reconnects") from last

    # --- CHECKING --- #
    def check_for_update(self) -> Optional[dict]:
        """Ask the server for the latest firmware.

        Returns:
            The check reply when a newer version is offered, otherwise None.

        Raises:
            TransportError: If the server cannot be reached.
            ServerRejected: If the server reports an error (e.g. NO_FIRMWARE).
        """
        self._set_phase(Phase.CHECKING)
        reply = self._with_link(
            lambda: self._control(self._base_request("check", version=self.config.current_version))
        )
        available = reply.get("updateAvailable")
        if available is None:
            available = is_newer_version(str(reply.get("version", "")), self.config.current_version)
        if not available:
            self.logger.info("Firmware up to date (v%s)", self.config.current_version)
            self._set_phase(Phase.IDLE)
            return None
        self.logger.info(
            "Update available: v%s -> v%s (%s bytes)",
            self.config.current_version,
            reply.get("version"),
            reply.get("size"),
        )
        return reply

    # --- DOWNLOADING --- #
    def _start_download(self, reply: dict) -> None:
        try:
            total = int(reply["size"])
            expected = str(reply[self.config.hash_type.lower()]).lower()
            session_id = str(reply["sessionId"])
        except (KeyError, TypeError, ValueError) as ex:
            raise ServerRejected("BAD_REPLY", f"incomplete check reply: {ex}") from ex

        s = self.state
        s.total_size = total
        s.expected_digest = expected
        s.session_id = session_id
        s.version = str(reply.get("version", ""))
        s.chunk_size = int(reply.get("chunkSize") or 512)
        s.running_digest = IncrementalDigest(self.config.hash_type)

        self.staging.reset()
        self.flash.begin_update(total)
        self.flash.set_expected_digest(expected)

        # a fresh stage holds no bytes, so the transfer restarts from 0
        resume_offset = int(reply.get("resumeOffset") or 0)
        s.current_offset = 0
        if resume_offset:
            self.logger.info("Server session at offset %d; local stage empty, starting at 0", resume_offset)
        self._set_phase(Phase.DOWNLOADING)

    def _reconnect(self) -> None:
        """RECONNECTING: reopen the link, ``resume`` and realign the offset.

        The server's ``lastOffset`` is checked, not adopted: it counts bytes
        served, so it may run ahead of what reached the flash. A value below
        the local offset means the session was lost.
        """
        self._set_phase(Phase.RECONNECTING)
        s = self.state

        def resume() -> dict:
            return self._control(self._base_request("resume", sessionId=s.session_id))

        self.transport.close()
        self._backoff(1)
        try:
            reply = self._with_link(resume)
        except ServerRejected as ex:
            if ex.code == INVALID_SESSION:
                raise _SessionLost(str(ex)) from ex
            raise

        server_offset = int(reply.get("lastOffset", 0))
        if server_offset < s.current_offset:
            raise _SessionLost(f"server offset {server_offset} behind local offset {s.current_offset}")
        if server_offset > s.current_offset:
            self.logger.info("Server at %d, local at %d; continuing from local offset", server_offset, s.current_offset)
        if reply.get("chunkSize"):
            s.chunk_size = int(reply["chunkSize"])
        self.logger.info("Resumed session %s at offset %d", s.session_id, s.current_offset)
        self._set_phase(Phase.DOWNLOADING)

    def _fetch_chunk(self, retry: bool) -> ChunkFrame:
        s = self.state
        msg = self._base_request(
            "download",
            sessionId=s.session_id,
            offset=s.current_offset,
            size=s.chunk_size,
            compression=self.config.compression,
        )
        if retry:
            msg["retry"] = True
        reply = self._request(msg)
        if isinstance(reply, ChunkFrame):
            return reply
        if reply.get("status") == "error":
            raise ServerRejected(reply.get("code", "ERROR"), reply.get("message", ""), bool(reply.get("retryable")))
        self.transport.close()
        raise TransportError("Control reply received where a chunk was expected")

    def _download(self) -> None:
        s = self.state
        chunk_retries = 0
        stalls = 0
        while s.current_offset < s.total_size:
            self._check_cancel()
            try:
                self._ensure_connected()
                frame = self._fetch_chunk(retry=chunk_retries > 0)
            except TransportError as ex:
                stalls += 1
                if stalls > self.config.max_reconnects:
                    raise
                self.logger.warning("Transport lost at offset %d: %s", s.current_offset, ex)
                self._reconnect()
                continue
            except ServerRejected as ex:
                if ex.code == INVALID_SESSION:
                    raise _SessionLost(str(ex)) from ex
                if not ex.retryable:
                    raise
                chunk_retries += 1
                if chunk_retries > self.config.max_chunk_retries:
                    raise
                self.logger.warning("Retryable server error at offset %d: %s", s.current_offset, ex)
                continue

            data = self._validate(frame)
            if data is None:
                chunk_retries += 1
                if chunk_retries > self.config.max_chunk_retries:
                    raise IntegrityError(f"Chunk at offset {s.current_offset} failed validation repeatedly")
                continue

            self.staging.write(data)
            s.running_digest.update(data)
            s.current_offset += len(data)
            chunk_retries = 0
            stalls = 0
            if self.progress_cb is not None:
                self.progress_cb(s.current_offset, s.total_size)

    def _validate(self, frame: ChunkFrame) -> Optional[bytes]:
        """Decode a chunk; None when it must be requested again."""
        s = self.state
        header = frame.header
        if header.offset != s.current_offset:
            self.logger.warning("Chunk offset %d, expected %d", header.offset, s.current_offset)
            return None
        try:
            data = decode_payload(header, frame.payload)
        except FrameError as ex:
            self.logger.warning("%s", ex.message)
            return None
        if not verify_chunk(header, data):
            self.logger.warning("CRC mismatch at offset %d, re-requesting", header.offset)
            return None
        if not data or s.current_offset + len(data) > s.total_size:
            self.logger.warning("Chunk at %d has invalid length %d", header.offset, len(data))
            return None
        return data

    # --- VERIFYING / APPLYING --- #
    def _verify_and_apply(self) -> None:
        s = self.state
        self._set_phase(Phase.VERIFYING)
        self.staging.flush()
        local = s.running_digest.hexdigest()
        if local != s.expected_digest:
            raise IntegrityError(f"Image digest {local} != declared {s.expected_digest}")

        reply = self._with_link(
            lambda: self._control(
                self._base_request("verify", sessionId=s.session_id, hash=local, hashType=self.config.hash_type)
            )
        )
        if not reply.get("verified"):
            raise IntegrityError(f"Server rejected digest: {reply.get('message', '')}")

        self._set_phase(Phase.APPLYING)
        if not self.flash.end():
            raise FlashError("Flash target refused to commit the image")
        self.logger.info("Firmware v%s applied", s.version)

    def _reboot(self) -> None:
        self._set_phase(Phase.REBOOTING)
        self.transport.close()
        if self.restart is not None:
            self.restart()

    # --- Entry point --- #
    def _attempt(self) -> UpdateResult:
        self.state.attempts += 1
        try:
            reply = self.check_for_update()
        except ServerRejected as ex:
            if ex.code != NO_FIRMWARE:
                raise
            self.logger.info("Server has no firmware to offer")
            self._set_phase(Phase.IDLE)
            return UpdateResult.NO_UPDATE
        if reply is None:
            return UpdateResult.NO_UPDATE
        self._start_download(reply)
        self._download()
        self._verify_and_apply()
        self._reboot()
        return UpdateResult.APPLIED

    def _abort_stage(self) -> None:
        self.staging.reset()
        try:
            self.flash.abort()
        except FlashError as ex:
            self.logger.error("Abort failed: %s", ex)

    def run_update(self) -> UpdateResult:
        """Run one complete update; never raises for link, flash or integrity failures."""
        self.state.attempts = 0
        self.state.error = None
        restarts = 0
        try:
            while True:
                try:
                    return self._attempt()
                except _SessionLost as ex:
                    self._abort_stage()
                    restarts += 1
                    if restarts > self.config.max_reconnects:
                        return self._fail(ex)
                    self.logger.warning("Session lost (%s); restarting transfer", ex)
        except UpdateCancelled:
            self._abort_stage()
            self.logger.info("Update cancelled at offset %d", self.state.current_offset)
            self._set_phase(Phase.IDLE)
            return UpdateResult.CANCELLED
        except DeviceError as ex:
            return self._fail(ex)
        finally:
            if self.state.phase is not Phase.REBOOTING:
                self.transport.close()

    def _fail(self, ex: Exception) -> UpdateResult:
        self._abort_stage()
        self.state.error = str(ex)
        self._set_phase(Phase.FAILED)
        self.logger.error("Update failed in attempt %d: %s", self.state.attempts, ex)
        return UpdateResult.FAILED
