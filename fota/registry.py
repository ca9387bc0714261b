# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Session registry and periodic eviction.

SessionRegistry owns every live TransferSession. Connection handlers and the
eviction sweeper share it, so every operation runs under one lock and the
session map itself is never handed out.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import TYPE_CHECKING, Callable, Optional

from .config import ServerConfig
from .errors import SessionError
from .session import SessionState, TransferSession, plan_chunks

if TYPE_CHECKING:
    from catalog.firmware_repository import FirmwareArtifact

SESSION_ID_BYTES = 8


def new_session_id() -> str:
    return secrets.token_hex(SESSION_ID_BYTES)


class SessionRegistry:
    """Thread-safe owner of all transfer sessions.

    Args:
        config: Chunk bounds and session timeouts.
        clock: Monotonic time source in seconds, injectable for tests.
    """

    def __init__(self, config: ServerConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._sessions: dict[str, TransferSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # --- Lookup --- #
    def _find_resumable_locked(self, device_id: str, version: str) -> Optional[TransferSession]:
        for session in self._sessions.values():
            if (
                session.device_id == device_id
                and session.version == version
                and session.state is not SessionState.COMPLETED
            ):
                return session
        return None

    def find_resumable(self, device_id: str, version: str) -> Optional[TransferSession]:
        """Return the non-completed session of ``device_id`` for ``version``, if any."""
        with self._lock:
            return self._find_resumable_locked(device_id, version)

    def get(self, session_id: str) -> Optional[TransferSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def _require(self, session_id: str) -> TransferSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(session_id)
        return session

    # --- Lifecycle --- #
    def create_or_resume(
        self,
        device_id: str,
        artifact: "FirmwareArtifact",
        connection_id: Optional[int] = None,
    ) -> tuple[TransferSession, bool]:
        """Resume the device's session for this artifact or start a new one.

        A non-completed session resumes only when it names the same version and
        the same artifact digest; any other non-completed session of the device
        is superseded and dropped, keeping at most one per device.

        Args:
            device_id: Device that issued ``check``.
            artifact: Snapshot returned by the catalog.
            connection_id: Connection to bind the session to.

        Returns:
            (session, resumed)
        """
        with self._lock:
            existing = self._find_resumable_locked(device_id, artifact.version)
            if existing is not None and existing.firmware.sha256 == artifact.sha256:
                existing.state = SessionState.ACTIVE
                existing.interrupted_at = None
                existing.connection_id = connection_id
                self.logger.info(
                    "Resuming session %s for %s v%s at offset %d",
                    existing.session_id,
                    device_id,
                    artifact.version,
                    existing.last_offset,
                )
                return existing, True

            superseded = [
                sid
                for sid, s in self._sessions.items()
                if s.device_id == device_id and s.state is not SessionState.COMPLETED
            ]
            for sid in superseded:
                old = self._sessions.pop(sid)
                self.logger.info("Session %s (v%s) superseded for %s", sid, old.version, device_id)

            session_id = new_session_id()
            while session_id in self._sessions:
                session_id = new_session_id()
            session = TransferSession(
                session_id=session_id,
                device_id=device_id,
                firmware=artifact,
                chunk_size=self.config.default_chunk,
                total_chunks=plan_chunks(artifact.size_bytes, self.config.default_chunk),
                started_at=self.clock(),
                connection_id=connection_id,
            )
            self._sessions[session_id] = session
            self.logger.info(
                "Created session %s for %s: %s (%d bytes, %d chunks)",
                session_id,
                device_id,
                artifact.name,
                artifact.size_bytes,
                session.total_chunks,
            )
            return session, False

    def bind(self, session_id: str, connection_id: Optional[int]) -> TransferSession:
        """Rebind a session to a new connection and clear INTERRUPTED.

        Raises:
            SessionError: If the session is unknown.
        """
        with self._lock:
            session = self._require(session_id)
            session.connection_id = connection_id
            if session.state is SessionState.INTERRUPTED:
                session.state = SessionState.ACTIVE
                session.interrupted_at = None
            return session

    def record_chunk(self, session_id: str, offset: int, size: int) -> TransferSession:
        with self._lock:
            session = self._require(session_id)
            session.record_chunk(offset, size)
            return session

    def resize(self, session_id: str, new_size: int) -> int:
        """Set a session's chunk size within ``[min_chunk, max_chunk]``."""
        with self._lock:
            session = self._require(session_id)
            return session.resize(new_size, self.config.min_chunk, self.config.max_chunk)

    def complete(self, session_id: str) -> TransferSession:
        with self._lock:
            session = self._require(session_id)
            session.state = SessionState.COMPLETED
            return session

    def mark_interrupted(self, session_id: str, connection_id: Optional[int] = None) -> bool:
        """Flag a session whose connection dropped.

        When ``connection_id`` is given, the session is only interrupted while
        still bound to that connection. COMPLETED sessions are left alone.

        Returns:
            bool: True if the session was marked.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state is SessionState.COMPLETED:
                return False
            if connection_id is not None and session.connection_id != connection_id:
                return False
            session.state = SessionState.INTERRUPTED
            session.interrupted_at = self.clock()
            session.connection_id = None
        self.logger.info("Session %s interrupted at offset %d", session_id, session.last_offset)
        return True

    # --- Eviction --- #
    def _expired(self, session: TransferSession, now: float) -> bool:
        if session.state is SessionState.COMPLETED:
            return True
        if (
            session.state is SessionState.INTERRUPTED
            and session.interrupted_at is not None
            and now - session.interrupted_at > self.config.interrupted_timeout
        ):
            return True
        return now - session.started_at > self.config.session_timeout

    def evict_expired(self, now: Optional[float] = None) -> list[TransferSession]:
        """Remove completed and timed-out sessions in one pass; returns them."""
        if now is None:
            now = self.clock()
        with self._lock:
            evicted = [s for s in self._sessions.values() if self._expired(s, now)]
            for session in evicted:
                del self._sessions[session.session_id]
        if evicted:
            self.logger.info("Evicted %d session(s)", len(evicted))
        return evicted

    def sweep(self, now: Optional[float] = None) -> list[str]:
        """Evict expired sessions and return their ids."""
        return [s.session_id for s in self.evict_expired(now)]

    def snapshot(self) -> list[dict]:
        with self._lock:
            return [s.snapshot() for s in self._sessions.values()]


class SessionSweeper:
    """Daemon thread running ``registry.evict_expired`` every ``interval`` seconds.

    Args:
        registry: Registry to sweep.
        interval: Seconds between passes.
        on_evict: Called with the evicted sessions after each non-empty pass.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        interval: float,
        on_evict: Optional[Callable[[list[TransferSession]], None]] = None,
    ):
        self.registry = registry
        self.interval = interval
        self.on_evict = on_evict
        self.logger = logging.getLogger(__name__)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> list[TransferSession]:
        evicted = self.registry.evict_expired()
        if evicted and self.on_evict is not None:
            try:
                self.on_evict(evicted)
            except Exception:
                self.logger.exception("Eviction callback failed")
        return evicted

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="fota-sweeper", daemon=True)
        self._thread.start()
        self.logger.debug("Session sweeper started (interval %.0fs)", self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
