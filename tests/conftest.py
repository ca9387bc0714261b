"""Shared fixtures: temporary catalog, fake clock, loopback transport, recording flash."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional

import pytest

from catalog.service import FirmwareCatalog
from device.errors import FlashError, TransportError
from device.flash import FlashTarget
from device.transport import Transport
from fota.config import ServerConfig
from fota.engine import ConnectionContext, ProtocolEngine
from fota.registry import SessionRegistry


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_firmware(size: int, seed: int = 11) -> bytes:
    """Deterministic bytes that include plenty of newline (0x0A) bytes."""
    return bytes((i * 37 + seed) % 256 for i in range(size))


def store(catalog: FirmwareCatalog, name: str, data: bytes, mtime: Optional[float] = None) -> Path:
    path = catalog.firmware_dir / name
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture()
def firmware_bytes() -> bytes:
    return make_firmware(2000)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config(tmp_path: Path) -> ServerConfig:
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        firmware_dir=tmp_path / "firmware",
        db_path=tmp_path / "fota.db",
    )


@pytest.fixture()
def catalog(config: ServerConfig) -> FirmwareCatalog:
    return FirmwareCatalog(config.firmware_dir, config.db_path)


@pytest.fixture()
def loaded_catalog(catalog: FirmwareCatalog, firmware_bytes: bytes) -> FirmwareCatalog:
    store(catalog, "app_v1.1.0.bin", firmware_bytes)
    return catalog


@pytest.fixture()
def registry(config: ServerConfig, clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(config, clock=clock)


@pytest.fixture()
def engine(config: ServerConfig, loaded_catalog: FirmwareCatalog, registry: SessionRegistry) -> ProtocolEngine:
    return ProtocolEngine(config, loaded_catalog, registry)


class LoopbackTransport(Transport):
    """In-memory transport that feeds request lines to a real ProtocolEngine.

    Fault hooks:
        fail_connects: Number of upcoming ``connect()`` calls that fail.
        drop_after_chunks: Drop the link after this many chunk replies.
        corrupt_chunks: Number of upcoming chunk payloads to corrupt in transit.
        on_request: Called with each decoded request line before it is handled.
    """

    def __init__(self, engine: ProtocolEngine):
        super().__init__()
        self.engine = engine
        self.ctx: Optional[ConnectionContext] = None
        self._pending = bytearray()
        self.fail_connects = 0
        self.drop_after_chunks: Optional[int] = None
        self.corrupt_chunks = 0
        self.connects = 0
        self.requests: list[bytes] = []
        self.on_request: Optional[Callable[[bytes], None]] = None

    def connect(self) -> None:
        if self.fail_connects:
            self.fail_connects -= 1
            raise TransportError("connect refused")
        self.ctx = ConnectionContext(peer="loopback")
        self.engine.connection_opened(self.ctx)
        self.connects += 1

    def close(self) -> None:
        self._rx.clear()
        self._pending.clear()
        if self.ctx is not None:
            self.engine.connection_lost(self.ctx)
            self.ctx = None

    def is_connected(self) -> bool:
        return self.ctx is not None

    def send(self, data: bytes, timeout: float) -> None:
        if self.ctx is None:
            raise TransportError("not connected")
        for line in data.split(b"\n"):
            if not line:
                continue
            self.requests.append(line)
            if self.on_request is not None:
                self.on_request(line)
            out = self.engine.handle_line(self.ctx, line).to_bytes()
            if b'"h":' in out.split(b"\n", 1)[0]:
                out = self._chunk_reply(out)
                if out is None:
                    return
            self._pending += out

    def _chunk_reply(self, out: bytes) -> Optional[bytes]:
        if self.drop_after_chunks is not None:
            if self.drop_after_chunks == 0:
                self.drop_after_chunks = None
                self.close()
                raise TransportError("link dropped")
            self.drop_after_chunks -= 1
        if self.corrupt_chunks:
            self.corrupt_chunks -= 1
            head, payload = out.split(b"\n", 1)
            payload = bytes([payload[0] ^ 0xFF]) + payload[1:]
            out = head + b"\n" + payload
        return out

    def _read_some(self, timeout: float) -> bytes:
        if self.ctx is None:
            raise TransportError("not connected")
        data = bytes(self._pending)
        self._pending.clear()
        return data


class RecordingFlash(FlashTarget):
    """In-memory flash target; ``fail_after`` makes a write fail past that many bytes."""

    def __init__(self, active: bytes = b"old-image", fail_after: Optional[int] = None):
        self.active = active
        self.staged: Optional[bytearray] = None
        self.expected: Optional[str] = None
        self.fail_after = fail_after
        self.calls: list[str] = []
        self.size = 0

    def begin_update(self, size: int) -> None:
        self.calls.append("begin")
        self.staged = bytearray()
        self.size = size

    def write(self, data: bytes) -> int:
        if self.staged is None:
            raise FlashError("not started")
        if self.fail_after is not None and len(self.staged) + len(data) > self.fail_after:
            raise FlashError("flash write failed")
        self.staged += data
        return len(data)

    def set_expected_digest(self, hex_digest: str) -> None:
        self.expected = hex_digest

    def end(self) -> bool:
        self.calls.append("end")
        if self.staged is None or len(self.staged) != self.size:
            return False
        self.active = bytes(self.staged)
        self.staged = None
        return True

    def abort(self) -> None:
        self.calls.append("abort")
        self.staged = None
