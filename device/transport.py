"""Byte transports between the device and the FOTA server.

A Transport offers blocking ``send``, ``receive_until`` and ``receive_exact``
calls, each bounded by a timeout. Subclasses only provide the raw link
(``_read_some`` and ``send``); line and length framing over the receive buffer
lives here, so the hybrid framing reader behaves the same over TCP and over an
AT-command modem.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""

from __future__ import annotations

import logging
import socket
import time
from abc import ABC, abstractmethod

from device.errors import TransportError, TransportTimeout

MAX_LINE_BYTES = 64 * 1024


class Transport(ABC):
    """Blocking byte stream with an internal receive buffer."""

    def __init__(self):
        self._rx = bytearray()
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    def connect(self) -> None:
        """Open the link. Raises TransportError on failure."""

    @abstractmethod
    def close(self) -> None:
        """Close the link; safe to call when already closed."""

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def send(self, data: bytes, timeout: float) -> None:
        """Write all of ``data`` or raise TransportError / TransportTimeout."""

    @abstractmethod
    def _read_some(self, timeout: float) -> bytes:
        """Return at least one received byte, blocking up to ``timeout``.

        Returns b"" on timeout; raises TransportError when the link is gone.
        """

    def discard_input(self) -> None:
        self._rx.clear()

    def _fill(self, deadline: float) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransportTimeout("receive timed out")
        data = self._read_some(remaining)
        if not data:
            raise TransportTimeout("receive timed out")
        self._rx.extend(data)

    def receive_until(self, delimiter: bytes, timeout: float) -> bytes:
        """Return bytes up to ``delimiter`` (stripped).

        Raises:
            TransportTimeout: If no delimiter arrives within ``timeout``.
            TransportError: If the link closes or the line grows past MAX_LINE_BYTES.
        """
        deadline = time.monotonic() + timeout
        start = 0
        while True:
            idx = self._rx.find(delimiter, start)
            if idx >= 0:
                line = bytes(self._rx[:idx])
                del self._rx[: idx + len(delimiter)]
                return line
            if len(self._rx) > MAX_LINE_BYTES:
                raise TransportError(f"line exceeds {MAX_LINE_BYTES} bytes")
            start = max(0, len(self._rx) - len(delimiter) + 1)
            self._fill(deadline)

    def receive_exact(self, size: int, timeout: float) -> bytes:
        """Return exactly ``size`` bytes, whatever they contain.

        Raises:
            TransportTimeout: If fewer than ``size`` bytes arrive within ``timeout``.
        """
        deadline = time.monotonic() + timeout
        while len(self._rx) < size:
            self._fill(deadline)
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data


class TcpTransport(Transport):
    """Plain TCP socket transport.

    Args:
        host: Server host name or address.
        port: Server TCP port.
        connect_timeout: Seconds allowed for the TCP handshake.
    """

    def __init__(self, host: str, port: int, connect_timeout: float = 10.0):
        super().__init__()
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self._sock: socket.socket | None = None

    def connect(self) -> None:
        self.close()
        try:
            self._sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except socket.timeout as ex:
            raise TransportTimeout(f"Connect to {self.host}:{self.port} timed out") from ex
        except OSError as ex:
            raise TransportError(f"Connect to {self.host}:{self.port} failed: {ex}") from ex
        self.logger.info("Connected to %s:%s", self.host, self.port)

    def close(self) -> None:
        self._rx.clear()
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError as ex:
            self.logger.debug("Error closing socket: %s", ex)
        self._sock = None

    def is_connected(self) -> bool:
        return self._sock is not None

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise TransportError("not connected")
        return self._sock

    def send(self, data: bytes, timeout: float) -> None:
        sock = self._require_socket()
        try:
            sock.settimeout(timeout)
            sock.sendall(data)
        except socket.timeout as ex:
            raise TransportTimeout("send timed out") from ex
        except OSError as ex:
            self.close()
            raise TransportError(f"send failed: {ex}") from ex

    def _read_some(self, timeout: float) -> bytes:
        sock = self._require_socket()
        try:
            sock.settimeout(timeout)
            data = sock.recv(4096)
        except socket.timeout:
            return b""
        except OSError as ex:
            self.close()
            raise TransportError(f"receive failed: {ex}") from ex
        if not data:
            self.close()
            raise TransportError("connection closed by server")
        return data
