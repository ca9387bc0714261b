# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Threaded TCP listener for the chunked transfer protocol.

Each accepted connection runs in its own thread with its own
ConnectionContext, so a slow device only ever blocks on its own socket.
"""

from __future__ import annotations

import logging
import socket
import socketserver
from typing import Optional

from catalog.service import FirmwareCatalog
from catalog.transfer_log import TransferLog

from .config import ServerConfig
from .engine import ConnectionContext, ControlReply, ProtocolEngine
from .errors import ProtocolError
from .registry import SessionRegistry, SessionSweeper
from .wire import DELIMITER

logger = logging.getLogger(__name__)


class FotaRequestHandler(socketserver.StreamRequestHandler):
    """Reads newline-terminated requests and writes the engine's replies."""

    server: "FotaTCPServer"

    def setup(self):
        self.timeout = self.server.config.connection_timeout
        super().setup()

    def _read_line(self) -> Optional[bytes]:
        """Read one request line; None on EOF.

        Raises:
            ProtocolError: If the line exceeds ``max_line_bytes``. The rest of
                the line is discarded first.
        """
        limit = self.server.config.max_line_bytes
        line = self.rfile.readline(limit + 1)
        if not line:
            return None
        if len(line) > limit and not line.endswith(DELIMITER):
            while line and not line.endswith(DELIMITER):
                line = self.rfile.readline(limit + 1)
            raise ProtocolError(f"Request line exceeds {limit} bytes")
        return line.rstrip(b"\r\n")

    def handle(self):
        engine = self.server.engine
        ctx = ConnectionContext(peer="%s:%s" % self.client_address[:2])
        engine.connection_opened(ctx)
        try:
            while True:
                try:
                    line = self._read_line()
                except ProtocolError as ex:
                    self.wfile.write(ControlReply(ex.to_reply()).to_bytes())
                    continue
                if line is None:
                    break
                if not line.strip():
                    continue
                reply = engine.handle_line(ctx, line)
                self.wfile.write(reply.to_bytes())
        except socket.timeout:
            logger.info("Connection %d idle for %.0fs, closing", ctx.connection_id, self.timeout)
        except OSError as ex:
            logger.info("Connection %d dropped: %s", ctx.connection_id, ex)
        finally:
            engine.connection_lost(ctx)


class FotaTCPServer(socketserver.ThreadingTCPServer):
    """ThreadingTCPServer carrying the shared protocol engine."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, engine: ProtocolEngine, config: ServerConfig):
        self.engine = engine
        self.config = config
        super().__init__(server_address, FotaRequestHandler)


def build_server(
    config: ServerConfig,
    catalog: FirmwareCatalog,
    registry: Optional[SessionRegistry] = None,
    transfer_log: Optional[TransferLog] = None,
) -> FotaTCPServer:
    """Wire an engine to a listening (not yet serving) TCP server.

    Args:
        config: Server configuration; port 0 picks an ephemeral port.
        catalog: Firmware catalog.
        registry: Session registry, or None for a fresh one.
        transfer_log: Optional transfer audit log.

    Returns:
        FotaTCPServer: Bound server; call ``serve_forever()`` to run it.
    """
    registry = registry or SessionRegistry(config)
    engine = ProtocolEngine(config, catalog, registry, transfer_log)
    return FotaTCPServer((config.host, config.port), engine, config)


def serve(config: ServerConfig, catalog: Optional[FirmwareCatalog] = None) -> None:
    """Run the FOTA server and its session sweeper until interrupted."""
    if catalog is None:
        catalog = FirmwareCatalog(config.firmware_dir, config.db_path, config.selection_policy)
    transfer_log = TransferLog(config.db_path)
    registry = SessionRegistry(config)
    server = build_server(config, catalog, registry, transfer_log)
    sweeper = SessionSweeper(registry, config.sweep_interval, on_evict=server.engine.sessions_evicted)

    host, port = server.server_address[:2]
    logger.info("FOTA server listening on %s:%s (firmware dir %s)", host, port, config.firmware_dir)
    sweeper.start()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        sweeper.stop()
        server.server_close()
        logger.info("Final stats: %s", server.engine.stats_snapshot())
