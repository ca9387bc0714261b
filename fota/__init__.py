# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Resumable chunked firmware-over-the-air transfer protocol (server role).

Architecture:
    - Integrity: CRC16/ARC per chunk and header, MD5/SHA256 per image
    - Wire: one-line JSON control messages, length-prefixed chunk replies
    - Sessions: per-device transfer state owned by a locked SessionRegistry
    - Engine: check / download / verify / resume dispatch with adaptive chunk sizing
    - Server: threaded TCP listener plus a periodic eviction sweeper

Example:
    Serve the firmware directory on the default port::

        from fota import ServerConfig, load_config
        from fota.server import serve

        serve(load_config())

    Drive the engine directly (no sockets)::

        from catalog import FirmwareCatalog
        from fota import ConnectionContext, ProtocolEngine, ServerConfig, SessionRegistry

        cfg = ServerConfig()
        engine = ProtocolEngine(cfg, FirmwareCatalog(cfg.firmware_dir), SessionRegistry(cfg))
        ctx = ConnectionContext()
        reply = engine.handle_line(ctx, b'{"device":"d1","action":"check","version":"1.0.0"}')
        print(reply.to_bytes())

Request actions:
    check     {device, version}                      -> artifact metadata, sessionId, resumeOffset
    download  {sessionId, offset, size, compression}  -> chunk header line + raw payload
    verify    {sessionId, hash, hashType}             -> verified flag
    resume    {sessionId}                             -> lastOffset, downloadedChunks
"""

from .integrity import DigestKind, IncrementalDigest, crc16, digest, file_digests
from .errors import (
    ChunkReadError,
    FirmwareNotFoundError,
    FotaError,
    FrameError,
    ProtocolError,
    SessionError,
)
from .wire import (
    PROTOCOL_VERSION,
    ChunkFrame,
    ChunkHeader,
    ChunkRequest,
    FrameReader,
    decode_payload,
    encode_chunk,
    encode_control,
    verify_chunk,
)
from .config import ServerConfig, load_config
from .session import SessionState, TransferSession
from .registry import SessionRegistry, SessionSweeper
from .engine import ChunkReply, ConnectionContext, ControlReply, ProtocolEngine
