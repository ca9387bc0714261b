import hashlib
import json
import os
from dataclasses import replace

import pytest

from catalog.service import FirmwareCatalog
from catalog.transfer_log import TransferLog
from conftest import store
from fota.engine import ChunkReply, ConnectionContext, ControlReply, ProtocolEngine
from fota.errors import INVALID_SESSION, NO_FIRMWARE, READ_ERROR, REQUEST_ERROR
from fota.integrity import crc16
from fota.registry import SessionRegistry
from fota.wire import decode_payload, verify_chunk


def send(engine, ctx, **request):
    return engine.handle_line(ctx, json.dumps(request).encode("utf-8"))


def control(engine, ctx, **request) -> dict:
    reply = send(engine, ctx, **request)
    assert isinstance(reply, ControlReply)
    return reply.payload


def chunk(engine, ctx, session_id, offset, size=512, **extra):
    reply = send(engine, ctx, action="download", sessionId=session_id, offset=offset, size=size, **extra)
    assert isinstance(reply, ChunkReply), getattr(reply, "payload", reply)
    return reply.frame


@pytest.fixture()
def ctx():
    return ConnectionContext(peer="test")


def check(engine, ctx, device="dev-1", version="1.0.0") -> dict:
    return control(engine, ctx, action="check", device=device, version=version)


def test_check_reply(engine, ctx, firmware_bytes):
    reply = check(engine, ctx)
    assert reply["status"] == "success"
    assert reply["version"] == "1.1.0"
    assert reply["name"] == "app_v1.1.0.bin"
    assert reply["size"] == 2000
    assert reply["md5"] == hashlib.md5(firmware_bytes).hexdigest()
    assert reply["sha256"] == hashlib.sha256(firmware_bytes).hexdigest()
    assert len(reply["sessionId"]) == 16
    assert reply["chunkSize"] == 512
    assert reply["totalChunks"] == 4
    assert reply["resumeOffset"] == 0
    assert reply["updateAvailable"] is True
    assert reply["resumed"] is False
    assert reply["compressionSupported"] is True
    assert ctx.session_id == reply["sessionId"]


def test_check_reports_no_update_for_same_version(engine, ctx):
    assert check(engine, ctx, version="1.1.0")["updateAvailable"] is False
    assert check(engine, ctx, version="1.10.0")["updateAvailable"] is False


def test_check_without_firmware(config, catalog, registry, ctx):
    engine = ProtocolEngine(config, catalog, registry)
    reply = check(engine, ctx)
    assert reply["status"] == "error"
    assert reply["code"] == NO_FIRMWARE
    assert reply["retryable"] is False


def test_check_requires_device(engine, ctx):
    reply = control(engine, ctx, action="check", version="1.0.0")
    assert reply["code"] == REQUEST_ERROR


@pytest.mark.parametrize(
    "line",
    [b"{not json", b"[]", b'{"action":"flash"}', b'{"noaction":1}', b"\xff\xfe"],
)
def test_malformed_requests_get_request_error(engine, ctx, line):
    reply = engine.handle_line(ctx, line)
    assert isinstance(reply, ControlReply)
    assert reply.payload["status"] == "error"
    assert reply.payload["code"] == REQUEST_ERROR


def test_request_error_messages(engine, ctx):
    reply = control(engine, ctx, action="flash")
    assert reply["code"] == REQUEST_ERROR
    assert reply["message"] == "Unknown action: flash"
    assert reply["retryable"] is False

    reply = control(engine, ctx, action="check", device="", version="1.0.0")
    assert reply["message"] == "Missing or invalid field 'device' (expected non-empty string)"


def test_download_unknown_session(engine, ctx):
    reply = send(engine, ctx, action="download", sessionId="deadbeefdeadbeef", offset=0, size=512)
    assert reply.payload["code"] == INVALID_SESSION


def test_download_rejects_negative_offset(engine, ctx):
    sid = check(engine, ctx)["sessionId"]
    reply = send(engine, ctx, action="download", sessionId=sid, offset=-1, size=512)
    assert reply.payload["code"] == REQUEST_ERROR


def test_full_download_actual_sizes(engine, ctx, firmware_bytes):
    sid = check(engine, ctx)["sessionId"]
    received = b""
    offsets = []
    while len(received) < 2000:
        frame = chunk(engine, ctx, sid, len(received))
        data = decode_payload(frame.header, frame.payload)
        assert verify_chunk(frame.header, data)
        assert frame.header.offset == len(received)
        offsets.append((frame.header.offset, len(data), frame.header.chunk_id, frame.header.progress))
        received += data
    assert received == firmware_bytes
    assert offsets == [(0, 512, 0, 25), (512, 512, 1, 51), (1024, 512, 2, 76), (1536, 464, 3, 100)]

    session = engine.registry.get(sid)
    assert session.last_offset == 2000
    assert session.downloaded_chunk_count == 4
    assert ctx.retries == 0


def test_requested_size_is_clamped(engine, ctx, firmware_bytes):
    sid = check(engine, ctx)["sessionId"]
    assert chunk(engine, ctx, sid, 0, size=4096).header.size == 512
    assert chunk(engine, ctx, sid, 512, size=16).header.size == 128


def test_repeated_request_is_idempotent_and_counted_as_retry(engine, ctx):
    sid = check(engine, ctx)["sessionId"]
    first = chunk(engine, ctx, sid, 0)
    second = chunk(engine, ctx, sid, 0)
    assert first.payload == second.payload
    assert first.header == second.header
    assert ctx.retries == 1
    assert engine.registry.get(sid).last_offset == 512


def test_explicit_retry_flag_counts(engine, ctx):
    sid = check(engine, ctx)["sessionId"]
    chunk(engine, ctx, sid, 0, retry=True)
    assert ctx.retries == 1


def test_adaptive_shrink_is_monotonic_and_bounded(engine, ctx, config):
    sid = check(engine, ctx)["sessionId"]
    sizes = [chunk(engine, ctx, sid, 0, retry=True).header.size for _ in range(12)]
    assert sizes[: config.warmup_requests] == [512] * config.warmup_requests
    assert all(a >= b for a, b in zip(sizes, sizes[1:]))
    assert sizes[-1] == config.min_chunk
    assert min(sizes) >= config.min_chunk
    assert engine.registry.get(sid).chunk_size == config.min_chunk


def test_no_shrink_without_retries(engine, ctx):
    sid = check(engine, ctx)["sessionId"]
    for _ in range(3):
        for offset in (0, 512, 1024, 1536):
            chunk(engine, ctx, sid, offset)
        ctx.served_high.clear()
    assert engine.registry.get(sid).chunk_size == 512


def test_grow_back_on_new_connection(config, loaded_catalog, clock):
    cfg = replace(config, grow_back=True)
    engine = ProtocolEngine(cfg, loaded_catalog, SessionRegistry(cfg, clock=clock))
    noisy = ConnectionContext()
    sid = check(engine, noisy)["sessionId"]
    for _ in range(8):
        chunk(engine, noisy, sid, 0, retry=True)
    assert engine.registry.get(sid).chunk_size == 128

    clean = ConnectionContext()
    offset = 0
    sizes = []
    while offset < 2000:
        frame = chunk(engine, clean, sid, offset)
        sizes.append(frame.header.size)
        offset += frame.header.size
    assert sizes[:5] == [128] * 5
    assert 256 in sizes
    assert max(sizes) == cfg.default_chunk
    assert engine.registry.get(sid).chunk_size == cfg.default_chunk


def test_compression_applied_when_it_pays(config, catalog, registry, ctx):
    data = b"A" * 1500
    store(catalog, "zip_v2.0.0.bin", data)
    engine = ProtocolEngine(config, catalog, registry)
    sid = check(engine, ctx)["sessionId"]

    frame = chunk(engine, ctx, sid, 0, compression=True)
    assert frame.header.compressed
    assert frame.header.size < 512
    assert decode_payload(frame.header, frame.payload) == data[:512]
    assert frame.header.data_crc16 == crc16(data[:512])

    plain = chunk(engine, ctx, sid, 0)
    assert not plain.header.compressed


def test_compression_skipped_for_small_or_incompressible(config, catalog, registry, ctx):
    data = os.urandom(1024) + b"B" * 50
    store(catalog, "mix_v2.0.0.bin", data)
    engine = ProtocolEngine(config, catalog, registry)
    sid = check(engine, ctx)["sessionId"]

    assert not chunk(engine, ctx, sid, 0, compression=True).header.compressed
    tail = chunk(engine, ctx, sid, 1024, compression=True)
    assert tail.header.size == 50
    assert not tail.header.compressed


def test_read_error_on_out_of_range_offset(engine, ctx):
    sid = check(engine, ctx)["sessionId"]
    reply = send(engine, ctx, action="download", sessionId=sid, offset=2000, size=512)
    assert reply.payload["code"] == READ_ERROR
    assert reply.payload["retryable"] is False


def test_read_error_when_artifact_changes(engine, ctx, loaded_catalog):
    sid = check(engine, ctx)["sessionId"]
    (loaded_catalog.firmware_dir / "app_v1.1.0.bin").write_bytes(b"replaced")
    reply = send(engine, ctx, action="download", sessionId=sid, offset=0, size=512)
    assert reply.payload["code"] == READ_ERROR
    assert reply.payload["retryable"] is True
    assert ctx.retries == 1


def test_verify_success_completes_session(engine, ctx, firmware_bytes):
    sid = check(engine, ctx)["sessionId"]
    md5 = hashlib.md5(firmware_bytes).hexdigest()
    reply = control(engine, ctx, action="verify", sessionId=sid, hash=md5.upper(), hashType="md5")
    assert reply["status"] == "success"
    assert reply["verified"] is True
    assert reply["expectedHash"] == md5
    assert reply["message"] == "Firmware integrity verified"
    assert engine.registry.get(sid).state.value == "completed"
    assert engine.stats.successful_downloads == 1


def test_verify_sha256_mismatch(engine, ctx):
    sid = check(engine, ctx)["sessionId"]
    reply = control(engine, ctx, action="verify", sessionId=sid, hash="0" * 64, hashType="sha256")
    assert reply["status"] == "success"
    assert reply["verified"] is False
    assert reply["hashType"] == "sha256"
    assert reply["message"] == "Hash mismatch detected"
    assert engine.registry.get(sid).state.value == "active"
    assert engine.stats.failed_downloads == 1


def test_verify_unsupported_hash_type(engine, ctx):
    sid = check(engine, ctx)["sessionId"]
    reply = control(engine, ctx, action="verify", sessionId=sid, hash="x", hashType="crc32")
    assert reply["code"] == REQUEST_ERROR


def test_resume_after_disconnect(engine, firmware_bytes):
    first = ConnectionContext()
    sid = check(engine, first)["sessionId"]
    chunk(engine, first, sid, 0)
    chunk(engine, first, sid, 512)
    engine.connection_lost(first)
    assert engine.registry.get(sid).state.value == "interrupted"

    second = ConnectionContext()
    reply = control(engine, second, action="resume", sessionId=sid)
    assert reply["status"] == "success"
    assert reply["lastOffset"] == 1024
    assert reply["downloadedChunks"] == 2
    assert reply["totalChunks"] == 4
    assert reply["resumeAvailable"] is True
    assert reply["firmwareSize"] == 2000
    assert engine.registry.get(sid).state.value == "active"

    frame = chunk(engine, second, sid, 1024)
    assert frame.payload == firmware_bytes[1024:1536]
    assert second.retries == 0


def test_check_after_disconnect_resumes(engine):
    first = ConnectionContext()
    sid = check(engine, first)["sessionId"]
    chunk(engine, first, sid, 0)
    engine.connection_lost(first)

    reply = check(engine, ConnectionContext())
    assert reply["sessionId"] == sid
    assert reply["resumed"] is True
    assert reply["resumeOffset"] == 512


def test_download_on_new_connection_rebinds_session(engine):
    first = ConnectionContext()
    sid = check(engine, first)["sessionId"]
    chunk(engine, first, sid, 0)

    second = ConnectionContext()
    chunk(engine, second, sid, 512)
    assert engine.registry.get(sid).connection_id == second.connection_id

    engine.connection_lost(first)
    assert engine.registry.get(sid).state.value == "active"
    engine.connection_lost(second)
    assert engine.registry.get(sid).state.value == "interrupted"


def test_resume_unknown_session(engine, ctx):
    reply = control(engine, ctx, action="resume", sessionId="0123456789abcdef")
    assert reply["code"] == INVALID_SESSION


def test_transfer_log_records_lifecycle(config, loaded_catalog, registry, firmware_bytes):
    log = TransferLog(config.db_path)
    engine = ProtocolEngine(config, loaded_catalog, registry, transfer_log=log)
    ctx = ConnectionContext()
    sid = check(engine, ctx)["sessionId"]
    assert log.find(sid).status == "in_progress"

    chunk(engine, ctx, sid, 0)
    engine.connection_lost(ctx)
    event = log.find(sid)
    assert event.status == "interrupted"
    assert event.last_offset == 512

    ctx2 = ConnectionContext()
    control(engine, ctx2, action="resume", sessionId=sid)
    control(engine, ctx2, action="verify", sessionId=sid, hash=hashlib.md5(firmware_bytes).hexdigest())
    assert log.find(sid).status == "ok"

    engine.sessions_evicted(registry.evict_expired())
    assert log.find(sid).status == "ok"


def test_stats_snapshot(engine, ctx):
    engine.connection_opened(ctx)
    sid = check(engine, ctx)["sessionId"]
    chunk(engine, ctx, sid, 0)
    stats = engine.stats_snapshot()
    assert stats["connections"] == 1
    assert stats["chunks_served"] == 1
    assert stats["bytes_served"] == 512
    assert stats["active_sessions"] == 1


def test_separate_catalogs_do_not_share_sessions(config, tmp_path, registry, ctx):
    other = FirmwareCatalog(tmp_path / "other", config.db_path)
    store(other, "x_v3.0.0.bin", b"z" * 10)
    engine = ProtocolEngine(config, other, registry)
    assert check(engine, ctx)["size"] == 10
