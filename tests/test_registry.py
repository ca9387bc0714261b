import threading
from dataclasses import replace

import pytest

from catalog.firmware_repository import FirmwareArtifact
from fota.config import ServerConfig
from fota.errors import SessionError
from fota.registry import SessionRegistry, SessionSweeper
from fota.session import SessionState, plan_chunks


def artifact(version="1.1.0", size=2000, sha="a" * 64) -> FirmwareArtifact:
    return FirmwareArtifact(
        name=f"app_v{version}.bin",
        version=version,
        size_bytes=size,
        md5="0" * 32,
        sha256=sha,
        storage_ref=f"/tmp/app_v{version}.bin",
        modified_at=0.0,
    )


def test_plan_chunks():
    assert plan_chunks(2000, 512) == 4
    assert plan_chunks(512, 512) == 1
    assert plan_chunks(0, 512) == 1


def test_new_session_has_defaults(registry):
    session, resumed = registry.create_or_resume("dev", artifact(), connection_id=1)
    assert not resumed
    assert len(session.session_id) == 16
    int(session.session_id, 16)
    assert session.chunk_size == 512
    assert session.total_chunks == 4
    assert session.last_offset == 0
    assert session.state is SessionState.ACTIVE


def test_resume_keeps_progress_across_interruption(registry, clock):
    session, _ = registry.create_or_resume("dev", artifact(), connection_id=1)
    registry.record_chunk(session.session_id, 0, 512)
    registry.record_chunk(session.session_id, 512, 512)
    assert registry.mark_interrupted(session.session_id, connection_id=1)
    assert session.state is SessionState.INTERRUPTED

    clock.advance(60)
    again, resumed = registry.create_or_resume("dev", artifact(), connection_id=2)
    assert resumed
    assert again.session_id == session.session_id
    assert again.last_offset == 1024
    assert again.downloaded_chunk_count == 2
    assert again.state is SessionState.ACTIVE
    assert again.connection_id == 2


def test_last_offset_never_decreases(registry):
    session, _ = registry.create_or_resume("dev", artifact(), connection_id=1)
    registry.record_chunk(session.session_id, 1024, 512)
    registry.record_chunk(session.session_id, 0, 512)
    assert session.last_offset == 1536
    assert session.downloaded_chunk_count == 2


def test_new_version_supersedes_old_session(registry):
    old, _ = registry.create_or_resume("dev", artifact("1.1.0"))
    new, resumed = registry.create_or_resume("dev", artifact("1.2.0", sha="b" * 64))
    assert not resumed
    assert new.session_id != old.session_id
    assert registry.get(old.session_id) is None
    assert len(registry) == 1


def test_replaced_artifact_with_same_version_starts_fresh(registry):
    old, _ = registry.create_or_resume("dev", artifact(sha="a" * 64))
    new, resumed = registry.create_or_resume("dev", artifact(sha="c" * 64))
    assert not resumed
    assert registry.get(old.session_id) is None


def test_devices_are_independent(registry):
    a, _ = registry.create_or_resume("dev-a", artifact())
    b, _ = registry.create_or_resume("dev-b", artifact())
    assert a.session_id != b.session_id
    assert len(registry) == 2


def test_mark_interrupted_respects_connection_binding(registry):
    session, _ = registry.create_or_resume("dev", artifact(), connection_id=1)
    registry.bind(session.session_id, 2)
    assert not registry.mark_interrupted(session.session_id, connection_id=1)
    assert session.state is SessionState.ACTIVE
    assert registry.mark_interrupted(session.session_id, connection_id=2)
    assert not registry.mark_interrupted("missing")


def test_bind_clears_interruption_and_rejects_unknown(registry):
    session, _ = registry.create_or_resume("dev", artifact(), connection_id=1)
    registry.mark_interrupted(session.session_id)
    registry.bind(session.session_id, 5)
    assert session.state is SessionState.ACTIVE
    assert session.interrupted_at is None
    with pytest.raises(SessionError):
        registry.bind("0" * 16, 5)


def test_resize_clamps_to_bounds(registry):
    session, _ = registry.create_or_resume("dev", artifact())
    assert registry.resize(session.session_id, 64) == 128
    assert registry.resize(session.session_id, 4096) == 1024
    assert session.chunk_size == 1024


def test_completed_session_is_not_resumed(registry):
    session, _ = registry.create_or_resume("dev", artifact())
    registry.complete(session.session_id)
    again, resumed = registry.create_or_resume("dev", artifact())
    assert not resumed
    assert again.session_id != session.session_id


def test_sweep_evicts_completed_and_stale_interrupted(config, clock):
    cfg = replace(config, interrupted_timeout=600, session_timeout=2700)
    registry = SessionRegistry(cfg, clock=clock)

    a, _ = registry.create_or_resume("dev-a", artifact())
    registry.complete(a.session_id)

    b, _ = registry.create_or_resume("dev-b", artifact())
    registry.mark_interrupted(b.session_id)
    clock.advance(10 * 60)

    c, _ = registry.create_or_resume("dev-c", artifact())
    clock.advance(60)

    evicted = registry.sweep()
    assert sorted(evicted) == sorted([a.session_id, b.session_id])
    assert registry.get(c.session_id) is c


def test_session_timeout_evicts_active_sessions(registry, clock, config):
    session, _ = registry.create_or_resume("dev", artifact())
    clock.advance(config.session_timeout + 1)
    assert registry.sweep() == [session.session_id]


def test_recently_interrupted_session_survives(registry, clock):
    session, _ = registry.create_or_resume("dev", artifact())
    registry.mark_interrupted(session.session_id)
    clock.advance(30)
    assert registry.sweep() == []


def test_sweeper_run_once_invokes_callback(registry):
    session, _ = registry.create_or_resume("dev", artifact())
    registry.complete(session.session_id)
    seen = []
    sweeper = SessionSweeper(registry, interval=3600, on_evict=seen.append)
    evicted = sweeper.run_once()
    assert [s.session_id for s in evicted] == [session.session_id]
    assert seen == [evicted]


def test_sweeper_thread_runs_periodically(config):
    registry = SessionRegistry(config)
    session, _ = registry.create_or_resume("dev", artifact())
    registry.complete(session.session_id)

    done = threading.Event()
    sweeper = SessionSweeper(registry, interval=0.01, on_evict=lambda evicted: done.set())
    sweeper.start()
    try:
        assert done.wait(2.0)
    finally:
        sweeper.stop(timeout=2.0)
    assert len(registry) == 0


def test_registry_operations_race_with_sweeper(registry):
    rounds = 200
    evicted: list[str] = []
    errors: list[BaseException] = []
    stop = threading.Event()
    sweeper = SessionSweeper(registry, interval=3600, on_evict=lambda done: evicted.extend(s.session_id for s in done))

    def sweep_loop():
        while not stop.is_set():
            sweeper.run_once()

    def device(index: int):
        try:
            for n in range(rounds):
                session, resumed = registry.create_or_resume(f"dev-{index}", artifact(), connection_id=n)
                assert not resumed
                registry.record_chunk(session.session_id, 0, 512)
                assert registry.mark_interrupted(session.session_id, n)
                again, resumed = registry.create_or_resume(f"dev-{index}", artifact(), connection_id=n)
                assert resumed and again.session_id == session.session_id
                assert again.last_offset == 512
                registry.complete(session.session_id)
        except BaseException as ex:
            errors.append(ex)

    sweep_thread = threading.Thread(target=sweep_loop)
    workers = [threading.Thread(target=device, args=(i,)) for i in range(4)]
    sweep_thread.start()
    for w in workers:
        w.start()
    for w in workers:
        w.join(timeout=30)
    stop.set()
    sweep_thread.join(timeout=5)
    sweeper.run_once()

    assert errors == []
    assert len(registry) == 0
    assert len(evicted) == len(set(evicted)) == 4 * rounds


def test_progress_percent(registry):
    session, _ = registry.create_or_resume("dev", artifact())
    registry.record_chunk(session.session_id, 0, 1000)
    assert session.progress_percent() == 50
    assert session.progress_percent(2000) == 100


def test_config_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        ServerConfig(min_chunk=1024, max_chunk=512)
