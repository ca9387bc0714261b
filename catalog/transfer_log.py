# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Repository layer for the transfer audit log.

One row per transfer session records which device fetched which version, how
far it got and how the session ended. The protocol engine writes it; operators
read it through the CLI.
"""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .db import connect, init_db

ISO_UTC = "%Y-%m-%dT%H:%M:%SZ"

STATUSES = ("in_progress", "interrupted", "ok", "failed", "evicted")


def _iso_now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_UTC)


@dataclass
class TransferEvent:
    """Transfer log record.

    Attributes:
        session_id: Server session identifier.
        device_id: Device identifier sent with ``check``.
        version: Firmware version being transferred.
        size_bytes: Artifact size.
        last_offset: Highest byte offset served.
        status: in_progress / interrupted / ok / failed / evicted.
        created_at: ISO 8601 UTC timestamp of the first event.
        updated_at: ISO 8601 UTC timestamp of the latest event.
        completed_at: ISO 8601 UTC timestamp of successful verification, or None.
    """

    session_id: str
    device_id: str
    version: str
    size_bytes: int = 0
    last_offset: int = 0
    status: str = "in_progress"
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None


def upsert_transfer(
    *,
    session_id: str,
    device_id: str,
    version: str,
    status: str,
    size_bytes: int = 0,
    last_offset: int = 0,
    db_path: Path | None = None,
) -> None:
    """Insert or update the log row of a session.

    A row that already reached ``ok`` keeps that status: late ``evicted`` or
    ``interrupted`` events for a completed session only refresh ``updated_at``.

    Args:
        session_id: Server session identifier.
        device_id: Device identifier.
        version: Firmware version.
        status: New status, one of STATUSES.
        size_bytes: Artifact size.
        last_offset: Highest offset served so far.
        db_path: Database file, or None for the default.

    Raises:
        ValueError: If ``status`` is unknown.
    """
    if status not in STATUSES:
        raise ValueError(f"Unknown transfer status: {status}")

    sql = """
    INSERT INTO transfer_log
        (session_id, device_id, version, size_bytes, last_offset, status,
         created_at, updated_at, completed_at)
    VALUES
        (:session_id, :device_id, :version, :size_bytes, :last_offset, :status,
         :now, :now, :completed_at)
    ON CONFLICT(session_id) DO UPDATE SET
        last_offset=MAX(transfer_log.last_offset, excluded.last_offset),
        status=CASE WHEN transfer_log.status = 'ok' THEN 'ok' ELSE excluded.status END,
        updated_at=excluded.updated_at,
        completed_at=COALESCE(transfer_log.completed_at, excluded.completed_at);
    """
    now = _iso_now()
    params = {
        "session_id": session_id,
        "device_id": device_id,
        "version": version,
        "size_bytes": size_bytes,
        "last_offset": last_offset,
        "status": status,
        "now": now,
        "completed_at": now if status == "ok" else None,
    }
    with closing(connect(db_path)) as conn:
        conn.execute("BEGIN;")
        try:
            conn.execute(sql, params)
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise


_COLUMNS = (
    "session_id, device_id, version, size_bytes, last_offset, status, created_at, updated_at, completed_at"
)


def _from_row(row) -> TransferEvent:
    return TransferEvent(*tuple(row))


def find_transfer(session_id: str, db_path: Path | None = None) -> Optional[TransferEvent]:
    """Return the log row of a session, or None."""
    sql = f"SELECT {_COLUMNS} FROM transfer_log WHERE session_id=?;"
    with closing(connect(db_path)) as conn:
        row = conn.execute(sql, (session_id,)).fetchone()
    return _from_row(row) if row else None


def list_transfers(
    device_id: Optional[str] = None,
    limit: Optional[int] = None,
    db_path: Path | None = None,
) -> Iterable[TransferEvent]:
    """List log rows, newest first, optionally for one device.

    Yields:
        TransferEvent: Each matching row.
    """
    sql = f"SELECT {_COLUMNS} FROM transfer_log"
    params: tuple = ()
    if device_id:
        sql += " WHERE device_id=?"
        params = (device_id,)
    sql += " ORDER BY created_at DESC, id DESC"
    if limit:
        sql += f" LIMIT {int(limit)}"
    sql += ";"

    with closing(connect(db_path)) as conn:
        rows = conn.execute(sql, params).fetchall()
    for row in rows:
        yield _from_row(row)


class TransferLog:
    """Bound transfer-log writer handed to the protocol engine.

    Args:
        db_path: Database file, or None for the default.
    """

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path
        init_db(db_path)

    def record(
        self,
        *,
        session_id: str,
        device_id: str,
        version: str,
        status: str,
        size_bytes: int = 0,
        last_offset: int = 0,
    ) -> None:
        upsert_transfer(
            session_id=session_id,
            device_id=device_id,
            version=version,
            status=status,
            size_bytes=size_bytes,
            last_offset=last_offset,
            db_path=self.db_path,
        )

    def find(self, session_id: str) -> Optional[TransferEvent]:
        return find_transfer(session_id, db_path=self.db_path)

    def entries(self, device_id: Optional[str] = None, limit: Optional[int] = None) -> list[TransferEvent]:
        return list(list_transfers(device_id, limit, db_path=self.db_path))
