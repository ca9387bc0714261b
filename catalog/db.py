# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Database connection and schema management.

This module provides database connection utilities, schema initialization,
and database health/repair operations for the firmware catalog.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from .config import PATHS
from .sql import FIRMWARE_SCHEMA, TRANSFER_LOG_SCHEMA


def get_db_path() -> Path:
    """Get the path to the default SQLite database file.

    Returns:
        Path: Absolute path to the database file.
    """
    return PATHS.db_path


def connect(db_path: Path | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL and busy-timeout PRAGMAs.

    Creates the parent directory if needed. One connection per call; the
    connection is usable from any thread.

    Args:
        db_path: Database file, or None for the configured default.

    Returns:
        sqlite3.Connection: Connection with Row factory enabled.

    Note:
        The connection uses autocommit mode (isolation_level=None), so writes
        manage BEGIN/COMMIT/ROLLBACK explicitly.
    """
    path = Path(db_path) if db_path is not None else PATHS.db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        path,
        timeout=10.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    _apply_pragmas(conn)
    return conn


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.execute("PRAGMA foreign_keys=ON;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.close()


SCHEMA_SQL = FIRMWARE_SCHEMA + "\n\n" + TRANSFER_LOG_SCHEMA


def init_db(db_path: Path | None = None) -> None:
    """Create the catalog tables if they don't exist.

    executescript() commits implicitly, so no manual transaction control is needed.
    """
    conn = connect(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
    finally:
        conn.close()


def is_healthy(db_path: Path | None = None) -> bool:
    """Run SQLite's integrity_check pragma.

    Returns:
        bool: True if the database passes the check, False otherwise.
    """
    path = Path(db_path) if db_path is not None else PATHS.db_path
    try:
        conn = sqlite3.connect(path)
        try:
            row = conn.execute("PRAGMA integrity_check(1);").fetchone()
            return row is not None and row[0] == "ok"
        finally:
            conn.close()
    except sqlite3.DatabaseError:
        return False


def _dump_db(db_path: Path, dump_path: Path) -> None:
    conn = connect(db_path)
    try:
        with open(dump_path, "w", encoding="utf-8") as f:
            for line in conn.iterdump():
                f.write(f"{line}\n")
    finally:
        conn.close()


def _restore_db(db_path: Path, dump_path: Path) -> None:
    conn = connect(db_path)
    try:
        with open(dump_path, "r", encoding="utf-8") as f:
            sql = f.read()
        # iterdump() output carries its own BEGIN TRANSACTION / COMMIT
        conn.executescript(sql)
    finally:
        conn.close()


def repair_db(db_path: Path | None = None) -> None:
    """Rebuild a corrupted database from a SQL dump of itself.

    The process:
        1. Return immediately if the integrity check passes
        2. Dump the database to a temporary SQL file
        3. Delete the corrupted database file
        4. Restore from the dump
        5. Remove the dump file
    """
    path = Path(db_path) if db_path is not None else PATHS.db_path
    if is_healthy(path):
        return

    temp_dump_path = path.with_name(path.stem + "_dump.sql")
    _dump_db(path, temp_dump_path)

    try:
        path.unlink()
    except FileNotFoundError:
        pass

    _restore_db(path, temp_dump_path)

    try:
        temp_dump_path.unlink()
    except FileNotFoundError:
        pass
