# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Repository layer for firmware artifact metadata.

This module provides the data access layer for the ``firmware`` table, which
caches the size, digests and modification time of every stored binary so the
catalog only re-hashes files that changed.
"""

from __future__ import annotations

from contextlib import closing
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Optional

from fota.integrity import DigestKind

from .db import connect


@dataclass(frozen=True)
class FirmwareArtifact:
    """Immutable snapshot of one stored firmware binary.

    A session keeps the snapshot taken at ``check`` time; later uploads never
    change the size or digests a running transfer was started against.

    Attributes:
        name: Stored file name (``<basename>_v<version>.bin``).
        version: MAJOR.MINOR.PATCH version.
        size_bytes: File size in bytes.
        md5: Lowercase hex MD5 of the whole file.
        sha256: Lowercase hex SHA256 of the whole file.
        storage_ref: Absolute path of the binary on disk.
        modified_at: File modification time (epoch seconds).
    """

    name: str
    version: str
    size_bytes: int
    md5: str
    sha256: str
    storage_ref: str
    modified_at: float

    def digest(self, kind: "str | DigestKind" = DigestKind.MD5) -> str:
        """Return the declared digest of the requested kind."""
        return self.md5 if DigestKind.parse(kind) is DigestKind.MD5 else self.sha256

    def to_dict(self) -> dict:
        return asdict(self)


_COLUMNS = "name, version, size_bytes, md5, sha256, storage_ref, modified_at"


def _from_row(row) -> FirmwareArtifact:
    return FirmwareArtifact(
        name=row[0],
        version=row[1],
        size_bytes=row[2],
        md5=row[3],
        sha256=row[4],
        storage_ref=row[5],
        modified_at=row[6],
    )


def upsert_firmware(rec: FirmwareArtifact, db_path: Path | None = None) -> None:
    """Insert or update a firmware record keyed by ``name``.

    Args:
        rec: Artifact snapshot to persist.
        db_path: Database file, or None for the default.

    Raises:
        Exception: If the database operation fails, the exception is re-raised
            after rolling back the transaction.
    """
    sql = f"""
    INSERT INTO firmware ({_COLUMNS})
    VALUES (:name, :version, :size_bytes, :md5, :sha256, :storage_ref, :modified_at)
    ON CONFLICT(name) DO UPDATE SET
        version=excluded.version,
        size_bytes=excluded.size_bytes,
        md5=excluded.md5,
        sha256=excluded.sha256,
        storage_ref=excluded.storage_ref,
        modified_at=excluded.modified_at;
    """
    with closing(connect(db_path)) as conn:
        conn.execute("BEGIN;")
        try:
            conn.execute(sql, rec.to_dict())
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise


def find_firmware(name: str, db_path: Path | None = None) -> Optional[FirmwareArtifact]:
    """Find a firmware record by file name.

    Returns:
        FirmwareArtifact if found, None otherwise.
    """
    sql = f"SELECT {_COLUMNS} FROM firmware WHERE name=?;"
    with closing(connect(db_path)) as conn:
        row = conn.execute(sql, (name,)).fetchone()
        return _from_row(row) if row else None


def list_firmware(limit: Optional[int] = None, db_path: Path | None = None) -> Iterable[FirmwareArtifact]:
    """List firmware records, most recently modified first.

    Args:
        limit: Maximum number of records to return, or None for all.
        db_path: Database file, or None for the default.

    Yields:
        FirmwareArtifact: Each stored record.
    """
    sql = f"SELECT {_COLUMNS} FROM firmware ORDER BY modified_at DESC"
    if limit:
        sql += f" LIMIT {int(limit)}"
    sql += ";"

    with closing(connect(db_path)) as conn:
        rows = conn.execute(sql).fetchall()
    for row in rows:
        yield _from_row(row)


def delete_firmware(name: str, db_path: Path | None = None) -> None:
    """Delete a firmware record by name.

    Removes the row only; callers delete the binary itself.
    """
    sql = "DELETE FROM firmware WHERE name=?;"
    with closing(connect(db_path)) as conn:
        conn.execute("BEGIN;")
        try:
            conn.execute(sql, (name,))
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
