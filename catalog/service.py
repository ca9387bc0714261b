# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Firmware catalog service.

This module resolves the "latest firmware" served to devices and performs the
bounds-checked chunk reads behind every ``download`` request. Binaries live in
a flat directory; their sizes and digests are cached in the ``firmware`` table
so a binary is hashed once per change rather than once per ``check``.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from fota.integrity import file_digests

from .db import init_db
from .errors import ArtifactChangedError, ArtifactNotFoundError, CatalogError, ChunkRangeError
from .firmware_repository import (
    FirmwareArtifact,
    delete_firmware,
    find_firmware,
    list_firmware,
    upsert_firmware,
)
from .versions import FIRMWARE_SUFFIX, format_firmware_name, parse_version_from_name, version_key

SELECTION_POLICIES = ("mtime", "semver")


class FirmwareCatalog:
    """Directory-backed firmware catalog with a SQLite digest cache.

    Args:
        firmware_dir: Directory holding ``*.bin`` artifacts.
        db_path: Database file for the digest cache, or None for the default.
        selection_policy: ``"mtime"`` picks the most recently modified binary
            (uploading an older version after a newer one makes the older one
            latest); ``"semver"`` picks the highest version, newest file first
            among equal versions.

    Raises:
        ValueError: If ``selection_policy`` is unknown.
    """

    def __init__(
        self,
        firmware_dir: str | Path,
        db_path: Path | None = None,
        selection_policy: str = "mtime",
    ):
        if selection_policy not in SELECTION_POLICIES:
            raise ValueError(f"Unknown selection policy: {selection_policy!r}")
        self.firmware_dir = Path(firmware_dir)
        self.db_path = db_path
        self.selection_policy = selection_policy
        self.logger = logging.getLogger(__name__)
        self._write_lock = threading.Lock()
        self.firmware_dir.mkdir(parents=True, exist_ok=True)
        init_db(db_path)

    # --- Enumeration --- #
    def _snapshot(self, path: Path) -> FirmwareArtifact:
        """Return the artifact for ``path``, hashing only when the cache is stale."""
        st = path.stat()
        cached = find_firmware(path.name, db_path=self.db_path)
        if (
            cached is not None
            and cached.size_bytes == st.st_size
            and cached.modified_at == st.st_mtime
            and cached.storage_ref == str(path.resolve())
        ):
            return cached

        md5, sha256 = file_digests(path)
        artifact = FirmwareArtifact(
            name=path.name,
            version=parse_version_from_name(path.name),
            size_bytes=st.st_size,
            md5=md5,
            sha256=sha256,
            storage_ref=str(path.resolve()),
            modified_at=st.st_mtime,
        )
        upsert_firmware(artifact, db_path=self.db_path)
        self.logger.info("Indexed firmware %s v%s (%d bytes)", artifact.name, artifact.version, artifact.size_bytes)
        return artifact

    def scan(self) -> list[FirmwareArtifact]:
        """Enumerate stored binaries, newest modification first.

        Cache rows whose binary disappeared are dropped.

        Returns:
            list[FirmwareArtifact]: One snapshot per ``*.bin`` file.

        Raises:
            CatalogError: If the firmware directory cannot be read.
        """
        try:
            paths = [p for p in self.firmware_dir.iterdir() if p.is_file() and p.name.endswith(FIRMWARE_SUFFIX)]
        except OSError as ex:
            raise CatalogError(f"Cannot read firmware directory {self.firmware_dir}: {ex}") from ex

        artifacts = []
        for path in paths:
            try:
                artifacts.append(self._snapshot(path))
            except FileNotFoundError:
                # removed between listing and stat
                continue

        present = {a.name for a in artifacts}
        for stale in list(list_firmware(db_path=self.db_path)):
            if stale.name not in present:
                delete_firmware(stale.name, db_path=self.db_path)

        artifacts.sort(key=lambda a: a.modified_at, reverse=True)
        return artifacts

    def latest(self) -> FirmwareArtifact:
        """Resolve the firmware served to devices.

        Returns:
            FirmwareArtifact: Snapshot chosen by the selection policy.

        Raises:
            ArtifactNotFoundError: If no binary is stored.
        """
        artifacts = self.scan()
        if not artifacts:
            raise ArtifactNotFoundError()
        if self.selection_policy == "semver":
            return max(artifacts, key=lambda a: (version_key(a.version), a.modified_at))
        return artifacts[0]

    def find(self, name: str) -> Optional[FirmwareArtifact]:
        """Return the snapshot of a stored binary by file name, or None."""
        path = self.firmware_dir / name
        if not path.is_file():
            return None
        return self._snapshot(path)

    # --- Chunk reads --- #
    def chunk(self, artifact: FirmwareArtifact, offset: int, size: int) -> tuple[bytes, int]:
        """Read ``[offset, offset + min(size, total - offset))`` of an artifact.

        Args:
            artifact: Snapshot taken when the session started.
            offset: First byte to read.
            size: Requested length (must be positive).

        Returns:
            (data, actual_size)

        Raises:
            ChunkRangeError: If ``offset`` is negative or ``>= artifact.size_bytes``.
            ArtifactChangedError: If the file no longer matches the snapshot.
            CatalogError: On other I/O failures.
        """
        total = artifact.size_bytes
        if offset < 0 or offset >= total:
            raise ChunkRangeError(offset, total)
        if size <= 0:
            raise ValueError(f"chunk size must be positive, got {size}")
        actual = min(size, total - offset)

        try:
            with open(artifact.storage_ref, "rb") as f:
                st = os.fstat(f.fileno())
                if st.st_size != total or st.st_mtime != artifact.modified_at:
                    raise ArtifactChangedError(artifact.name, f"size {st.st_size}, expected {total}")
                f.seek(offset)
                data = f.read(actual)
        except FileNotFoundError as ex:
            raise ArtifactChangedError(artifact.name, "file removed") from ex
        except OSError as ex:
            raise CatalogError(f"Cannot read {artifact.name} at offset {offset}: {ex}") from ex

        if len(data) != actual:
            raise ArtifactChangedError(artifact.name, f"read mismatch: expected {actual}, got {len(data)}")
        return data, actual

    # --- Administration --- #
    def add(self, source: str | Path | bytes, version: str, basename: str = "firmware") -> FirmwareArtifact:
        """Store a binary as ``<basename>_v<version>.bin``.

        The file is written to a temporary name and moved into place, so
        readers never observe a partial binary. An existing file with the same
        name is replaced; sessions holding its old snapshot get
        ArtifactChangedError on their next chunk.

        Args:
            source: Path of the binary to import, or its raw bytes.
            version: MAJOR.MINOR.PATCH version.
            basename: File name prefix.

        Returns:
            FirmwareArtifact: Snapshot of the stored binary.
        """
        name = format_firmware_name(basename, version)
        data = source if isinstance(source, bytes) else Path(source).read_bytes()
        target = self.firmware_dir / name

        with self._write_lock:
            fd, tmp = tempfile.mkstemp(dir=self.firmware_dir, prefix=".upload-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, target)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
            artifact = self._snapshot(target)

        self.logger.info("Stored firmware %s (%d bytes)", name, artifact.size_bytes)
        return artifact

    def remove(self, name: str) -> bool:
        """Delete a stored binary and its cache row.

        Returns:
            bool: True if a binary was deleted.
        """
        path = self.firmware_dir / Path(name).name
        with self._write_lock:
            existed = path.is_file()
            if existed:
                path.unlink()
            delete_firmware(path.name, db_path=self.db_path)
        if existed:
            self.logger.info("Removed firmware %s", path.name)
        return existed
