# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors
"""
Catalog error definitions.

Exceptions:
    CatalogError: Base class for catalog failures (storage, database).
    ArtifactNotFoundError: No firmware binary matches the request.
    ChunkRangeError: Requested chunk offset lies outside the artifact.
    ArtifactChangedError: The file on disk no longer matches a taken snapshot.
"""


class CatalogError(Exception):
    """Base class for catalog errors."""


class ArtifactNotFoundError(CatalogError):
    """Raised when no stored firmware matches (empty catalog or unknown name)."""

    def __init__(self, name: str = ""):
        msg = "No firmware available"
        if name:
            msg = f"Firmware not found: {name}"
        super().__init__(msg)


class ChunkRangeError(CatalogError):
    """Raised when a chunk offset is negative or not below the artifact size."""

    def __init__(self, offset: int, total_size: int):
        super().__init__(f"Invalid offset: {offset}, file size: {total_size}")
        self.offset = offset
        self.total_size = total_size


class ArtifactChangedError(CatalogError):
    """Raised when an artifact was replaced or truncated after its snapshot was taken."""

    def __init__(self, name: str, detail: str = ""):
        msg = f"Firmware {name} changed on disk"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
