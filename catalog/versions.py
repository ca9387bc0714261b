# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""
Firmware version helpers.

Firmware binaries are named ``<basename>_v<major>.<minor>.<patch>.bin``; a file
without a version suffix is treated as ``1.0.0``.

Functions:
- parse_version_from_name: extract the version from a stored file name.
- normalize_version: validate and canonicalize a MAJOR.MINOR.PATCH string.
- version_key: sortable tuple for a version string.
- is_newer_version: component-wise "latest > current" comparison.
- format_firmware_name: build the stored file name for a version.
"""

from __future__ import annotations

import re

DEFAULT_VERSION = "1.0.0"
FIRMWARE_SUFFIX = ".bin"

_NAME_VERSION_RE = re.compile(r"_v(\d+\.\d+\.\d+)\.bin$")
_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")
_BASENAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def parse_version_from_name(name: str) -> str:
    """Return the version encoded in a firmware file name, or ``1.0.0``."""
    match = _NAME_VERSION_RE.search(name)
    return match.group(1) if match else DEFAULT_VERSION


def normalize_version(version: str) -> str:
    """Validate a MAJOR.MINOR.PATCH version and strip leading zeros.

    Args:
        version: Version string such as ``"1.2.3"`` or ``"v01.2.3"``.

    Returns:
        Canonical version string.

    Raises:
        ValueError: If the string is not three dot-separated integers.
    """
    text = version.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    if not _VERSION_RE.match(text):
        raise ValueError(f"Invalid firmware version: {version!r} (expected MAJOR.MINOR.PATCH)")
    return ".".join(str(int(p)) for p in text.split("."))


def _component(part: str) -> int:
    try:
        return int(part)
    except ValueError:
        return 0


def version_key(version: str) -> tuple[int, ...]:
    """Sortable key for a dotted version; non-numeric components count as 0."""
    parts = [_component(p) for p in version.strip().split(".")]
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def is_newer_version(latest: str, current: str) -> bool:
    """Return True when ``latest`` is strictly greater than ``current``.

    Missing components are treated as 0, so ``"1.2"`` equals ``"1.2.0"``.
    """
    a = list(version_key(latest))
    b = list(version_key(current))
    width = max(len(a), len(b))
    a += [0] * (width - len(a))
    b += [0] * (width - len(b))
    return a > b


def format_firmware_name(basename: str, version: str) -> str:
    """Build ``<basename>_v<version>.bin``.

    Raises:
        ValueError: If the basename contains path separators or odd characters,
            or the version is invalid.
    """
    if not _BASENAME_RE.match(basename):
        raise ValueError(f"Invalid firmware basename: {basename!r}")
    return f"{basename}_v{normalize_version(version)}{FIRMWARE_SUFFIX}"
