# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors
"""
Server-side protocol error definitions.

Every error that the protocol engine reports to a device is an instance of
FotaError carrying a stable wire ``code`` and a ``retryable`` flag. The engine
turns them into structured error lines; the connection stays open.

Exceptions:
    FotaError: Base class with ``code``/``retryable`` and ``to_reply()``.
    ProtocolError: Malformed request line, missing field or unknown action.
    SessionError: Unknown or evicted session id.
    FirmwareNotFoundError: No firmware stored on the server.
    ChunkReadError: Source artifact could not be read (retryable).
    FrameError: Received frame or chunk header is malformed or fails its CRC.
"""

from __future__ import annotations

REQUEST_ERROR = "REQUEST_ERROR"
INVALID_SESSION = "INVALID_SESSION"
NO_FIRMWARE = "NO_FIRMWARE"
READ_ERROR = "READ_ERROR"
SERVER_ERROR = "SERVER_ERROR"


class FotaError(Exception):
    """Base class for errors reported over the wire."""

    code: str = SERVER_ERROR
    retryable: bool = False

    def __init__(self, message: str = "", *, code: str | None = None, retryable: bool | None = None):
        super().__init__(message or "Internal server error")
        self.message = message or "Internal server error"
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def to_reply(self) -> dict:
        """Return the structured error object sent to the device."""
        return {
            "status": "error",
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ProtocolError(FotaError):
    """Raised for malformed requests: bad JSON, missing fields, unknown action."""

    code = REQUEST_ERROR

    class UnknownAction(FotaError):
        """Request named an action the engine does not implement."""

        code = REQUEST_ERROR

        def __init__(self, action: object = ""):
            super().__init__(f"Unknown action: {action}")

    class MissingField(FotaError):
        """Required request field is absent or has the wrong type."""

        code = REQUEST_ERROR

        def __init__(self, field_name: str, expected: str = ""):
            msg = f"Missing or invalid field '{field_name}'"
            if expected:
                msg += f" (expected {expected})"
            super().__init__(msg)


class SessionError(FotaError):
    """Raised when a request names a session the registry does not hold."""

    code = INVALID_SESSION

    def __init__(self, session_id: object = "", message: str = ""):
        super().__init__(message or f"Invalid or expired session: {session_id}")
        self.session_id = session_id


class FirmwareNotFoundError(FotaError):
    """Raised by ``check`` when the catalog holds no firmware."""

    code = NO_FIRMWARE

    def __init__(self, message: str = "No firmware available"):
        super().__init__(message)


class ChunkReadError(FotaError):
    """Raised when a chunk cannot be read from the session's artifact."""

    code = READ_ERROR
    retryable = True

    def __init__(self, message: str = "Failed to read firmware data", *, retryable: bool = True):
        super().__init__(message, retryable=retryable)


class FrameError(FotaError):
    """Raised by the frame reader for undecodable lines or corrupt chunk headers."""

    code = REQUEST_ERROR
