"""Exception types for the device-side update client.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""


class DeviceError(Exception):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Raised when no cellular modem is detected on any serial port."""


class TransportError(DeviceError):
    """Raised when the byte transport to the server fails.

    Covers connect failures, resets, closed links and writes that were not
    acknowledged. The client treats every TransportError as recoverable and
    reconnects with bounded attempts.
    """


class TransportTimeout(TransportError):
    """Raised when a blocking send or receive exceeds its timeout."""


class DeviceATError(TransportError):
    """Raised for AT-channel communication failures with a modem.

    Covers errors related to the AT command path including:
    - Serial port open/close failures
    - Missing or unexpected final result codes (ERROR, CONNECT FAIL)
    - SIM not ready, network not registered, GPRS attach failures
    """


class FlashError(DeviceError):
    """Raised when the flash primitive rejects begin, write or commit.

    The staged image is aborted and the running firmware stays untouched.
    """


class IntegrityError(DeviceError):
    """Raised when the assembled image digest differs from the declared one."""


class UpdateCancelled(DeviceError):
    """Raised between chunks when the caller cancels the update."""


class ServerRejected(DeviceError):
    """Raised when the server answers a request with a structured error.

    Attributes:
        code: Wire error code (e.g. INVALID_SESSION, READ_ERROR).
        retryable: Server marked the request as safe to repeat.
    """

    def __init__(self, code: str, message: str = "", retryable: bool = False):
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.retryable = retryable
