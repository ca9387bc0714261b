"""Device-side firmware update client.

This package implements the consumer side of the chunked FOTA protocol: it
checks for a newer firmware, downloads it chunk by chunk over an unreliable
link, streams it into the update partition through a bounded buffer, verifies
the whole-image digest and commits the new image.

**Transports:**

- ``TcpTransport``: plain TCP socket
- ``SerialATTransport``: SIM800-class cellular modem driven by AT commands
  (GPRS attach, ``AT+CIPSTART``, ``AT+CIPSEND``), requires pyserial

**Installation:**

.. code-block:: bash

    pip install pyserial tqdm

**Usage:**

Update over TCP, staging into a file:

.. code-block:: python

    from device import DeviceConfig, DeviceTransferClient, FileFlashTarget, TcpTransport

    cfg = DeviceConfig(device_id="sensor-01", current_version="1.0.0")
    client = DeviceTransferClient(
        cfg,
        TcpTransport(cfg.server_host, cfg.server_port),
        FileFlashTarget("firmware.bin"),
    )
    result = client.run_update()
    print(result, client.state.phase)

Update over a modem:

.. code-block:: python

    from device import SerialATTransport

    link = SerialATTransport("/dev/ttyUSB0", host="fota.example.net", port=8266, apn="internet")
    print(link.signal_quality())

**Failure handling:**

``run_update()`` never raises for link, flash or integrity failures. It aborts
the staged image (the active image stays untouched) and returns
``UpdateResult.FAILED`` with ``client.state.error`` set.
"""

from .at_transport import SerialATTransport
from .client import DeviceDownloadState, DeviceTransferClient, Phase, UpdateResult
from .config import DeviceConfig, load_device_config
from .detector import DetectedModem, detect_modem_ports, get_first_modem
from .errors import (
    DeviceATError,
    DeviceError,
    DeviceNotFoundError,
    FlashError,
    IntegrityError,
    ServerRejected,
    TransportError,
    TransportTimeout,
    UpdateCancelled,
)
from .flash import FileFlashTarget, FlashTarget, StagingBuffer
from .transport import TcpTransport, Transport

__all__ = [
    "DetectedModem",
    "DeviceATError",
    "DeviceConfig",
    "DeviceDownloadState",
    "DeviceError",
    "DeviceNotFoundError",
    "DeviceTransferClient",
    "FileFlashTarget",
    "FlashError",
    "FlashTarget",
    "IntegrityError",
    "Phase",
    "SerialATTransport",
    "ServerRejected",
    "StagingBuffer",
    "TcpTransport",
    "Transport",
    "TransportError",
    "TransportTimeout",
    "UpdateCancelled",
    "UpdateResult",
    "detect_modem_ports",
    "get_first_modem",
    "load_device_config",
]
