"""
Qoob USB HID Transport Layer

Handles low-level report I/O with a Qoob modchip in flashing mode.

This module provides:
- Device open/close with exclusive, scoped ownership
- Fixed-size report send (output report) and receive (feature report)
- Timeout and error classification
"""

import logging
import os
import time
from typing import List, Optional

try:
    import hid
except ImportError:
    raise ImportError("hidapi required: pip install hidapi")

from qoob_flasher.errors import (
    DeviceBusy,
    DeviceNotFound,
    MultipleDevices,
    PartialTransfer,
    PermissionDenied,
    Timeout,
    TransportError,
)

logger = logging.getLogger(__name__)

HID_REPORT_SIZE = 65


class HidTransport:
    """
    Low-level HID transport for one Qoob device.

    Handles:
    - Device open/close
    - Report-level send/receive
    - Partial transfer and timeout detection

    Example:
        with HidTransport(path=b"/dev/hidraw3") as transport:
            transport.send(frame)
            report = transport.receive(65, timeout=1.0)
    """

    def __init__(
        self,
        path: bytes,
        report_id: int = 0,
        timeout: float = 5.0,
    ):
        """
        Initialize transport layer.

        Args:
            path: hidapi device path (from hid.enumerate())
            report_id: Report id used for feature report reads (default 0)
            timeout: Default receive timeout in seconds (default 5.0)
        """
        self.path = path
        self.report_id = report_id
        self.timeout = timeout
        self.dev = None

    @property
    def is_open(self) -> bool:
        return self.dev is not None

    def open(self) -> None:
        """
        Open the HID device.

        Raises:
            PermissionDenied: If the host refuses access to the device node
            DeviceBusy: If the device exists but cannot be opened
        """
        if self.dev is not None:
            return
        dev = hid.device()
        try:
            dev.open_path(self.path)
        except OSError as e:
            node = self.path.decode(errors="replace")
            if os.path.exists(node) and not os.access(node, os.R_OK | os.W_OK):
                raise PermissionDenied(
                    f"No permission to open {node}. Install a udev rule granting "
                    f"access to the device, or run as root."
                ) from e
            raise DeviceBusy(f"Cannot open {node}: {e}") from e
        self.dev = dev
        logger.debug(f"Opened {self.path!r}")

    def close(self) -> None:
        """Close the device. Safe to call more than once."""
        if self.dev is not None:
            dev, self.dev = self.dev, None
            try:
                dev.close()
            except OSError as e:
                logger.warning(f"Error closing {self.path!r}: {e}")
            logger.debug(f"Closed {self.path!r}")

    def __enter__(self) -> "HidTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def send(self, data: bytes) -> None:
        """
        Send one report to the device.

        Args:
            data: Full report, report id first

        Raises:
            TransportError: If the device is not open or the write fails
            PartialTransfer: If fewer bytes than requested were written
        """
        if self.dev is None:
            raise TransportError("Device not open")

        try:
            written = self.dev.write(data)
        except (OSError, ValueError) as e:
            raise TransportError(f"Write error: {e}") from e
        if written < 0:
            raise TransportError(f"Write error: {self.dev.error()}")
        if written != len(data):
            raise PartialTransfer(written, len(data))
        logger.debug(f">>> {data.hex().upper()}")

    def receive(self, expected_len: int, timeout: Optional[float] = None) -> bytes:
        """
        Receive one feature report from the device.

        Args:
            expected_len: Report size, report id included
            timeout: Seconds to keep asking for a report (default self.timeout)

        Returns:
            Report bytes, report id first

        Raises:
            Timeout: If no report arrived before the deadline
            PartialTransfer: If a short report arrived
            TransportError: If the read fails
        """
        if self.dev is None:
            raise TransportError("Device not open")

        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while True:
            try:
                report: List[int] = self.dev.get_feature_report(self.report_id, expected_len)
            except (OSError, ValueError) as e:
                raise TransportError(f"Read error: {e}") from e
            if report:
                break
            if time.monotonic() >= deadline:
                raise Timeout("Device did not respond (timeout)")
            time.sleep(0.001)

        data = bytes(report)
        if len(data) != expected_len:
            raise PartialTransfer(len(data), expected_len)
        logger.debug(f"<<< {data.hex().upper()}")
        return data


def open_transport(
    vendor_id: int,
    product_id: int,
    path: Optional[bytes] = None,
    timeout: float = 5.0,
) -> HidTransport:
    """
    Open the single connected device with the given ids.

    Args:
        vendor_id: USB vendor id
        product_id: USB product id
        path: Explicit hidapi path, required when several devices match
        timeout: Default receive timeout in seconds

    Returns:
        HidTransport instance (already open)

    Raises:
        DeviceNotFound: If no device matches
        MultipleDevices: If several devices match and no path was given
    """
    matches = [
        info for info in hid.enumerate(vendor_id, product_id)
        if path is None or info["path"] == path
    ]
    if not matches:
        raise DeviceNotFound(
            f"Device {vendor_id:04x}:{product_id:04x} not found"
        )
    if len(matches) > 1:
        raise MultipleDevices(len(matches))

    transport = HidTransport(matches[0]["path"], timeout=timeout)
    transport.open()
    return transport
