"""
Device sessions.

A QoobSession is the single owner of one open device handle. It carries the
transport, the codec for the session's protocol table, the cached
DeviceInfo and the lock that serializes logical callers.

Example:
    with connect() as session:
        info = session.info
        data = FlashProgrammer(session).read(0, 256).data
"""

import logging
import threading
from pathlib import Path
from typing import Optional, Union

from qoob_flasher.errors import DeviceNotFound, MultipleDevices
from qoob_flasher.protocol.codec import QoobCodec, Reset
from qoob_flasher.protocol.discovery import (
    DeviceCandidate,
    DeviceInfo,
    enumerate_devices,
    identify,
)
from qoob_flasher.protocol.exchange import Exchange, ReportTransport
from qoob_flasher.protocol.tables import ProtocolTable, get_table
from qoob_flasher.protocol.transport import open_transport

logger = logging.getLogger(__name__)


class QoobSession:
    """
    Exclusive, scoped ownership of one device.

    The transport is closed on every exit path when used as a context
    manager. `lock` must be held by anyone issuing commands; the
    programmer takes it for the duration of each public operation.
    """

    def __init__(
        self,
        transport: ReportTransport,
        candidate: DeviceCandidate,
        table: Optional[ProtocolTable] = None,
        timeout: Optional[float] = None,
    ):
        self.transport = transport
        self.candidate = candidate
        self.table = table or get_table()
        self.codec = QoobCodec(self.table)
        # Seconds allowed per command/response exchange
        self.timeout = self.table.timeout if timeout is None else timeout
        self.lock = threading.RLock()
        self._info: Optional[DeviceInfo] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def identify(self) -> DeviceInfo:
        """Run the identification handshake once and cache the result."""
        with self.lock:
            if self._info is None:
                self._info = identify(self.transport, self.candidate, self.table)
            return self._info

    @property
    def info(self) -> DeviceInfo:
        return self.identify()

    def reset(self) -> None:
        """
        Send the reset command and close the session.

        The chip drops off the bus if it honours the command, so the handle
        is unusable afterwards either way.
        """
        with self.lock:
            try:
                Exchange(self.transport, self.codec, Reset()).run()
            finally:
                self.close()

    def close(self) -> None:
        """Release the device. Safe to call more than once."""
        if not self._closed:
            self._closed = True
            self.transport.close()

    def __enter__(self) -> "QoobSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def connect(
    path: Optional[Union[str, bytes]] = None,
    table: Optional[ProtocolTable] = None,
    timeout: Optional[float] = None,
    simulate: bool = False,
    sim_image: Optional[Union[str, Path]] = None,
) -> QoobSession:
    """
    Open and identify a device.

    Args:
        path: hidapi path of the device to use when several are connected
        table: Protocol table (default table if None)
        timeout: Per-exchange timeout override in seconds
        simulate: Talk to an in-memory simulated chip instead of USB
        sim_image: File backing the simulated flash (loaded and saved)

    Returns:
        Identified QoobSession; close it (or use `with`) when done

    Raises:
        DeviceNotFound: If no device matches
        MultipleDevices: If several devices match and no path was given
        PermissionDenied, DeviceBusy: If the device cannot be opened
        ProtocolMismatch, UnsupportedDevice: If identification fails
    """
    table = table or get_table()
    timeout = table.timeout if timeout is None else timeout

    if simulate:
        from qoob_flasher.simulator import SimulatedQoob

        transport = SimulatedQoob(table, backing=sim_image)
        transport.open()
        candidate = transport.candidate
    else:
        if isinstance(path, str):
            path = path.encode()
        candidates = [
            c for c in enumerate_devices(table)
            if path is None or c.path == path
        ]
        if not candidates:
            raise DeviceNotFound(
                "Device not found. Is the Qoob connected and in flashing mode?"
            )
        if len(candidates) > 1:
            raise MultipleDevices(len(candidates))
        candidate = candidates[0]
        transport = open_transport(
            table.usb.vendor_id,
            table.usb.product_id,
            path=candidate.path,
            timeout=timeout,
        )

    session = QoobSession(transport, candidate, table, timeout=timeout)
    try:
        session.identify()
    except Exception:
        session.close()
        raise
    return session
