"""
Device discovery and identification.

enumerate_devices() lists candidate chips from the host's HID device list
without touching them. identify() runs the identification handshake on an
open transport and returns the session's DeviceInfo.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import hid

from qoob_flasher.errors import (
    BusBusy,
    ChecksumInvalid,
    PartialTransfer,
    ProtocolMismatch,
    UnsupportedDevice,
)
from qoob_flasher.protocol.codec import QoobCodec, Status
from qoob_flasher.protocol.exchange import Exchange, ReportTransport
from qoob_flasher.protocol.tables import ProtocolTable, get_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceCandidate:
    """A matching entry in the host's HID device list."""
    path: bytes
    vendor_id: int
    product_id: int
    manufacturer: str = ""
    product: str = ""
    serial: str = ""
    release: int = 0

    @classmethod
    def from_hid(cls, info: Dict[str, Any]) -> "DeviceCandidate":
        return cls(
            path=info["path"],
            vendor_id=info["vendor_id"],
            product_id=info["product_id"],
            manufacturer=info.get("manufacturer_string") or "",
            product=info.get("product_string") or "",
            serial=info.get("serial_number") or "",
            release=info.get("release_number") or 0,
        )

    @property
    def display_path(self) -> str:
        return self.path.decode(errors="replace")


@dataclass(frozen=True)
class DeviceInfo:
    """
    Identity and flash geometry of a connected chip.

    Queried once per session and read-only afterwards.
    """
    vendor_id: int
    product_id: int
    version: int
    manufacturer: str
    product: str
    serial: str
    path: str
    table: str
    total_size: int
    page_size: int
    sector_size: int
    sector_count: int
    erase_value: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def enumerate_devices(table: Optional[ProtocolTable] = None) -> List[DeviceCandidate]:
    """
    List connected devices matching the table's vendor/product id.

    A pure read of the host's device list; no device is opened.

    Args:
        table: Protocol table to match against (default table if None)

    Returns:
        Candidates in host enumeration order.
    """
    table = table or get_table()
    candidates = []
    for info in hid.enumerate(table.usb.vendor_id, table.usb.product_id):
        # Some backends ignore the filter arguments
        if info["vendor_id"] != table.usb.vendor_id or info["product_id"] != table.usb.product_id:
            continue
        candidates.append(DeviceCandidate.from_hid(info))
    logger.debug(f"Found {len(candidates)} candidate device(s)")
    return candidates


def check_candidate(candidate: DeviceCandidate, table: ProtocolTable) -> None:
    """
    Reject devices outside the table's known-good set.

    Raises:
        UnsupportedDevice: On any identity or geometry mismatch
    """
    usb = table.usb
    if (candidate.vendor_id, candidate.product_id) != (usb.vendor_id, usb.product_id):
        raise UnsupportedDevice(
            f"Device {candidate.vendor_id:04x}:{candidate.product_id:04x} is not "
            f"{usb.vendor_id:04x}:{usb.product_id:04x}"
        )
    if usb.manufacturer is not None and candidate.manufacturer != usb.manufacturer:
        raise UnsupportedDevice(
            f"Unexpected manufacturer '{candidate.manufacturer}' (expected '{usb.manufacturer}')"
        )
    if usb.product is not None and candidate.product != usb.product:
        raise UnsupportedDevice(
            f"Unexpected product '{candidate.product}' (expected '{usb.product}')"
        )
    if usb.releases is not None and candidate.release not in usb.releases:
        raise UnsupportedDevice(
            f"Unsupported protocol version 0x{candidate.release:04X}"
        )
    table.geometry.validate()


def identify(
    transport: ReportTransport,
    candidate: DeviceCandidate,
    table: Optional[ProtocolTable] = None,
) -> DeviceInfo:
    """
    Run the identification handshake.

    Sends a status request and checks the answer has the table's report
    shape before trusting the descriptor data.

    Args:
        transport: Open transport to the device
        candidate: Enumeration entry the transport was opened from
        table: Protocol table to identify against

    Returns:
        DeviceInfo for the session

    Raises:
        ProtocolMismatch: If the response length or checksum is invalid
        UnsupportedDevice: If the device is outside the known-good set
    """
    table = table or get_table()
    check_candidate(candidate, table)

    codec = QoobCodec(table)
    try:
        Exchange(transport, codec, Status()).run()
    except ChecksumInvalid as e:
        raise ProtocolMismatch(f"Identification response failed checksum: {e}") from e
    except PartialTransfer as e:
        raise ProtocolMismatch(f"Identification response has the wrong length: {e}") from e
    except BusBusy:
        # Answered in the right shape; the console just owns the bus right now
        logger.info("Console currently holds the flash bus")

    geometry = table.geometry
    info = DeviceInfo(
        vendor_id=candidate.vendor_id,
        product_id=candidate.product_id,
        version=candidate.release,
        manufacturer=candidate.manufacturer,
        product=candidate.product,
        serial=candidate.serial,
        path=candidate.display_path,
        table=table.name,
        total_size=geometry.total_size,
        page_size=geometry.page_size,
        sector_size=geometry.sector_size,
        sector_count=geometry.sector_count,
        erase_value=geometry.erase_value,
    )
    logger.info(
        f"Identified {info.manufacturer} {info.product} "
        f"(v{info.version:04X}, {info.total_size // 1024} KiB flash)"
    )
    return info
