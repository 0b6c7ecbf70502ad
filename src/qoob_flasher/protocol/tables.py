"""
Protocol compatibility tables for Qoob modchips.

Provides a single source of truth for:
- USB identity (vendor/product id, descriptor strings)
- Opcode values
- Command/response frame layouts and checksum algorithm
- Status report fields
- Flash geometry (page, sector and total size, erase value)

All of it is frozen data. Supporting a new hardware revision means
registering a new table, not adding branches to the codec.

Usage:
    from qoob_flasher.protocol.tables import get_table, list_tables

    table = get_table("qoob-pro-hid-v1")
    table.geometry.sector_size   # 0x10000
    table.opcodes["erase"]       # 2
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional

from qoob_flasher.errors import UnsupportedDevice


@dataclass(frozen=True)
class Field:
    """A big-endian integer field inside a frame."""
    offset: int
    width: int = 1

    @property
    def end(self) -> int:
        return self.offset + self.width

    def pack_into(self, frame: bytearray, value: int) -> None:
        if value < 0 or value >= 1 << (8 * self.width):
            raise ValueError(f"Value 0x{value:X} does not fit in {self.width} byte(s)")
        frame[self.offset:self.end] = value.to_bytes(self.width, "big")

    def unpack(self, frame: bytes) -> int:
        return int.from_bytes(frame[self.offset:self.end], "big")


@dataclass(frozen=True)
class FrameLayout:
    """
    Byte layout of command and response reports.

    Attributes:
        report_size: Size of every HID report, report id included
        report_id: Value of byte 0 (hidapi strips/adds it)
        opcode: Position of the opcode byte
        address: Flash address operand (read/write)
        length: Transfer length operand (read/write)
        sector: Sector index operand (erase)
        bus_flag: Acquire (1) / release (0) operand (bus)
        erase_padding: Zero bytes the vendor tool writes after the sector index
        payload_offset: First payload byte in data reports (both directions)
        checksum: Name of the checksum algorithm (see codec.CHECKSUMS)
        checksum_width: Trailing checksum bytes per report (0 = none)
        max_transfer: Largest read/write length one command may carry
    """
    report_size: int = 65
    report_id: int = 0
    opcode: Field = Field(1)
    address: Field = Field(2, 3)
    length: Field = Field(5, 2)
    sector: Field = Field(2)
    bus_flag: Field = Field(3)
    erase_padding: Field = Field(3, 2)
    payload_offset: int = 2
    checksum: str = "none"
    checksum_width: int = 0
    max_transfer: int = 0x8000

    @property
    def checksum_offset(self) -> int:
        return self.report_size - self.checksum_width

    @property
    def data_unit(self) -> int:
        """Payload bytes carried by one data report."""
        return self.checksum_offset - self.payload_offset


@dataclass(frozen=True)
class StatusLayout:
    """
    Fields of the status report returned by the status command.

    The flash-busy byte stays non-zero while an erase or write is running.
    The bus byte tells who owns the flash bus: the host, nobody, or the
    console (busy bit set).
    """
    flash_busy: Field = Field(2)
    bus: Field = Field(4)
    bus_held: int = 0
    bus_released: int = 1
    bus_busy_mask: int = 0x02


@dataclass(frozen=True)
class FlashGeometry:
    """Flash layout as seen through the protocol."""
    page_size: int
    sector_size: int
    sector_count: int
    erase_value: int = 0xFF

    @property
    def total_size(self) -> int:
        return self.sector_size * self.sector_count

    @property
    def pages_per_sector(self) -> int:
        return self.sector_size // self.page_size

    def validate(self) -> None:
        """
        Check the geometry is internally consistent.

        Raises:
            UnsupportedDevice: If pages don't tile sectors or sizes are zero
        """
        if self.page_size <= 0 or self.sector_size <= 0 or self.sector_count <= 0:
            raise UnsupportedDevice(f"Invalid flash geometry: {self}")
        if self.sector_size < self.page_size or self.sector_size % self.page_size:
            raise UnsupportedDevice(
                f"Sector size 0x{self.sector_size:X} is not a multiple of "
                f"page size 0x{self.page_size:X}"
            )
        if not 0 <= self.erase_value <= 0xFF:
            raise UnsupportedDevice(f"Invalid erase value 0x{self.erase_value:X}")


@dataclass(frozen=True)
class UsbIdentity:
    """How the device shows up on the bus in flashing mode."""
    vendor_id: int
    product_id: int
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    # None accepts any release number
    releases: Optional[FrozenSet[int]] = None


@dataclass(frozen=True)
class ProtocolTable:
    """
    A frozen, versioned protocol description.

    Everything the codec needs to talk to one hardware revision.
    """
    name: str
    version: int
    usb: UsbIdentity
    geometry: FlashGeometry
    opcodes: Mapping[str, int]
    frame: FrameLayout = field(default_factory=FrameLayout)
    status: StatusLayout = field(default_factory=StatusLayout)
    # Time allowed for one command/response exchange, in seconds
    timeout: float = 5.0
    # Seconds between status polls
    poll_interval: float = 0.001
    notes: List[str] = field(default_factory=list)

    def opcode(self, name: str) -> int:
        try:
            return self.opcodes[name]
        except KeyError:
            raise ValueError(f"Table {self.name} has no opcode for '{name}'")


# ============================================================================
# TABLE REGISTRY - All known protocol revisions
# ============================================================================

_TABLE_REGISTRY: Dict[str, ProtocolTable] = {}

DEFAULT_TABLE = "qoob-pro-hid-v1"


def _register_table(table: ProtocolTable) -> None:
    """Register a protocol table."""
    table.geometry.validate()
    _TABLE_REGISTRY[table.name] = table


def _init_registry() -> None:
    """Initialize the registry with known protocol revisions."""

    # Qoob Pro, HID bootloader
    _register_table(ProtocolTable(
        name="qoob-pro-hid-v1",
        version=1,
        usb=UsbIdentity(
            vendor_id=0x03EB,  # Atmel Corp.
            product_id=0x0001,  # Not listed in usb.ids
            manufacturer="QooB Team",
            product="QOOB Chip Pro",
        ),
        geometry=FlashGeometry(
            page_size=0x8000,
            sector_size=0x10000,
            sector_count=32,
            erase_value=0xFF,
        ),
        opcodes={
            "reset": 1,
            "erase": 2,
            "write": 3,
            "read": 4,
            "status": 5,
            "bus": 8,
        },
        frame=FrameLayout(),
        status=StatusLayout(),
        notes=[
            "65-byte HID reports, report id 0",
            "Responses are read as feature reports",
            "No frame checksum on this revision",
            "Bus must be acquired before flash access, the console is locked out meanwhile",
            "Reset is accepted but ignored by production firmware",
        ],
    ))


# Initialize registry on module load
_init_registry()


# ============================================================================
# PUBLIC API
# ============================================================================

def list_tables() -> List[str]:
    """
    List all registered table names.

    Returns:
        Sorted list of table names.
    """
    return sorted(_TABLE_REGISTRY.keys())


def get_table(name: str = DEFAULT_TABLE) -> ProtocolTable:
    """
    Get a protocol table by name.

    Raises:
        ValueError: If no table with that name is registered
    """
    try:
        return _TABLE_REGISTRY[name]
    except KeyError:
        raise ValueError(
            f"Unknown protocol table '{name}'. Known tables: {', '.join(list_tables())}"
        )


def find_table(vendor_id: int, product_id: int) -> Optional[ProtocolTable]:
    """Find the first table whose USB identity matches the given ids."""
    for table in _TABLE_REGISTRY.values():
        if table.usb.vendor_id == vendor_id and table.usb.product_id == product_id:
            return table
    return None
