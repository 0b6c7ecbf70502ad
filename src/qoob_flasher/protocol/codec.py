"""
Qoob command/response codec.

Translates typed operations into HID report frames and decodes response
reports. Every byte position comes from a ProtocolTable; this module holds
no opcode values or offsets of its own.

Command report (Qoob Pro table):
    [ 0x00 | opcode | operands... | zero padding | checksum (0..n) ]

    read / write:  addr (3 bytes, big-endian) | len (2 bytes, big-endian)
    erase:         sector (1 byte) | 0x0000
    bus:           0x00 | flag (1 = acquire, 0 = release)

Data report (write payload out, read data in):
    [ 0x00 | 0x00 | up to 63 payload bytes | checksum (0..n) ]

Status report:
    [ 0x00 | ? | flash busy | ? | bus state | ... ]
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, Union

from qoob_flasher.errors import (
    BusBusy,
    ChecksumInvalid,
    ProtocolMismatch,
)
from qoob_flasher.protocol.tables import ProtocolTable

logger = logging.getLogger(__name__)


# ============================================================================
# CHECKSUMS
# ============================================================================

def crc16_xmodem(data: bytes) -> int:
    """
    Calculate CRC16-XMODEM checksum (poly 0x1021, init 0).

    Args:
        data: Bytes to calculate checksum over

    Returns:
        16-bit CRC value
    """
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def sum8(data: bytes) -> int:
    """Byte-wise sum modulo 256."""
    return sum(data) & 0xFF


def xor8(data: bytes) -> int:
    """Byte-wise XOR."""
    value = 0
    for byte in data:
        value ^= byte
    return value


def no_checksum(data: bytes) -> int:
    return 0


CHECKSUMS: Dict[str, Callable[[bytes], int]] = {
    "none": no_checksum,
    "sum8": sum8,
    "xor8": xor8,
    "crc16-xmodem": crc16_xmodem,
}


# ============================================================================
# OPERATIONS
# ============================================================================

@dataclass(frozen=True)
class Status:
    """Query the status report."""


@dataclass(frozen=True)
class Reset:
    """Ask the chip to reset. Nothing comes back."""


@dataclass(frozen=True)
class Bus:
    """Acquire or release the flash bus."""
    acquire: bool


@dataclass(frozen=True)
class Erase:
    """Erase one sector."""
    sector: int


@dataclass(frozen=True)
class Read:
    """Read `length` bytes starting at `address`."""
    address: int
    length: int


@dataclass(frozen=True)
class Write:
    """Write `data` starting at `address`."""
    address: int
    data: bytes


Operation = Union[Status, Reset, Bus, Erase, Read, Write]


@dataclass(frozen=True)
class StatusReport:
    """Decoded status report."""
    flash_busy: int
    bus: int
    raw: bytes

    @property
    def busy(self) -> bool:
        return self.flash_busy != 0


# ============================================================================
# CODEC
# ============================================================================

class QoobCodec:
    """
    Pure encoder/decoder for one protocol table.

    Example:
        codec = QoobCodec(get_table())
        frames = codec.encode(Read(address=0, length=256))
        report = codec.decode_status(response_bytes)
    """

    def __init__(self, table: ProtocolTable):
        if table.frame.checksum not in CHECKSUMS:
            raise ValueError(f"Unknown checksum algorithm '{table.frame.checksum}'")
        self.table = table
        self.layout = table.frame
        self._checksum_fn = CHECKSUMS[table.frame.checksum]

    # --- checksums ---------------------------------------------------------

    def checksum(self, body: bytes) -> int:
        """Checksum over `body`, truncated to the table's checksum width."""
        width = self.layout.checksum_width
        if width == 0:
            return 0
        return self._checksum_fn(body) & ((1 << (8 * width)) - 1)

    def seal(self, frame: bytearray) -> bytes:
        """Fill in the trailing checksum and freeze the frame."""
        width = self.layout.checksum_width
        if width:
            end = self.layout.checksum_offset
            crc = self.checksum(bytes(frame[1:end]))
            frame[end:end + width] = crc.to_bytes(width, "big")
        return bytes(frame)

    def _blank(self, opcode: int) -> bytearray:
        frame = bytearray(self.layout.report_size)
        frame[0] = self.layout.report_id
        self.layout.opcode.pack_into(frame, opcode)
        return frame

    # --- encoding ----------------------------------------------------------

    def command_frame(self, op: Operation) -> bytes:
        """Build the single command frame that starts `op`."""
        layout = self.layout
        if isinstance(op, Status):
            frame = self._blank(self.table.opcode("status"))
        elif isinstance(op, Reset):
            frame = self._blank(self.table.opcode("reset"))
        elif isinstance(op, Bus):
            frame = self._blank(self.table.opcode("bus"))
            layout.bus_flag.pack_into(frame, 1 if op.acquire else 0)
        elif isinstance(op, Erase):
            frame = self._blank(self.table.opcode("erase"))
            layout.sector.pack_into(frame, op.sector)
            # Vendor tool always sends these as zero
            layout.erase_padding.pack_into(frame, 0)
        elif isinstance(op, (Read, Write)):
            length = op.length if isinstance(op, Read) else len(op.data)
            if length > layout.max_transfer:
                raise ValueError(
                    f"Transfer of {length} bytes exceeds maximum of {layout.max_transfer}"
                )
            name = "read" if isinstance(op, Read) else "write"
            frame = self._blank(self.table.opcode(name))
            layout.address.pack_into(frame, op.address)
            layout.length.pack_into(frame, length)
        else:
            raise TypeError(f"Unknown operation: {op!r}")
        return self.seal(frame)

    def data_frame(self, chunk: bytes) -> bytes:
        """Build one payload report carrying up to `data_unit` bytes."""
        unit = self.layout.data_unit
        if len(chunk) > unit:
            raise ValueError(f"Chunk of {len(chunk)} bytes exceeds data unit {unit}")
        frame = bytearray(self.layout.report_size)
        frame[0] = self.layout.report_id
        start = self.layout.payload_offset
        frame[start:start + len(chunk)] = chunk
        return self.seal(frame)

    def encode(self, op: Operation) -> Tuple[bytes, ...]:
        """
        Encode an operation into the frames sent to the device.

        Pure: builds new bytes and touches nothing else. A write yields its
        command frame followed by one data frame per `data_unit` bytes.
        """
        frames = [self.command_frame(op)]
        if isinstance(op, Write):
            unit = self.layout.data_unit
            for start in range(0, len(op.data), unit):
                frames.append(self.data_frame(op.data[start:start + unit]))
        return tuple(frames)

    def response_count(self, op: Operation) -> int:
        """Number of data reports the device sends back for `op`."""
        if isinstance(op, Read):
            unit = self.layout.data_unit
            return (op.length + unit - 1) // unit
        return 0

    # --- decoding ----------------------------------------------------------

    def _check_frame(self, frame: bytes) -> None:
        layout = self.layout
        if len(frame) != layout.report_size:
            raise ProtocolMismatch(
                f"Response is {len(frame)} bytes, expected {layout.report_size}"
            )
        if frame[0] != layout.report_id:
            raise ProtocolMismatch(
                f"Response report id 0x{frame[0]:02X}, expected 0x{layout.report_id:02X}"
            )
        width = layout.checksum_width
        if width:
            end = layout.checksum_offset
            expected = self.checksum(bytes(frame[1:end]))
            actual = int.from_bytes(frame[end:end + width], "big")
            if expected != actual:
                raise ChecksumInvalid(expected, actual)

    def decode_status(self, frame: bytes) -> StatusReport:
        """
        Decode a status report.

        Raises:
            ProtocolMismatch: Wrong length or report id
            ChecksumInvalid: Trailing checksum does not match
            BusBusy: The console holds the flash bus
        """
        self._check_frame(frame)
        status = self.table.status
        report = StatusReport(
            flash_busy=status.flash_busy.unpack(frame),
            bus=status.bus.unpack(frame),
            raw=bytes(frame),
        )
        if report.bus & status.bus_busy_mask:
            raise BusBusy(report.bus)
        return report

    def decode_data(self, frame: bytes) -> bytes:
        """
        Decode a data report and return its payload.

        Raises:
            ProtocolMismatch: Wrong length or report id
            ChecksumInvalid: Trailing checksum does not match
        """
        self._check_frame(frame)
        return bytes(frame[self.layout.payload_offset:self.layout.checksum_offset])

    def decode(self, frame: bytes, kind: str = "status") -> Union[StatusReport, bytes]:
        """Decode a response report of the given kind ("status" or "data")."""
        if kind == "status":
            return self.decode_status(frame)
        if kind == "data":
            return self.decode_data(frame)
        raise ValueError(f"Unknown response kind: {kind}")
