"""
Simulated Qoob chip.

Implements the transport interface against an in-memory flash so every
workflow can run without hardware (--simulate) and tests can inject the
faults real chips and cables produce: dropped responses, corrupted
checksums, sectors that refuse to erase and pages that program wrong.

Flash behaves like NOR: erase sets a sector to the erase value, programming
can only clear bits.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Union

from qoob_flasher.errors import PartialTransfer, Timeout, TransportError
from qoob_flasher.protocol.codec import QoobCodec
from qoob_flasher.protocol.discovery import DeviceCandidate
from qoob_flasher.protocol.tables import ProtocolTable, get_table

logger = logging.getLogger(__name__)

SIMULATED_PATH = b"sim:qoob"


@dataclass
class CommandRecord:
    """One command frame as the simulated chip understood it."""
    op: str
    index: int
    address: Optional[int] = None
    length: Optional[int] = None
    sector: Optional[int] = None
    flag: Optional[int] = None


@dataclass
class ResponseFault:
    """
    Damage the responses to matching commands.

    kind:
        "checksum" - flip the trailing checksum of the next response
        "drop"     - discard the pending responses (receive times out)
        "short"    - truncate the next response
    """
    kind: str
    match: Callable[[CommandRecord], bool]
    remaining: int = 1


@dataclass
class _PendingWrite:
    address: int
    length: int
    data: bytearray = field(default_factory=bytearray)


class SimulatedQoob:
    """
    In-memory stand-in for a Qoob in flashing mode.

    Example:
        sim = SimulatedQoob()
        sim.fail_erase(sector=2, times=3)
        sim.add_fault("drop", lambda rec: rec.op == "read", times=2)
    """

    def __init__(
        self,
        table: Optional[ProtocolTable] = None,
        backing: Optional[Union[str, Path]] = None,
        busy_polls: int = 1,
        release: int = 0x0100,
    ):
        self.table = table or get_table()
        self.codec = QoobCodec(self.table)
        self.backing = Path(backing) if backing else None
        self.busy_polls = busy_polls
        geometry = self.table.geometry
        self.flash = bytearray([geometry.erase_value]) * geometry.total_size
        self.bus = self.table.status.bus_released
        self.console_holds_bus = False
        self.commands: List[CommandRecord] = []
        self.faults: List[ResponseFault] = []
        self.erase_failures: Dict[int, int] = {}
        self.write_failures: Dict[int, int] = {}
        self.bad_frames = 0
        self.was_reset = False
        self._counts: Dict[str, int] = {}
        self._responses: Deque[bytes] = deque()
        self._pending_write: Optional[_PendingWrite] = None
        self._busy = 0
        self._current: Optional[CommandRecord] = None
        self._open = False
        usb = self.table.usb
        self.candidate = DeviceCandidate(
            path=SIMULATED_PATH,
            vendor_id=usb.vendor_id,
            product_id=usb.product_id,
            manufacturer=usb.manufacturer or "",
            product=usb.product or "",
            serial="SIMULATED",
            release=release,
        )

    # --- fault injection ---------------------------------------------------

    def add_fault(
        self,
        kind: str,
        match: Callable[[CommandRecord], bool],
        times: int = 1,
    ) -> ResponseFault:
        if kind not in ("checksum", "drop", "short"):
            raise ValueError(f"Unknown fault kind: {kind}")
        fault = ResponseFault(kind, match, times)
        self.faults.append(fault)
        return fault

    def fail_erase(self, sector: int, times: int = 1) -> None:
        """Leave `sector` non-blank for the next `times` erases."""
        self.erase_failures[sector] = times

    def fail_write(self, address: int, times: int = 1) -> None:
        """Leave the first byte of the page at `address` unprogrammed for the next `times` writes."""
        self.write_failures[address] = times

    def count(self, op: str) -> int:
        """Number of `op` commands received so far."""
        return self._counts.get(op, 0)

    # --- transport interface -----------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        if self.backing is not None and self.backing.exists():
            data = self.backing.read_bytes()[:len(self.flash)]
            self.flash[:len(data)] = data
            logger.debug(f"Loaded simulated flash from {self.backing}")
        self._open = True

    def close(self) -> None:
        if self._open and self.backing is not None:
            self.backing.write_bytes(bytes(self.flash))
            logger.debug(f"Saved simulated flash to {self.backing}")
        self._open = False

    def __enter__(self) -> "SimulatedQoob":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def send(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("Device not open")
        layout = self.table.frame
        if len(data) != layout.report_size:
            raise PartialTransfer(len(data), layout.report_size)
        if not self._checksum_ok(data):
            self.bad_frames += 1
            logger.debug("Simulated chip ignored frame with bad checksum")
            return
        if self._pending_write is not None:
            self._take_payload(data)
            return
        self._handle_command(data)

    def receive(self, expected_len: int, timeout: Optional[float] = None) -> bytes:
        if not self._open:
            raise TransportError("Device not open")
        if not self._responses:
            raise Timeout("Device did not respond (timeout)")
        report = self._responses.popleft()
        fault = self._fault_for(self._current)
        if fault == "drop":
            self._responses.clear()
            raise Timeout("Device did not respond (timeout)")
        if fault == "checksum":
            damaged = bytearray(report)
            damaged[-1] ^= 0xFF
            report = bytes(damaged)
        elif fault == "short":
            report = report[:-1]
        if len(report) != expected_len:
            raise PartialTransfer(len(report), expected_len)
        return report

    # --- chip behaviour ----------------------------------------------------

    def _checksum_ok(self, frame: bytes) -> bool:
        layout = self.table.frame
        width = layout.checksum_width
        if not width:
            return True
        end = layout.checksum_offset
        return self.codec.checksum(frame[1:end]) == int.from_bytes(frame[end:end + width], "big")

    def _fault_for(self, record: Optional[CommandRecord]) -> Optional[str]:
        if record is None:
            return None
        for fault in self.faults:
            if fault.remaining > 0 and fault.match(record):
                fault.remaining -= 1
                return fault.kind
        return None

    def _record(self, op: str, **operands) -> CommandRecord:
        self._counts[op] = self._counts.get(op, 0) + 1
        record = CommandRecord(op=op, index=self._counts[op], **operands)
        self.commands.append(record)
        return record

    def _handle_command(self, frame: bytes) -> None:
        layout = self.table.frame
        opcodes = {value: name for name, value in self.table.opcodes.items()}
        name = opcodes.get(layout.opcode.unpack(frame))
        if name is None:
            self.bad_frames += 1
            return

        if name == "status":
            record = self._record("status")
            if self._current is None:
                self._current = record
            self._responses.append(self._status_report())
            return

        if name in ("read", "write"):
            record = self._record(
                name,
                address=layout.address.unpack(frame),
                length=layout.length.unpack(frame),
            )
        elif name == "erase":
            record = self._record(name, sector=layout.sector.unpack(frame))
        elif name == "bus":
            record = self._record(name, flag=layout.bus_flag.unpack(frame))
        else:
            record = self._record(name)
        self._current = record
        self._responses.clear()

        if name == "read":
            self._queue_read(record.address, record.length)
        elif name == "write":
            self._pending_write = _PendingWrite(record.address, record.length)
            if record.length == 0:
                self._finish_write()
        elif name == "erase":
            self._erase(record.sector)
        elif name == "bus":
            self._set_bus(bool(record.flag))
        elif name == "reset":
            self.was_reset = True

    def _status_report(self) -> bytes:
        status = self.table.status
        frame = bytearray(self.table.frame.report_size)
        frame[0] = self.table.frame.report_id
        status.flash_busy.pack_into(frame, 1 if self._busy else 0)
        bus = self.bus
        if self.console_holds_bus:
            bus |= status.bus_busy_mask
        status.bus.pack_into(frame, bus)
        if self._busy:
            self._busy -= 1
        return self.codec.seal(frame)

    def _set_bus(self, acquire: bool) -> None:
        status = self.table.status
        if acquire and self.console_holds_bus:
            return
        self.bus = status.bus_held if acquire else status.bus_released

    def _queue_read(self, address: int, length: int) -> None:
        unit = self.table.frame.data_unit
        for start in range(address, address + length, unit):
            chunk = bytes(self.flash[start:min(start + unit, address + length)])
            self._responses.append(self.codec.data_frame(chunk))

    def _take_payload(self, frame: bytes) -> None:
        layout = self.table.frame
        pending = self._pending_write
        remaining = pending.length - len(pending.data)
        take = min(layout.data_unit, remaining)
        pending.data += frame[layout.payload_offset:layout.payload_offset + take]
        if len(pending.data) >= pending.length:
            self._finish_write()

    def _finish_write(self) -> None:
        pending, self._pending_write = self._pending_write, None
        skip = 0
        if self.write_failures.get(pending.address, 0) > 0 and pending.data:
            self.write_failures[pending.address] -= 1
            skip = 1
        for i in range(skip, len(pending.data)):
            self.flash[pending.address + i] &= pending.data[i]
        self._busy = self.busy_polls

    def _erase(self, sector: int) -> None:
        geometry = self.table.geometry
        if sector >= geometry.sector_count:
            return
        start = sector * geometry.sector_size
        end = start + geometry.sector_size
        self.flash[start:end] = bytes([geometry.erase_value]) * geometry.sector_size
        if self.erase_failures.get(sector, 0) > 0:
            self.erase_failures[sector] -= 1
            self.flash[end - 1] = geometry.erase_value ^ 0xFF
        self._busy = self.busy_polls
