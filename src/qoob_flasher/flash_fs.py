"""
Qoob flash filesystem.

The Qoob BIOS stores files ("slots") at sector boundaries. Each file
starts with a 256-byte header:

    0x00..0x04  magic (file type)
    0x04..0xF8  description, NUL-terminated
    0xFC..0x100 total size including the header, big-endian u32

A sector whose first 256 bytes are all erase value is empty. Files span
as many whole sectors as their size needs.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

from qoob_flasher.errors import (
    InvalidHeader,
    NoSuchFile,
    RangeOccupied,
    TooBig,
)
from qoob_flasher.programmer import FlashImage, FlashProgrammer, size_to_sectors

logger = logging.getLogger(__name__)

HEADER_SIZE = 256
DESCRIPTION_START = 0x04
DESCRIPTION_END = 0xF8
SIZE_OFFSET = 0xFC


class FileType(Enum):
    """File types recognised by the Qoob BIOS, keyed by header magic."""
    BIOS = b"(C) "
    BACKGROUND = b"QPIC"
    CONFIG = b"QCFG"
    CHEAT_DB = b"QCHT"
    CHEAT_ENGINE = b"QCHE"
    BIN = b"BIN\0"
    DOL = b"DOL\0"
    ELF = b"ELF\0"
    SWISS = b"SWIS"
    UNKNOWN = b""

    @classmethod
    def from_magic(cls, magic: bytes) -> "FileType":
        for member in cls:
            if member.value and member.value == magic:
                return member
        return cls.UNKNOWN


class SlotState(Enum):
    """What occupies a sector."""
    EMPTY = "empty"
    UNKNOWN = "unknown"
    FILE = "file"


@dataclass(frozen=True)
class SectorOccupancy:
    state: SlotState
    # First sector of the file occupying this one
    slot: Optional[int] = None


_ESCAPES = {
    0x09: "\\t",
    0x0A: "\\n",
    0x0D: "\\r",
    0x22: '\\"',
    0x27: "\\'",
    0x5C: "\\\\",
}


def _escape_byte(b: int) -> str:
    if b in _ESCAPES:
        return _ESCAPES[b]
    if 0x20 <= b < 0x7F:
        return chr(b)
    return f"\\x{b:02x}"


@dataclass(frozen=True)
class Header:
    """Parsed 256-byte file header."""
    raw: bytes

    @classmethod
    def parse(cls, data: bytes) -> "Header":
        if len(data) < HEADER_SIZE:
            raise InvalidHeader(f"Header is {len(data)} bytes, expected {HEADER_SIZE}")
        return cls(bytes(data[:HEADER_SIZE]))

    @property
    def magic(self) -> bytes:
        return self.raw[0:4]

    @property
    def file_type(self) -> FileType:
        return FileType.from_magic(self.magic)

    @property
    def description(self) -> bytes:
        return self.raw[DESCRIPTION_START:DESCRIPTION_END].split(b"\0", 1)[0]

    @property
    def description_string(self) -> str:
        """Description with tabs, newlines, quotes, backslashes and non-ASCII escaped."""
        return "".join(_escape_byte(b) for b in self.description)

    @property
    def size(self) -> int:
        return int.from_bytes(self.raw[SIZE_OFFSET:SIZE_OFFSET + 4], "big")

    def sector_count(self, sector_size: int) -> int:
        return size_to_sectors(self.size, sector_size)

    def to_dict(self, sector_size: int) -> Dict:
        return {
            "type": self.file_type.name,
            "magic": self.magic.hex(),
            "description": self.description_string,
            "size": self.size,
            "sectors": self.sector_count(sector_size),
        }


class QoobFs:
    """
    Slot-level view of a Qoob's flash.

    Example:
        fs = QoobFs(FlashProgrammer(session))
        for slot, header in fs.files().items():
            print(slot, header.description_string)
    """

    def __init__(self, programmer: FlashProgrammer, scan: bool = True):
        self.programmer = programmer
        info = programmer.info
        self.sector_size = info.sector_size
        self.sector_count = info.sector_count
        self.erase_value = info.erase_value
        self.sector_map: List[SectorOccupancy] = [
            SectorOccupancy(SlotState.UNKNOWN)
        ] * self.sector_count
        self.toc: Dict[int, Header] = {}
        if scan:
            self.scan()

    def _inspect_sector(self, sector: int) -> None:
        raw = self.programmer.read(sector * self.sector_size, HEADER_SIZE).data
        if raw == bytes([self.erase_value]) * HEADER_SIZE:
            self.sector_map[sector] = SectorOccupancy(SlotState.EMPTY)
            return

        header = Header.parse(raw)
        count = header.sector_count(self.sector_size)
        if (
            header.file_type is not FileType.UNKNOWN
            and 0 < count <= self.sector_count - sector
        ):
            for i in range(sector, sector + count):
                self.sector_map[i] = SectorOccupancy(SlotState.FILE, sector)
            self.toc[sector] = header
        else:
            self.sector_map[sector] = SectorOccupancy(SlotState.UNKNOWN)

    def scan(self) -> None:
        """Read every file header and rebuild the sector map."""
        self.toc.clear()
        self.sector_map = [SectorOccupancy(SlotState.UNKNOWN)] * self.sector_count
        cursor = 0
        while cursor < self.sector_count:
            self._inspect_sector(cursor)
            if cursor in self.toc:
                cursor += self.toc[cursor].sector_count(self.sector_size)
            else:
                cursor += 1
        logger.info(f"Found {len(self.toc)} file(s) in flash")

    def slots(self) -> List[SectorOccupancy]:
        return list(self.sector_map)

    def files(self) -> Dict[int, Header]:
        return dict(sorted(self.toc.items()))

    def slot_info(self, slot: int) -> Optional[Header]:
        return self.toc.get(slot)

    def _require(self, slot: int) -> Header:
        header = self.toc.get(slot)
        if header is None:
            raise NoSuchFile(slot)
        return header

    def read_file(self, slot: int) -> bytes:
        """Read a whole file, header included."""
        header = self._require(slot)
        return self.programmer.read(slot * self.sector_size, header.size).data

    def find_free(self, sectors: int) -> Optional[int]:
        """First slot followed by `sectors` empty sectors, or None."""
        run = 0
        for index, occupancy in enumerate(self.sector_map):
            run = run + 1 if occupancy.state is SlotState.EMPTY else 0
            if run == sectors:
                return index - sectors + 1
        return None

    def place(self, slot: Optional[int], data: Union[bytes, bytearray], erase: bool = False) -> int:
        """
        Write a file into flash.

        Args:
            slot: First sector, or None for the first free run
            data: Complete file, header included
            erase: Erase the destination sectors first instead of requiring
                   them to be empty

        Returns:
            The slot the file was written to

        Raises:
            InvalidHeader: Data does not start with a recognised header
            TooBig: File runs past the end of flash
            RangeOccupied: Destination not empty and erase is False, or
                           erasing it would cut into a file starting elsewhere
        """
        header = Header.parse(data)
        if header.file_type is FileType.UNKNOWN:
            raise InvalidHeader(f"Unknown file magic {header.magic!r}")
        if header.size != len(data):
            raise InvalidHeader(
                f"Header claims {header.size:,} bytes but file is {len(data):,}"
            )
        count = header.sector_count(self.sector_size)

        if slot is None:
            slot = self.find_free(count)
            if slot is None:
                raise TooBig(len(data), self._largest_free_run() * self.sector_size)
        available = (self.sector_count - slot) * self.sector_size
        if slot < 0 or len(data) > available:
            raise TooBig(len(data), max(available, 0))

        sectors = range(slot, slot + count)
        if erase:
            for owner in self._owners(sectors):
                if owner != slot and not self._contained(owner, sectors):
                    raise RangeOccupied(slot, count)
            self.programmer.erase(sectors)
        elif any(self.sector_map[s].state is not SlotState.EMPTY for s in sectors):
            raise RangeOccupied(slot, count)

        self.programmer.write(FlashImage(slot * self.sector_size, bytes(data)))
        if erase:
            # Files we partly overwrote leave orphaned sectors behind
            self.scan()
            if slot not in self.toc:
                raise RangeOccupied(slot, count)
        else:
            for s in sectors:
                self.sector_map[s] = SectorOccupancy(SlotState.FILE, slot)
            self.toc[slot] = header
        logger.info(f"Placed {header.file_type.name} '{header.description_string}' in slot {slot}")
        return slot

    def delete(self, slot: int) -> None:
        """Erase every sector of the file in `slot`."""
        header = self._require(slot)
        count = header.sector_count(self.sector_size)
        self.programmer.erase(range(slot, slot + count))
        for s in range(slot, slot + count):
            self.sector_map[s] = SectorOccupancy(SlotState.EMPTY)
        del self.toc[slot]

    def _owners(self, sectors: range) -> List[int]:
        """Slots of the files that claim any of `sectors`."""
        return sorted({
            self.sector_map[s].slot for s in sectors
            if self.sector_map[s].state is SlotState.FILE
        })

    def _contained(self, slot: int, sectors: range) -> bool:
        count = self.toc[slot].sector_count(self.sector_size)
        return sectors.start <= slot and slot + count <= sectors.stop

    def _largest_free_run(self) -> int:
        best = run = 0
        for occupancy in self.sector_map:
            run = run + 1 if occupancy.state is SlotState.EMPTY else 0
            best = max(best, run)
        return best
