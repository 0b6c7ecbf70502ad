"""
Flash programmer.

Sequences erase, write, read and verify on top of the codec:

- erase:  one erase command per sector, ascending, each followed by a
          blank-check read of the whole sector
- write:  page by page, each page read back and compared before the next
- read:   one read command per page, reassembled in address order
- verify: read and compare against a supplied image

Retry policy lives here and nowhere else. Transient errors (timeout,
checksum, short transfer) repeat the single failed command; a failed
blank-check or read-back compare repeats the whole sector or page. Either
kind gives up after `retries` attempts and aborts the operation with the
address where it stopped.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from qoob_flasher.progress import NullProgress, ProgressSink
from qoob_flasher.errors import (
    AlignmentError,
    BlankCheckFailed,
    FlashRangeError,
    OperationCancelled,
    RetryBudgetExceeded,
    TransientError,
    VerifyMismatch,
)
from qoob_flasher.protocol.codec import Bus, Erase, Operation, Read, Write
from qoob_flasher.protocol.discovery import DeviceInfo
from qoob_flasher.protocol.exchange import Exchange
from qoob_flasher.session import QoobSession

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3

# Bytes of context kept on each side of a mismatch
MISMATCH_CONTEXT = 16


@dataclass(frozen=True)
class FlashImage:
    """Bytes located at a flash address."""
    address: int
    data: bytes

    @property
    def end(self) -> int:
        return self.address + len(self.data)

    def __len__(self) -> int:
        return len(self.data)


def size_to_sectors(size: int, sector_size: int) -> int:
    """How many sectors `size` bytes would span."""
    return (size + sector_size - 1) // sector_size


def first_mismatch(expected: bytes, actual: bytes) -> Optional[int]:
    """Offset of the first differing byte, or None if equal."""
    if expected == actual:
        return None
    for i, (a, b) in enumerate(zip(expected, actual)):
        if a != b:
            return i
    return min(len(expected), len(actual))


class FlashProgrammer:
    """
    Multi-step flash operations for one session.

    Args:
        session: Open, identified session
        retries: Attempts per command / page / sector before giving up
        progress: Sink receiving per-page/sector progress
        cancel: Event checked between pages/sectors; set it to stop

    Example:
        with connect() as session:
            programmer = FlashProgrammer(session)
            programmer.erase(range(0, 2))
            programmer.write(FlashImage(0, data))
    """

    def __init__(
        self,
        session: QoobSession,
        retries: int = DEFAULT_RETRIES,
        progress: Optional[ProgressSink] = None,
        cancel: Optional[threading.Event] = None,
    ):
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.session = session
        self.retries = retries
        self.progress = progress or NullProgress()
        self.cancel = cancel

    @property
    def info(self) -> DeviceInfo:
        return self.session.info

    # --- command layer -----------------------------------------------------

    def _command(
        self,
        stage: str,
        address: Optional[int],
        op: Operation,
        last_good: Optional[int] = None,
    ):
        """
        Run one exchange, repeating it on transient errors.

        Raises:
            RetryBudgetExceeded: After `retries` transient failures in a row
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            exchange = Exchange(
                self.session.transport, self.session.codec, op, self.session.timeout
            )
            try:
                return exchange.run()
            except TransientError as e:
                last_error = e
                logger.warning(
                    f"{stage} at 0x{address or 0:06X}: attempt {attempt}/{self.retries} "
                    f"failed ({exchange.state.value}): {e}"
                )
        raise RetryBudgetExceeded(stage, address, self.retries, last_error, last_good)

    def _read_raw(self, stage: str, address: int, length: int, last_good=None) -> bytes:
        data = self._command(stage, address, Read(address, length), last_good)
        return bytes(data)

    @contextmanager
    def _bus(self) -> Iterator[None]:
        """Hold the flash bus; the console is locked out meanwhile."""
        self._command("bus", None, Bus(acquire=True))
        try:
            yield
        except BaseException:
            try:
                self._command("bus", None, Bus(acquire=False))
            except Exception as e:
                logger.warning(f"Could not release bus after failure: {e}")
            raise
        self._command("bus", None, Bus(acquire=False))

    def _check_cancel(self, stage: str, address: int, last_good: Optional[int] = None) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise OperationCancelled(stage, address, last_good)

    # --- range checks ------------------------------------------------------

    def _check_range(self, address: int, length: int) -> None:
        total = self.info.total_size
        if address < 0 or length < 0 or address + length > total:
            raise FlashRangeError(
                f"Range 0x{address:06X}+0x{length:X} is outside flash (0x{total:06X} bytes)"
            )

    def check_write(self, image: FlashImage) -> range:
        """
        Validate an image before anything touches flash.

        Returns:
            The sectors the padded image covers

        Raises:
            AlignmentError: Image address not page-aligned
            FlashRangeError: Padded image runs past the end of flash
        """
        info = self.info
        page = info.page_size
        if image.address % page:
            raise AlignmentError(
                f"Write address 0x{image.address:06X} is not aligned to "
                f"0x{page:X}-byte pages"
            )
        padded_len = (len(image.data) + page - 1) // page * page
        self._check_range(image.address, padded_len)
        if not padded_len:
            return range(0)
        first = image.address // info.sector_size
        last = (image.address + padded_len - 1) // info.sector_size
        return range(first, last + 1)

    def _sector_range(self, sectors: Union[range, int]) -> range:
        if isinstance(sectors, int):
            sectors = range(sectors, sectors + 1)
        if sectors.step != 1:
            raise ValueError("Sector range must be contiguous")
        count = self.info.sector_count
        if sectors.start < 0 or sectors.stop > count or sectors.start > sectors.stop:
            raise FlashRangeError(
                f"Sectors {sectors.start}..{sectors.stop - 1} outside 0..{count - 1}"
            )
        return sectors

    def _pages(self, address: int, length: int) -> Iterator[tuple]:
        """Split a range at page boundaries into (address, length) pieces."""
        page = self.info.page_size
        cursor = address
        end = address + length
        while cursor < end:
            piece = min(page - cursor % page, end - cursor)
            yield cursor, piece
            cursor += piece

    # --- erase -------------------------------------------------------------

    def _blank_check(self, sector: int) -> Optional[tuple]:
        """Return (offset, value) of the first non-blank byte, or None."""
        info = self.info
        base = sector * info.sector_size
        for address, length in self._pages(base, info.sector_size):
            data = self._read_raw("blank-check", address, length)
            for i, value in enumerate(data):
                if value != info.erase_value:
                    return address + i, value
        return None

    def erase(self, sectors: Union[range, int]) -> None:
        """
        Erase sectors in ascending order, blank-checking each one.

        Args:
            sectors: Sector index or contiguous range of indices

        Raises:
            BlankCheckFailed: A sector stayed non-blank for every attempt
            RetryBudgetExceeded: A command kept failing transiently
            OperationCancelled: Cancel was set between sectors
            FlashRangeError: Sectors outside the device
        """
        with self.session.lock:
            info = self.info
            sectors = self._sector_range(sectors)
            total = len(sectors) * info.sector_size
            done = 0
            logger.info(f"Erasing sectors {sectors.start}..{sectors.stop - 1}")
            try:
                with self._bus():
                    for sector in sectors:
                        address = sector * info.sector_size
                        self._check_cancel("erase", address)
                        self._erase_sector(sector)
                        done += info.sector_size
                        self.progress.progress("erase", done, total)
            except Exception as e:
                self.progress.finished("erase", False, e)
                raise
            self.progress.finished("erase", True)

    def _erase_sector(self, sector: int) -> None:
        address = sector * self.info.sector_size
        bad = None
        for attempt in range(1, self.retries + 1):
            self._command("erase", address, Erase(sector))
            bad = self._blank_check(sector)
            if bad is None:
                return
            logger.warning(
                f"Sector {sector} not blank at 0x{bad[0]:06X} "
                f"(attempt {attempt}/{self.retries})"
            )
        raise BlankCheckFailed(sector, address, bad[0], bad[1])

    # --- write -------------------------------------------------------------

    def write(self, image: FlashImage) -> int:
        """
        Program an image page by page with read-back verification.

        The final partial page is zero-padded. A page is never skipped: it
        either verifies or the whole write aborts.

        Returns:
            Number of bytes programmed (padded to whole pages)

        Raises:
            AlignmentError: Image address not page-aligned
            FlashRangeError: Padded image runs past the end of flash
            VerifyMismatch: A page read back wrong for every attempt
            RetryBudgetExceeded: A command kept failing transiently
            OperationCancelled: Cancel was set between pages
        """
        with self.session.lock:
            page = self.info.page_size
            total = len(image.data)
            self.check_write(image)

            last_good: Optional[int] = None
            logger.info(f"Writing {total:,} bytes at 0x{image.address:06X}")
            try:
                with self._bus():
                    for offset in range(0, total, page):
                        address = image.address + offset
                        self._check_cancel("write", address, last_good)
                        chunk = image.data[offset:offset + page]
                        if len(chunk) < page:
                            chunk = chunk + bytes(page - len(chunk))
                        self._write_page(address, chunk, last_good)
                        last_good = address + page
                        self.progress.progress("write", min(offset + page, total), total)
            except Exception as e:
                self.progress.finished("write", False, e)
                raise
            self.progress.finished("write", True)
            return (total + page - 1) // page * page

    def _write_page(self, address: int, chunk: bytes, last_good: Optional[int]) -> None:
        mismatch = None
        for attempt in range(1, self.retries + 1):
            self._command("write", address, Write(address, chunk), last_good)
            actual = self._read_raw("read-back", address, len(chunk), last_good)
            offset = first_mismatch(chunk, actual)
            if offset is None:
                return
            mismatch = (offset, actual)
            logger.warning(
                f"Page 0x{address:06X} read back wrong at 0x{address + offset:06X} "
                f"(attempt {attempt}/{self.retries})"
            )
        offset, actual = mismatch
        raise VerifyMismatch(
            address + offset,
            chunk[offset:offset + MISMATCH_CONTEXT],
            actual[offset:offset + MISMATCH_CONTEXT],
            stage="write",
            last_good=last_good,
        )

    # --- read / verify -----------------------------------------------------

    def read(self, address: int, length: int) -> FlashImage:
        """
        Read a range of flash, one command per page.

        No verification is done on the data.

        Raises:
            FlashRangeError: Range outside the device
            RetryBudgetExceeded: A command kept failing transiently
            OperationCancelled: Cancel was set between pages
        """
        with self.session.lock:
            self._check_range(address, length)
            chunks = []
            done = 0
            logger.info(f"Reading {length:,} bytes at 0x{address:06X}")
            try:
                with self._bus():
                    for piece_addr, piece_len in self._pages(address, length):
                        self._check_cancel("read", piece_addr)
                        chunks.append(self._read_raw("read", piece_addr, piece_len))
                        done += piece_len
                        self.progress.progress("read", done, length)
            except Exception as e:
                self.progress.finished("read", False, e)
                raise
            self.progress.finished("read", True)
            return FlashImage(address, b"".join(chunks))

    def verify(self, image: FlashImage) -> int:
        """
        Compare flash contents against an image.

        Returns:
            Number of bytes verified

        Raises:
            VerifyMismatch: At the first differing byte
            FlashRangeError: Image outside the device
        """
        with self.session.lock:
            self._check_range(image.address, len(image.data))
            total = len(image.data)
            done = 0
            logger.info(f"Verifying {total:,} bytes at 0x{image.address:06X}")
            try:
                with self._bus():
                    for piece_addr, piece_len in self._pages(image.address, total):
                        self._check_cancel("verify", piece_addr)
                        start = piece_addr - image.address
                        expected = image.data[start:start + piece_len]
                        actual = self._read_raw("verify", piece_addr, piece_len)
                        offset = first_mismatch(expected, actual)
                        if offset is not None:
                            raise VerifyMismatch(
                                piece_addr + offset,
                                expected[offset:offset + MISMATCH_CONTEXT],
                                actual[offset:offset + MISMATCH_CONTEXT],
                            )
                        done += piece_len
                        self.progress.progress("verify", done, total)
            except Exception as e:
                self.progress.finished("verify", False, e)
                raise
            self.progress.finished("verify", True)
            return total
