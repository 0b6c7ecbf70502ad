"""
Error taxonomy for Qoob Flasher.

Every error raised by the transport, codec, programmer and flash filesystem
derives from QoobError so callers can catch the whole family at once.
TransientError marks the classes the programmer is allowed to retry.
"""

from typing import Optional


class QoobError(Exception):
    """Base class for all Qoob Flasher errors."""
    pass


class TransientError(QoobError):
    """An error that may go away if the same command is issued again."""
    pass


# --- Transport / discovery -------------------------------------------------

class DeviceNotFound(QoobError):
    """No matching device is connected"""

    def __init__(self, message: str = "Device not found"):
        super().__init__(message)


class MultipleDevices(DeviceNotFound):
    """More than one matching device is connected and none was chosen"""

    def __init__(self, count: int):
        self.count = count
        super().__init__(
            f"{count} devices are connected, can't choose one (use --path)"
        )


class PermissionDenied(QoobError):
    """The host refused access to the USB device"""
    pass


class DeviceBusy(QoobError):
    """The device node exists but could not be opened"""
    pass


class TransportError(QoobError):
    """Low-level USB I/O failure"""
    pass


class PartialTransfer(TransportError, TransientError):
    """Fewer bytes than requested were moved over USB"""

    def __init__(self, transferred: int, requested: int):
        self.transferred = transferred
        self.requested = requested
        super().__init__(
            f"Partial transfer: {transferred} out of {requested} bytes transferred"
        )


class Timeout(TransientError):
    """The device did not answer before the exchange deadline"""
    pass


# --- Codec -----------------------------------------------------------------

class ChecksumInvalid(TransientError):
    """A response frame's trailing checksum does not match its contents"""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch: computed 0x{expected:X}, frame carries 0x{actual:X}"
        )


class ProtocolMismatch(QoobError):
    """A response has the wrong shape for the protocol table in use"""
    pass


class UnsupportedDevice(QoobError):
    """The device answered but is outside the known-good set"""
    pass


class DeviceError(QoobError):
    """The device reported an error status"""

    def __init__(self, status: int, message: Optional[str] = None):
        self.status = status
        super().__init__(message or f"Device reported status 0x{status:02X}")


class BusBusy(DeviceError):
    """The console is holding the flash bus"""

    def __init__(self, status: int):
        super().__init__(status, "Bus busy, try again later")


# --- Programmer ------------------------------------------------------------

class AlignmentError(ValueError):
    """An address or length violates page/sector alignment"""
    pass


class FlashRangeError(ValueError):
    """An access falls outside the device's flash"""
    pass


class ProgrammerError(QoobError):
    """
    Failure of a multi-step flash operation.

    Attributes:
        stage: Operation stage that failed ("erase", "blank-check", "write",
               "read-back", "read", "verify", "bus")
        address: Flash address of the failing page/sector, if known
        last_good: End address of the last confirmed-good page, if any
    """

    def __init__(
        self,
        message: str,
        stage: str,
        address: Optional[int] = None,
        last_good: Optional[int] = None,
    ):
        self.stage = stage
        self.address = address
        self.last_good = last_good
        super().__init__(message)


class BlankCheckFailed(ProgrammerError):
    """A sector did not read back as blank after erasing"""

    def __init__(self, sector: int, address: int, offset: int, actual: int):
        self.sector = sector
        self.offset = offset
        self.actual = actual
        super().__init__(
            f"Sector {sector} failed blank check at 0x{offset:06X} "
            f"(read 0x{actual:02X})",
            stage="blank-check",
            address=address,
        )


class VerifyMismatch(ProgrammerError):
    """Data read back from flash differs from the expected image"""

    def __init__(
        self,
        address: int,
        expected: bytes,
        actual: bytes,
        stage: str = "verify",
        last_good: Optional[int] = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Data verification failed at 0x{address:06X}: "
            f"expected {expected[:8].hex()}, read {actual[:8].hex()}",
            stage=stage,
            address=address,
            last_good=last_good,
        )


class RetryBudgetExceeded(ProgrammerError):
    """A command kept failing transiently until the retry budget ran out"""

    def __init__(
        self,
        stage: str,
        address: Optional[int],
        attempts: int,
        last_error: Exception,
        last_good: Optional[int] = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        where = f" at 0x{address:06X}" if address is not None else ""
        super().__init__(
            f"{stage}{where} failed after {attempts} attempts: {last_error}",
            stage=stage,
            address=address,
            last_good=last_good,
        )


class OperationCancelled(ProgrammerError):
    """The caller cancelled the operation at a page/sector boundary"""

    def __init__(self, stage: str, address: int, last_good: Optional[int] = None):
        super().__init__(
            f"{stage} cancelled before 0x{address:06X}",
            stage=stage,
            address=address,
            last_good=last_good,
        )


# --- Flash filesystem ------------------------------------------------------

class NoSuchFile(QoobError):
    """No file starts at the given slot"""

    def __init__(self, slot: int):
        self.slot = slot
        super().__init__(f"No file in slot {slot}")


class RangeOccupied(QoobError):
    """The destination sectors are not blank"""

    def __init__(self, slot: int, sectors: int):
        self.slot = slot
        self.sectors = sectors
        super().__init__("The destination range is not blank")


class TooBig(QoobError):
    """The file does not fit between the slot and the end of flash"""

    def __init__(self, size: int, available: int):
        self.size = size
        self.available = available
        super().__init__(
            f"The file is too big for the destination slot ({size:,} > {available:,} bytes)"
        )


class InvalidHeader(QoobError):
    """The file header is not a recognised Qoob file header"""

    def __init__(self, reason: str = "The file header is invalid"):
        super().__init__(reason)
