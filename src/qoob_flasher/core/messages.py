"""
Standardized warning and message system for Qoob Flasher.

Provides structured warning items with stable codes, and the mapping from
error classes to the failure classes front ends turn into exit codes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any

from qoob_flasher import errors


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device warnings
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_MULTIPLE_DEVICES = "W_MULTIPLE_DEVICES"
    W_PERMISSION_DENIED = "W_PERMISSION_DENIED"
    W_DEVICE_BUSY = "W_DEVICE_BUSY"
    W_BUS_BUSY = "W_BUS_BUSY"
    W_UNSUPPORTED_DEVICE = "W_UNSUPPORTED_DEVICE"

    # Protocol warnings
    W_TIMEOUT = "W_TIMEOUT"
    W_CHECKSUM = "W_CHECKSUM"
    W_PROTOCOL_MISMATCH = "W_PROTOCOL_MISMATCH"
    W_RETRY_BUDGET = "W_RETRY_BUDGET"
    W_USB_ERROR = "W_USB_ERROR"

    # Data integrity
    W_BLANK_CHECK = "W_BLANK_CHECK"
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"

    # Filesystem
    W_NO_SUCH_FILE = "W_NO_SUCH_FILE"
    W_RANGE_OCCUPIED = "W_RANGE_OCCUPIED"
    W_TOO_BIG = "W_TOO_BIG"
    W_INVALID_HEADER = "W_INVALID_HEADER"

    # Operation
    W_SIMULATED = "W_SIMULATED"
    W_DATA_PADDED = "W_DATA_PADDED"
    W_CANCELLED = "W_CANCELLED"
    W_WRITE_DISABLED = "W_WRITE_DISABLED"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Check the USB cable and that the Qoob is in flashing mode. Run 'devices'.",
    WarningCode.W_MULTIPLE_DEVICES:
        "Disconnect the other chips or pick one with --path.",
    WarningCode.W_PERMISSION_DENIED:
        "Install a udev rule granting your user access to 03eb:0001, or run as root.",
    WarningCode.W_DEVICE_BUSY:
        "Close other programs using the Qoob and reconnect it.",
    WarningCode.W_BUS_BUSY:
        "The console is using the flash. Wait until it is idle or power it off.",
    WarningCode.W_UNSUPPORTED_DEVICE:
        "Check supported protocol tables with the 'tables' command.",
    WarningCode.W_TIMEOUT:
        "Check the cable, avoid USB hubs, or raise --timeout.",
    WarningCode.W_CHECKSUM:
        "Frames are being corrupted in transit. Check the cable.",
    WarningCode.W_PROTOCOL_MISMATCH:
        "The device does not speak the selected protocol table. Try --table.",
    WarningCode.W_RETRY_BUDGET:
        "Resume from the reported address once the connection is stable.",
    WarningCode.W_USB_ERROR:
        "Reconnect the device and try again.",
    WarningCode.W_BLANK_CHECK:
        "The sector did not erase. Retry; if it persists the flash may be worn.",
    WarningCode.W_VERIFY_MISMATCH:
        "Flash contents differ from the image. Erase and write again before booting.",
    WarningCode.W_NO_SUCH_FILE:
        "Run 'ls' to list occupied slots.",
    WarningCode.W_RANGE_OCCUPIED:
        "Pick another slot, remove the file there, or pass --erase.",
    WarningCode.W_TOO_BIG:
        "Pick a lower slot or free up space.",
    WarningCode.W_INVALID_HEADER:
        "Only files with a Qoob header (BIOS, DOL, ELF, ...) can be placed in slots.",
    WarningCode.W_SIMULATED:
        "No hardware was touched. Remove --simulate to talk to the chip.",
    WarningCode.W_DATA_PADDED:
        "The final page was padded with zeros.",
    WarningCode.W_CANCELLED:
        "Resume from the reported address.",
    WarningCode.W_WRITE_DISABLED:
        "Add --write and confirm with WRITE to modify flash.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}


class FailureClass(Enum):
    """Failure classes, valued by CLI exit code."""
    OTHER = 1
    DEVICE_NOT_FOUND = 2
    PERMISSION = 3
    PROTOCOL = 4
    INTEGRITY = 5


# Most specific classes first
_ERROR_CODES = [
    (errors.MultipleDevices, WarningCode.W_MULTIPLE_DEVICES, FailureClass.DEVICE_NOT_FOUND),
    (errors.DeviceNotFound, WarningCode.W_DEVICE_NOT_FOUND, FailureClass.DEVICE_NOT_FOUND),
    (errors.PermissionDenied, WarningCode.W_PERMISSION_DENIED, FailureClass.PERMISSION),
    (errors.DeviceBusy, WarningCode.W_DEVICE_BUSY, FailureClass.PERMISSION),
    (errors.BusBusy, WarningCode.W_BUS_BUSY, FailureClass.PERMISSION),
    (errors.BlankCheckFailed, WarningCode.W_BLANK_CHECK, FailureClass.INTEGRITY),
    (errors.VerifyMismatch, WarningCode.W_VERIFY_MISMATCH, FailureClass.INTEGRITY),
    (errors.RetryBudgetExceeded, WarningCode.W_RETRY_BUDGET, FailureClass.PROTOCOL),
    (errors.OperationCancelled, WarningCode.W_CANCELLED, FailureClass.OTHER),
    (errors.Timeout, WarningCode.W_TIMEOUT, FailureClass.PROTOCOL),
    (errors.ChecksumInvalid, WarningCode.W_CHECKSUM, FailureClass.PROTOCOL),
    (errors.ProtocolMismatch, WarningCode.W_PROTOCOL_MISMATCH, FailureClass.PROTOCOL),
    (errors.UnsupportedDevice, WarningCode.W_UNSUPPORTED_DEVICE, FailureClass.PROTOCOL),
    (errors.DeviceError, WarningCode.W_PROTOCOL_MISMATCH, FailureClass.PROTOCOL),
    (errors.TransportError, WarningCode.W_USB_ERROR, FailureClass.PROTOCOL),
    (errors.NoSuchFile, WarningCode.W_NO_SUCH_FILE, FailureClass.OTHER),
    (errors.RangeOccupied, WarningCode.W_RANGE_OCCUPIED, FailureClass.OTHER),
    (errors.TooBig, WarningCode.W_TOO_BIG, FailureClass.OTHER),
    (errors.InvalidHeader, WarningCode.W_INVALID_HEADER, FailureClass.OTHER),
]


def classify_error(exc: BaseException) -> FailureClass:
    """Failure class for an exception raised by the core."""
    for cls, _, failure in _ERROR_CODES:
        if isinstance(exc, cls):
            return failure
    return FailureClass.OTHER


def warning_code_for(exc: BaseException) -> WarningCode:
    """Stable warning code for an exception raised by the core."""
    for cls, code, _ in _ERROR_CODES:
        if isinstance(exc, cls):
            return code
    return WarningCode.W_UNKNOWN


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create a WARN-level warning."""
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an ERROR-level warning."""
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert a result's warnings and errors to WarningItem list.

    Errors use the code recorded by the workflow layer when it caught the
    exception; plain warning strings become W_UNKNOWN unless they mention
    simulation or padding.
    """
    items = []

    for msg in result.warnings:
        msg_lower = msg.lower()
        if "simulat" in msg_lower:
            code = WarningCode.W_SIMULATED
        elif "padded" in msg_lower:
            code = WarningCode.W_DATA_PADDED
        else:
            code = WarningCode.W_UNKNOWN
        items.append(WarningItem.warn(code, msg))

    code_value = result.metadata.get("warning_code")
    error_code = WarningCode(code_value) if code_value else WarningCode.W_UNKNOWN
    for err in result.errors:
        items.append(WarningItem.error(error_code, err))

    return items
