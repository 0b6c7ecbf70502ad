"""
Core module for Qoob Flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Address, size and sector range parsing (parsing.py)
- Result objects (results.py)
- Progress sinks (re-exported from qoob_flasher.progress)
- Erase/write/read/verify and slot workflows (actions.py)
- Standardized warnings/messages and exit classes (messages.py)

Front ends should call into this module rather than implementing their
own logic.
"""

from .safety import (
    SafetyContext,
    require_write_permission,
    WritePermissionError,
    create_cli_safety_context,
    CONFIRMATION_TOKEN,
)
from .parsing import parse_offset, parse_size, parse_sector_range
from .results import OperationResult
from qoob_flasher.progress import ProgressSink, NullProgress, CallbackProgress, ThreadedProgress
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    FailureClass,
    classify_error,
    warning_code_for,
    result_to_warnings,
)
from .actions import (
    DeviceOptions,
    list_devices,
    identify_device,
    erase_sectors,
    write_image,
    read_flash,
    verify_image,
    list_slots,
    dump_slot,
    put_file,
    remove_slot,
    reset_device,
)

__all__ = [
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    "create_cli_safety_context",
    "CONFIRMATION_TOKEN",
    # Parsing
    "parse_offset",
    "parse_size",
    "parse_sector_range",
    # Results
    "OperationResult",
    # Progress
    "ProgressSink",
    "NullProgress",
    "CallbackProgress",
    "ThreadedProgress",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "FailureClass",
    "classify_error",
    "warning_code_for",
    "result_to_warnings",
    # Actions
    "DeviceOptions",
    "list_devices",
    "identify_device",
    "erase_sectors",
    "write_image",
    "read_flash",
    "verify_image",
    "list_slots",
    "dump_slot",
    "put_file",
    "remove_slot",
    "reset_device",
]
