"""
Core workflow actions for Qoob Flasher.

This module exposes the functions front ends call. Each one opens a session
(real or simulated), runs a single programmer or filesystem operation and
returns an OperationResult instead of raising. Flash-modifying operations go
through the safety context for gating.
"""

import hashlib
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from qoob_flasher.errors import QoobError
from qoob_flasher.flash_fs import QoobFs
from qoob_flasher.programmer import DEFAULT_RETRIES, FlashImage, FlashProgrammer
from qoob_flasher.progress import ProgressSink
from qoob_flasher.protocol.discovery import DeviceInfo, enumerate_devices
from qoob_flasher.protocol.tables import ProtocolTable, get_table
from qoob_flasher.session import QoobSession, connect

from .messages import classify_error, warning_code_for
from .results import OperationResult
from .safety import SafetyContext, require_write_permission

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "qoob_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


@dataclass
class DeviceOptions:
    """
    How to reach the chip.

    Attributes:
        path: hidapi path when several chips are connected
        table: Protocol table name or object (default table if None)
        timeout: Per-exchange timeout override in seconds
        retries: Attempts per command/page/sector
        simulate: Use the in-memory simulated chip
        sim_image: File backing the simulated flash
    """
    path: Optional[str] = None
    table: Optional[Union[str, ProtocolTable]] = None
    timeout: Optional[float] = None
    retries: int = DEFAULT_RETRIES
    simulate: bool = False
    sim_image: Optional[str] = None

    def resolve_table(self) -> ProtocolTable:
        if isinstance(self.table, ProtocolTable):
            return self.table
        return get_table(self.table) if self.table else get_table()

    def connect(self) -> QoobSession:
        return connect(
            path=self.path,
            table=self.resolve_table(),
            timeout=self.timeout,
            simulate=self.simulate,
            sim_image=self.sim_image,
        )


def _describe(info: DeviceInfo) -> str:
    return f"{info.product} v{info.version >> 8}.{info.version & 0xFF:02d} ({info.path})"


def _region(address: int, length: int) -> str:
    return f"0x{address:06X}-0x{address + length:06X}"


def _failure(
    operation: str,
    exc: Exception,
    logs: list,
    device: str = "",
    region: str = "",
) -> OperationResult:
    """Build a failed result carrying everything the exception knows."""
    failure_class = classify_error(exc)
    result = OperationResult.failure(
        operation=operation,
        error=str(exc),
        device=device,
        region=region,
    )
    result.metadata["error_class"] = type(exc).__name__
    result.metadata["failure_class"] = failure_class.name
    result.metadata["exit_code"] = failure_class.value
    result.metadata["warning_code"] = warning_code_for(exc).value
    for attr in ("stage", "address", "expected", "actual", "last_good", "sector", "slot"):
        value = getattr(exc, attr, None)
        if value is not None:
            result.metadata[attr] = value
    result.logs = logs
    return result


def _finish(result: OperationResult, options: DeviceOptions, logs: list) -> OperationResult:
    if options.simulate:
        result.metadata["simulated"] = True
        result.add_warning("Simulated chip - no hardware was touched")
    result.logs = logs
    return result


def _programmer(
    session: QoobSession,
    options: DeviceOptions,
    progress: Optional[ProgressSink],
    cancel: Optional[threading.Event],
) -> FlashProgrammer:
    return FlashProgrammer(session, retries=options.retries, progress=progress, cancel=cancel)


def list_devices(table: Optional[Union[str, ProtocolTable]] = None) -> OperationResult:
    """
    List connected chips without opening them.

    Returns:
        OperationResult with metadata["devices"]: list of candidate dicts
    """
    options = DeviceOptions(table=table)
    with _capture_logs() as logs:
        try:
            candidates = enumerate_devices(options.resolve_table())
        except (QoobError, ValueError) as e:
            return _failure("list_devices", e, logs)
        result = OperationResult.success(operation="list_devices")
        result.metadata["devices"] = [
            {
                "path": c.display_path,
                "vendor_id": c.vendor_id,
                "product_id": c.product_id,
                "manufacturer": c.manufacturer,
                "product": c.product,
                "serial": c.serial,
                "release": c.release,
            }
            for c in candidates
        ]
        if not candidates:
            result.add_warning("No Qoob found on the USB bus")
        result.logs = logs
        return result


def identify_device(options: Optional[DeviceOptions] = None) -> OperationResult:
    """
    Open the chip and run the identification handshake.

    Returns:
        OperationResult with metadata["info"]: DeviceInfo as a dict
    """
    options = options or DeviceOptions()
    with _capture_logs() as logs:
        try:
            with options.connect() as session:
                info = session.info
        except (QoobError, ValueError) as e:
            return _failure("identify_device", e, logs)
        result = OperationResult.success(
            operation="identify_device",
            device=_describe(info),
            bytes_len=info.total_size,
        )
        result.metadata["info"] = info.to_dict()
        return _finish(result, options, logs)


def erase_sectors(
    sectors: range,
    safety_ctx: SafetyContext,
    options: Optional[DeviceOptions] = None,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[threading.Event] = None,
) -> OperationResult:
    """
    Erase a contiguous range of sectors.

    Args:
        sectors: Sector indices to erase
        safety_ctx: Safety context for gating
        options: Connection settings
        progress: Optional progress sink
        cancel: Optional event checked between sectors

    Returns:
        OperationResult; on failure metadata carries stage and address

    Raises:
        WritePermissionError: If safety check fails
    """
    options = options or DeviceOptions()
    with _capture_logs() as logs:
        device = region = ""
        try:
            sector_size = options.resolve_table().geometry.sector_size
            region = _region(sectors.start * sector_size, len(sectors) * sector_size)
            require_write_permission(
                safety_ctx,
                operation="erase",
                target_region=region,
                bytes_length=len(sectors) * sector_size,
            )
            with options.connect() as session:
                device = _describe(session.info)
                _programmer(session, options, progress, cancel).erase(sectors)
        except (QoobError, ValueError) as e:
            logger.error(f"erase failed: {e}")
            return _failure("erase_sectors", e, logs, device, region)

        result = OperationResult.success(
            operation="erase_sectors",
            device=device,
            region=region,
            bytes_len=len(sectors) * sector_size,
        )
        result.metadata["sectors"] = [sectors.start, sectors.stop - 1]
        return _finish(result, options, logs)


def write_image(
    data: bytes,
    address: int,
    safety_ctx: SafetyContext,
    options: Optional[DeviceOptions] = None,
    erase: bool = False,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[threading.Event] = None,
) -> OperationResult:
    """
    Program an image at a page-aligned address.

    Every page is read back and compared before the next one is written.

    Args:
        data: Image bytes
        address: Page-aligned start address
        safety_ctx: Safety context for gating
        options: Connection settings
        erase: Erase the covered sectors first
        progress: Optional progress sink
        cancel: Optional event checked between pages

    Returns:
        OperationResult; on failure metadata carries stage, address,
        expected/actual bytes and last_good

    Raises:
        WritePermissionError: If safety check fails
    """
    options = options or DeviceOptions()
    region = _region(address, len(data))
    with _capture_logs() as logs:
        # Enforce safety gate
        require_write_permission(
            safety_ctx,
            operation="write",
            target_region=region,
            bytes_length=len(data),
        )
        device = ""
        try:
            with options.connect() as session:
                device = _describe(session.info)
                programmer = _programmer(session, options, progress, cancel)
                image = FlashImage(address, bytes(data))
                covered = programmer.check_write(image)
                if erase and len(covered):
                    programmer.erase(covered)
                written = programmer.write(image)
        except (QoobError, ValueError) as e:
            logger.error(f"write failed: {e}")
            return _failure("write_image", e, logs, device, region)

        result = OperationResult.success(
            operation="write_image",
            device=device,
            region=region,
            bytes_len=len(data),
        )
        result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        result.metadata["programmed"] = written
        if written != len(data):
            result.add_warning(
                f"Final page padded with {written - len(data)} zero bytes"
            )
        return _finish(result, options, logs)


def read_flash(
    address: int,
    length: int,
    options: Optional[DeviceOptions] = None,
    output_path: Optional[str] = None,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[threading.Event] = None,
) -> OperationResult:
    """
    Read a range of flash.

    Returns:
        OperationResult with:
            - metadata["data"]: bytes read
            - hashes["sha256"]: hash of the data
            - metadata["output_path"]: where the data was saved, if asked
    """
    options = options or DeviceOptions()
    region = _region(address, length)
    with _capture_logs() as logs:
        device = ""
        try:
            with options.connect() as session:
                device = _describe(session.info)
                image = _programmer(session, options, progress, cancel).read(address, length)
        except (QoobError, ValueError) as e:
            logger.error(f"read failed: {e}")
            return _failure("read_flash", e, logs, device, region)

        result = OperationResult.success(
            operation="read_flash",
            device=device,
            region=region,
            bytes_len=len(image),
        )
        result.hashes["sha256"] = hashlib.sha256(image.data).hexdigest()
        result.metadata["data"] = image.data
        if output_path:
            Path(output_path).write_bytes(image.data)
            result.metadata["output_path"] = str(output_path)
        return _finish(result, options, logs)


def verify_image(
    data: bytes,
    address: int,
    options: Optional[DeviceOptions] = None,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[threading.Event] = None,
) -> OperationResult:
    """
    Compare flash contents with an image.

    Returns:
        OperationResult; a mismatch fails with the first differing address
        and expected/actual bytes in metadata
    """
    options = options or DeviceOptions()
    region = _region(address, len(data))
    with _capture_logs() as logs:
        device = ""
        try:
            with options.connect() as session:
                device = _describe(session.info)
                verified = _programmer(session, options, progress, cancel).verify(
                    FlashImage(address, bytes(data))
                )
        except (QoobError, ValueError) as e:
            logger.error(f"verify failed: {e}")
            return _failure("verify_image", e, logs, device, region)

        result = OperationResult.success(
            operation="verify_image",
            device=device,
            region=region,
            bytes_len=verified,
        )
        result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        return _finish(result, options, logs)


def list_slots(options: Optional[DeviceOptions] = None) -> OperationResult:
    """
    List files stored in flash.

    Returns:
        OperationResult with:
            - metadata["files"]: list of dicts (slot, type, description, size, sectors)
            - metadata["sectors"]: per-sector state ("empty", "unknown", "file")
    """
    options = options or DeviceOptions()
    with _capture_logs() as logs:
        device = ""
        try:
            with options.connect() as session:
                device = _describe(session.info)
                fs = QoobFs(_programmer(session, options, None, None))
                files = fs.files()
                slots = fs.slots()
                sector_size = fs.sector_size
        except (QoobError, ValueError) as e:
            logger.error(f"listing failed: {e}")
            return _failure("list_slots", e, logs, device)

        result = OperationResult.success(operation="list_slots", device=device)
        result.metadata["files"] = [
            dict(slot=slot, **header.to_dict(sector_size))
            for slot, header in files.items()
        ]
        result.metadata["sectors"] = [occupancy.state.value for occupancy in slots]
        return _finish(result, options, logs)


def dump_slot(
    slot: int,
    options: Optional[DeviceOptions] = None,
    output_path: Optional[str] = None,
) -> OperationResult:
    """
    Read the file stored in a slot, header included.

    Returns:
        OperationResult with metadata["data"] and metadata["header"]
    """
    options = options or DeviceOptions()
    with _capture_logs() as logs:
        device = ""
        try:
            with options.connect() as session:
                device = _describe(session.info)
                fs = QoobFs(_programmer(session, options, None, None))
                data = fs.read_file(slot)
                header = fs.slot_info(slot).to_dict(fs.sector_size)
        except (QoobError, ValueError) as e:
            logger.error(f"dump failed: {e}")
            return _failure("dump_slot", e, logs, device)

        result = OperationResult.success(
            operation="dump_slot",
            device=device,
            bytes_len=len(data),
        )
        result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        result.metadata["data"] = data
        result.metadata["header"] = header
        if output_path:
            Path(output_path).write_bytes(data)
            result.metadata["output_path"] = str(output_path)
        return _finish(result, options, logs)


def put_file(
    data: bytes,
    safety_ctx: SafetyContext,
    slot: Optional[int] = None,
    options: Optional[DeviceOptions] = None,
    erase: bool = False,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[threading.Event] = None,
) -> OperationResult:
    """
    Store a file with a Qoob header in a slot.

    Args:
        data: Complete file, header included
        safety_ctx: Safety context for gating
        slot: First sector, or None for the first free run
        options: Connection settings
        erase: Erase the destination instead of requiring it empty

    Returns:
        OperationResult with metadata["slot"]

    Raises:
        WritePermissionError: If safety check fails
    """
    options = options or DeviceOptions()
    with _capture_logs() as logs:
        require_write_permission(
            safety_ctx,
            operation="put",
            target_region=f"slot {slot}" if slot is not None else "first free slot",
            bytes_length=len(data),
        )
        device = ""
        try:
            with options.connect() as session:
                device = _describe(session.info)
                fs = QoobFs(_programmer(session, options, progress, cancel))
                placed = fs.place(slot, data, erase=erase)
                header = fs.slot_info(placed).to_dict(fs.sector_size)
        except (QoobError, ValueError) as e:
            logger.error(f"put failed: {e}")
            return _failure("put_file", e, logs, device)

        result = OperationResult.success(
            operation="put_file",
            device=device,
            region=f"slot {placed}",
            bytes_len=len(data),
        )
        result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        result.metadata["slot"] = placed
        result.metadata["header"] = header
        return _finish(result, options, logs)


def remove_slot(
    slot: int,
    safety_ctx: SafetyContext,
    options: Optional[DeviceOptions] = None,
    progress: Optional[ProgressSink] = None,
) -> OperationResult:
    """
    Erase the file stored in a slot.

    Raises:
        WritePermissionError: If safety check fails
    """
    options = options or DeviceOptions()
    with _capture_logs() as logs:
        device = ""
        try:
            with options.connect() as session:
                device = _describe(session.info)
                fs = QoobFs(_programmer(session, options, progress, None))
                header = fs.slot_info(slot)
                require_write_permission(
                    safety_ctx,
                    operation="remove",
                    target_region=f"slot {slot}",
                    bytes_length=header.size if header else 0,
                )
                fs.delete(slot)
        except (QoobError, ValueError) as e:
            logger.error(f"remove failed: {e}")
            return _failure("remove_slot", e, logs, device)

        result = OperationResult.success(
            operation="remove_slot",
            device=device,
            region=f"slot {slot}",
            bytes_len=header.size,
        )
        result.metadata["slot"] = slot
        return _finish(result, options, logs)


def reset_device(options: Optional[DeviceOptions] = None) -> OperationResult:
    """Send the reset command. The session is closed afterwards."""
    options = options or DeviceOptions()
    with _capture_logs() as logs:
        device = ""
        try:
            session = options.connect()
            device = _describe(session.info)
            session.reset()
        except (QoobError, ValueError) as e:
            logger.error(f"reset failed: {e}")
            return _failure("reset_device", e, logs, device)

        result = OperationResult.success(operation="reset_device", device=device)
        return _finish(result, options, logs)
