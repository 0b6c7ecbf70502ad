"""
Qoob Flasher CLI

Command-line interface for erasing, programming, reading back and verifying
a Qoob Pro modchip over USB, with write gating and typed exit codes.
"""

import sys
import json
import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from qoob_flasher import __version__
from qoob_flasher.core.parsing import (
    parse_offset as _parse_offset_core,
    parse_size as _parse_size_core,
    parse_sector_range as _parse_sector_range_core,
)
from qoob_flasher.core.safety import (
    SafetyContext,
    WritePermissionError,
    CONFIRMATION_TOKEN,
    require_write_permission,
    create_cli_safety_context,
)
from qoob_flasher.core.results import OperationResult
from qoob_flasher.core.actions import (
    DeviceOptions,
    list_devices as core_list_devices,
    identify_device as core_identify_device,
    erase_sectors as core_erase_sectors,
    write_image as core_write_image,
    read_flash as core_read_flash,
    verify_image as core_verify_image,
    list_slots as core_list_slots,
    dump_slot as core_dump_slot,
    put_file as core_put_file,
    remove_slot as core_remove_slot,
    reset_device as core_reset_device,
)
from qoob_flasher.core.messages import (
    FailureClass,
    MessageLevel,
    WarningCode,
    WarningItem,
    WARNING_REMEDIATIONS,
    result_to_warnings,
)
from qoob_flasher.progress import ProgressSink, ThreadedProgress
from qoob_flasher.programmer import DEFAULT_RETRIES
from qoob_flasher.protocol.tables import DEFAULT_TABLE, get_table, list_tables

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, console=Console(stderr=True))],
)
logger = logging.getLogger("qoob_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="Qoob Pro modchip flasher - erase, program and verify over USB")


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style, markup=False)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    """Print all warnings from an OperationResult using structured format."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse an address from string.

    CLI wrapper around core.parsing.parse_offset that converts
    ValueError to typer.BadParameter for proper CLI error handling.
    """
    try:
        return _parse_offset_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_size(value: Optional[str]) -> Optional[int]:
    """CLI wrapper around core.parsing.parse_size."""
    if value is None:
        return None
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_sector_range(value: str) -> range:
    """CLI wrapper around core.parsing.parse_sector_range."""
    try:
        return _parse_sector_range_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


# --- global options --------------------------------------------------------

class CliState:
    """Options shared by every subcommand."""

    def __init__(self) -> None:
        self.device = DeviceOptions()
        self.json_output = False
        self.verbose = False


def _state(ctx: typer.Context) -> CliState:
    if ctx.obj is None:
        ctx.obj = CliState()
    return ctx.obj


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"qoob-flasher {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    path: Optional[str] = typer.Option(
        None, "--path", envvar="QOOB_PATH",
        help="hidapi device path, when several chips are connected",
    ),
    table: str = typer.Option(
        DEFAULT_TABLE, "--table", envvar="QOOB_TABLE",
        help="Protocol table (see 'tables')",
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", envvar="QOOB_TIMEOUT",
        help="Seconds per command/response exchange",
    ),
    retries: int = typer.Option(
        DEFAULT_RETRIES, "--retries", envvar="QOOB_RETRIES", min=1,
        help="Attempts per command, page and sector",
    ),
    simulate: bool = typer.Option(
        False, "--simulate", envvar="QOOB_SIMULATE",
        help="Talk to an in-memory simulated chip instead of USB",
    ),
    sim_image: Optional[str] = typer.Option(
        None, "--sim-image", envvar="QOOB_SIM_IMAGE",
        help="File backing the simulated flash (implies --simulate)",
    ),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show protocol traffic"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Qoob Pro modchip flasher."""
    state = _state(ctx)
    try:
        protocol_table = get_table(table)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--table")
    state.device = DeviceOptions(
        path=path,
        table=protocol_table,
        timeout=timeout,
        retries=retries,
        simulate=simulate or sim_image is not None,
        sim_image=sim_image,
    )
    state.json_output = json_output
    state.verbose = verbose
    if verbose:
        logger.setLevel(logging.DEBUG)


# --- safety ----------------------------------------------------------------

def build_safety_context(
    write_flag: bool,
    simulate: bool,
    confirm_token: Optional[str],
) -> SafetyContext:
    """
    Create the SafetyContext for a flash-modifying command.

    Supports three modes:
    1. Non-interactive (script): --confirm WRITE provided, no prompts
    2. Interactive (TTY): prompts user for typed confirmation
    3. Non-interactive without token: denied with remediation
    """
    ctx = create_cli_safety_context(
        write_flag=write_flag,
        simulate=simulate,
        confirmation_token=confirm_token,
    )

    def show_details(details: dict) -> None:
        notes = "".join(f"  - {w}\n" for w in details.get("warnings", []))
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Operation:     {details.get('operation', 'Unknown')}\n"
            f"Target:        {details.get('target_region', 'Unknown')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"{notes}"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Flash Write Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    ctx.show_details = show_details
    ctx.prompt_confirmation = prompt_confirmation
    return ctx


def confirm_write(
    safety: SafetyContext,
    operation: str,
    target_region: str,
    bytes_length: int = 0,
) -> None:
    """
    Ask for permission before any progress display or Ctrl-C handler is up.

    The core actions check the same context again; once granted it passes.
    """
    try:
        require_write_permission(safety, operation, target_region, bytes_length)
    except WritePermissionError as e:
        print_structured_warning(
            WarningItem.error(WarningCode.W_WRITE_DISABLED, e.reason), verbose=True
        )
        if "requires explicit permission" in e.reason:
            console.print("This is a safety measure to prevent accidental writes to your chip.")
        raise typer.Exit(code=FailureClass.OTHER.value)


# --- progress / cancellation -----------------------------------------------

class RichProgressSink(ProgressSink):
    """Drive one rich progress bar per stage."""

    def __init__(self, progress: Progress):
        self.bar = progress
        self.tasks = {}

    def progress(self, stage: str, done: int, total: int) -> None:
        task = self.tasks.get(stage)
        if task is None:
            task = self.bar.add_task(f"{stage.capitalize()}...", total=total)
            self.tasks[stage] = task
        self.bar.update(task, completed=done, total=total)

    def finished(self, stage: str, ok: bool, detail: Any = None) -> None:
        task = self.tasks.pop(stage, None)
        if task is not None:
            suffix = "done" if ok else "failed"
            self.bar.update(task, description=f"{stage.capitalize()} {suffix}")


@contextmanager
def progress_sink(enabled: bool = True) -> Iterator[Optional[ProgressSink]]:
    """Rich progress bar fed from a background thread."""
    if not enabled:
        yield None
        return
    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
        transient=False,
    ) as bar:
        with ThreadedProgress(RichProgressSink(bar)) as sink:
            yield sink


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """
    Turn Ctrl-C into a cancel request honoured at the next page/sector.

    A second Ctrl-C interrupts immediately.
    """
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        console.print("\n[yellow]Stopping at the next page boundary...[/yellow]")
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


# --- output ----------------------------------------------------------------

def report(state: CliState, result: OperationResult, title: str = "") -> None:
    """Print a result and exit with its failure class."""
    if state.json_output:
        payload = result.to_dict()
        payload["metadata"].pop("data", None)
        typer.echo(json.dumps(payload, indent=2))
    elif result.ok:
        print_warnings_from_result(result, verbose=state.verbose)
        print_success(title or f"{result.operation} complete")
    else:
        console.print(result.to_summary(), style="red", markup=False)
        code = result.metadata.get("warning_code")
        if code:
            console.print(f"   → {WARNING_REMEDIATIONS[WarningCode(code)]}", style="cyan")

    if not result.ok:
        raise typer.Exit(code=result.metadata.get("exit_code", FailureClass.OTHER.value))


def _read_input(path: str) -> bytes:
    input_path = Path(path)
    if not input_path.exists():
        print_error(f"File not found: {path}")
        raise typer.Exit(code=FailureClass.OTHER.value)
    return input_path.read_bytes()


# --- commands --------------------------------------------------------------

@app.command()
def devices(ctx: typer.Context) -> None:
    """List connected Qoob chips."""
    state = _state(ctx)
    result = core_list_devices(state.device.table)
    if state.json_output or not result.ok:
        report(state, result)
        return

    print_header("Connected Qoob Chips")
    found = result.metadata["devices"]
    if not found:
        print_warning("No Qoob found on the USB bus")
        return

    table = Table(title="HID Devices")
    table.add_column("Path", style="cyan")
    table.add_column("VID:PID", style="magenta")
    table.add_column("Product", style="green")
    table.add_column("Serial", style="dim")
    table.add_column("Release", style="yellow")
    for dev in found:
        table.add_row(
            dev["path"],
            f"{dev['vendor_id']:04X}:{dev['product_id']:04X}",
            f"{dev['manufacturer']} {dev['product']}".strip() or "-",
            dev["serial"] or "-",
            f"{dev['release']:04X}",
        )
    console.print(table)


@app.command()
def tables() -> None:
    """List supported protocol tables."""
    print_header("Protocol Tables")

    table = Table(title="Supported Devices")
    table.add_column("Name", style="cyan")
    table.add_column("VID:PID", style="magenta")
    table.add_column("Product", style="green")
    table.add_column("Flash", style="yellow")
    table.add_column("Page / Sector", style="blue")
    table.add_column("Checksum", style="dim")

    for name in list_tables():
        entry = get_table(name)
        geometry = entry.geometry
        table.add_row(
            name + (" (default)" if name == DEFAULT_TABLE else ""),
            f"{entry.usb.vendor_id:04X}:{entry.usb.product_id:04X}",
            entry.usb.product or "-",
            f"{geometry.total_size // 1024} KiB",
            f"0x{geometry.page_size:X} / 0x{geometry.sector_size:X}",
            entry.frame.checksum,
        )
    console.print(table)


@app.command()
def identify(ctx: typer.Context) -> None:
    """Open the chip and show its identity and flash geometry."""
    state = _state(ctx)
    result = core_identify_device(state.device)
    if state.json_output or not result.ok:
        report(state, result)
        return

    print_header("Qoob Identification")
    info = result.metadata["info"]
    table = Table(title="Device Information")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Manufacturer", info["manufacturer"])
    table.add_row("Product", info["product"])
    table.add_row("VID:PID", f"{info['vendor_id']:04X}:{info['product_id']:04X}")
    table.add_row("Version", f"{info['version']:04X}")
    table.add_row("Serial", info["serial"] or "-")
    table.add_row("Path", info["path"])
    table.add_row("Protocol table", info["table"])
    table.add_row("Flash size", f"{info['total_size']:,} bytes")
    table.add_row("Page size", f"0x{info['page_size']:X}")
    table.add_row("Sector size", f"0x{info['sector_size']:X} x {info['sector_count']}")
    table.add_row("Erase value", f"0x{info['erase_value']:02X}")
    console.print(table)
    print_warnings_from_result(result, verbose=state.verbose)


@app.command()
def erase(
    ctx: typer.Context,
    sectors: Optional[str] = typer.Argument(
        None, help="Sectors to erase: 3, 0-4 or 4+2"
    ),
    erase_all: bool = typer.Option(False, "--all", help="Erase the whole chip"),
    write: bool = typer.Option(False, "--write", help="Enable flash modification"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Confirmation token (WRITE)"),
) -> None:
    """Erase sectors, blank-checking each one."""
    state = _state(ctx)
    if erase_all:
        selection = range(0, state.device.resolve_table().geometry.sector_count)
    elif sectors is not None:
        selection = parse_sector_range(sectors)
    else:
        raise typer.BadParameter("Give a sector range or --all")

    safety = build_safety_context(write, state.device.simulate, confirm)
    sector_size = state.device.resolve_table().geometry.sector_size
    confirm_write(
        safety, "erase",
        f"sectors {selection.start}..{selection.stop - 1}",
        len(selection) * sector_size,
    )
    with cancel_on_interrupt() as cancel, progress_sink(not state.json_output) as sink:
        result = core_erase_sectors(
            selection, safety, state.device, progress=sink, cancel=cancel
        )
    report(state, result, f"Erased sectors {selection.start}..{selection.stop - 1}")


@app.command()
def write(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Image file to program"),
    address: str = typer.Option("0", "--address", "-a", help="Page-aligned start address"),
    erase_first: bool = typer.Option(False, "--erase", help="Erase covered sectors first"),
    write: bool = typer.Option(False, "--write", help="Enable flash modification"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Confirmation token (WRITE)"),
) -> None:
    """Program an image with per-page read-back verification."""
    state = _state(ctx)
    start = parse_offset(address) or 0
    data = _read_input(image)

    safety = build_safety_context(write, state.device.simulate, confirm)
    page = state.device.resolve_table().geometry.page_size
    if erase_first:
        safety.add_warning("Sectors covered by the image are erased first")
    if len(data) % page:
        safety.add_warning(f"Final page is padded with {page - len(data) % page:,} zero bytes")
    confirm_write(safety, "write", f"0x{start:06X}-0x{start + len(data):06X}", len(data))
    with cancel_on_interrupt() as cancel, progress_sink(not state.json_output) as sink:
        result = core_write_image(
            data, start, safety, state.device,
            erase=erase_first, progress=sink, cancel=cancel,
        )
    report(state, result, f"Wrote {len(data):,} bytes at 0x{start:06X}")


@app.command()
def read(
    ctx: typer.Context,
    output: str = typer.Argument(..., help="File to save the data to"),
    address: str = typer.Option("0", "--address", "-a", help="Start address"),
    length: Optional[str] = typer.Option(
        None, "--length", "-l", help="Bytes to read (default: to end of flash)"
    ),
) -> None:
    """Read flash contents to a file."""
    state = _state(ctx)
    start = parse_offset(address) or 0
    count = parse_size(length)
    if count is None:
        count = state.device.resolve_table().geometry.total_size - start

    with cancel_on_interrupt() as cancel, progress_sink(not state.json_output) as sink:
        result = core_read_flash(
            start, count, state.device, output_path=output, progress=sink, cancel=cancel
        )
    report(state, result, f"Saved {count:,} bytes to {output}")


@app.command()
def verify(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="Image file to compare against"),
    address: str = typer.Option("0", "--address", "-a", help="Start address"),
) -> None:
    """Compare flash contents with an image file."""
    state = _state(ctx)
    start = parse_offset(address) or 0
    data = _read_input(image)

    with cancel_on_interrupt() as cancel, progress_sink(not state.json_output) as sink:
        result = core_verify_image(data, start, state.device, progress=sink, cancel=cancel)
    if not result.ok and not state.json_output and "address" in result.metadata:
        expected = result.metadata.get("expected", b"")
        actual = result.metadata.get("actual", b"")
        console.print(f"  Expected: {expected.hex(' ')}")
        console.print(f"  Actual:   {actual.hex(' ')}")
    report(state, result, f"Verified {len(data):,} bytes at 0x{start:06X}")


@app.command("ls")
def list_files(ctx: typer.Context) -> None:
    """List the files stored in flash."""
    state = _state(ctx)
    result = core_list_slots(state.device)
    if state.json_output or not result.ok:
        report(state, result)
        return

    print_header("Qoob Flash Contents")
    files = result.metadata["files"]
    if not files:
        print_warning("No files found")
    else:
        table = Table(title=f"{len(files)} File(s)")
        table.add_column("Slot", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Description", style="green")
        table.add_column("Size", style="yellow")
        table.add_column("Sectors", style="dim")
        for entry in files:
            table.add_row(
                str(entry["slot"]),
                entry["type"],
                entry["description"],
                f"{entry['size']:,}",
                str(entry["sectors"]),
            )
        console.print(table)

    states = result.metadata["sectors"]
    marks = {"empty": ".", "file": "#", "unknown": "?"}
    console.print("Sectors: " + "".join(marks[s] for s in states), markup=False)
    print_warnings_from_result(result, verbose=state.verbose)


@app.command("dump-slot")
def dump_slot(
    ctx: typer.Context,
    slot: int = typer.Argument(..., help="Slot (first sector) of the file"),
    output: str = typer.Argument(..., help="File to save it to"),
) -> None:
    """Save the file stored in a slot."""
    state = _state(ctx)
    result = core_dump_slot(slot, state.device, output_path=output)
    report(state, result, f"Saved slot {slot} to {output}")


@app.command()
def put(
    ctx: typer.Context,
    image: str = typer.Argument(..., help="File with a Qoob header (BIOS, DOL, ELF, ...)"),
    slot: Optional[int] = typer.Option(None, "--slot", "-s", help="Destination slot (default: first free)"),
    erase_first: bool = typer.Option(False, "--erase", help="Overwrite whatever occupies the slot"),
    write: bool = typer.Option(False, "--write", help="Enable flash modification"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Confirmation token (WRITE)"),
) -> None:
    """Store a file in a flash slot."""
    state = _state(ctx)
    data = _read_input(image)

    safety = build_safety_context(write, state.device.simulate, confirm)
    if erase_first:
        safety.add_warning("Whatever occupies the destination sectors is erased")
    confirm_write(
        safety, "put",
        f"slot {slot}" if slot is not None else "first free slot",
        len(data),
    )
    with cancel_on_interrupt() as cancel, progress_sink(not state.json_output) as sink:
        result = core_put_file(
            data, safety, slot, state.device,
            erase=erase_first, progress=sink, cancel=cancel,
        )
    report(state, result, f"Stored {Path(image).name} in slot {result.metadata.get('slot')}")


@app.command("rm")
def remove(
    ctx: typer.Context,
    slot: int = typer.Argument(..., help="Slot (first sector) of the file"),
    write: bool = typer.Option(False, "--write", help="Enable flash modification"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Confirmation token (WRITE)"),
) -> None:
    """Erase the file stored in a slot."""
    state = _state(ctx)
    safety = build_safety_context(write, state.device.simulate, confirm)
    confirm_write(safety, "remove", f"slot {slot}")
    with progress_sink(not state.json_output) as sink:
        result = core_remove_slot(slot, safety, state.device, progress=sink)
    report(state, result, f"Removed slot {slot}")


@app.command()
def reset(ctx: typer.Context) -> None:
    """Reset the chip; it leaves flashing mode."""
    state = _state(ctx)
    result = core_reset_device(state.device)
    report(state, result, "Reset sent")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
