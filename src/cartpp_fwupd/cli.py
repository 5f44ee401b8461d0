"""
GB-CARTPP-XC Firmware Updater CLI

Command-line interface for updating, listing and inspecting GB-CARTPP-XC
cartridges.
"""

import sys
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from cartpp_fwupd import __version__
from cartpp_fwupd.core.results import OperationResult
from cartpp_fwupd.core.update import PROGRESS_TOTAL, UpdateObserver, UpdateState
from cartpp_fwupd.core.actions import (
    update_firmware as core_update_firmware,
    list_devices as core_list_devices,
    inspect_image as core_inspect_image,
    read_diagnostics as core_read_diagnostics,
)
from cartpp_fwupd.models.verify import VerifyResult
from cartpp_fwupd.protocol.bootloader import USB_ERROR_FLAGS

logger = logging.getLogger("cartpp_fwupd")

# Setup Rich console
console = Console()

app = typer.Typer(help="GB-CARTPP-XC firmware updater")


def setup_logging(verbose: int = 0, quiet: bool = False) -> None:
    """Route log records through Rich; -v for debug, -q for warnings only."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


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


def finish(result: OperationResult) -> None:
    """Print warnings and errors of a result; exit 1 if it failed."""
    for warning in result.warnings:
        print_warning(warning)
    if not result.ok:
        for error in result.errors:
            print_error(error)
        sys.exit(1)


class ConsoleUpdateObserver(UpdateObserver):
    """Renders flash write/verify progress bars while an update runs."""

    def __init__(self, console: Console):
        self.console = console
        self._progress: Optional[Progress] = None
        self._bar: Optional[BarColumn] = None
        self._task = None
        self._errored = False

    def _start(self, description: str) -> None:
        self._bar = BarColumn()
        self._progress = Progress(
            TextColumn("{task.description}"),
            self._bar,
            TextColumn("[{task.percentage:.0f}%]"),
            TextColumn("{task.fields[status]}", style="red"),
            console=self.console,
        )
        self._task = self._progress.add_task(description, total=PROGRESS_TOTAL, status="")
        self._errored = False
        self._progress.start()

    def close(self, completed: bool = False) -> None:
        """Stop the active progress bar, if any."""
        if self._progress is None:
            return
        if completed:
            self._progress.update(self._task, completed=PROGRESS_TOTAL)
        self._progress.stop()
        self._progress = None

    def phase(self, state: UpdateState, message: str) -> None:
        self.close(completed=state is not UpdateState.ABORTED)
        if state is UpdateState.WRITE_FLASH:
            self._start("Updating flash: ")
        elif state is UpdateState.VERIFY_FLASH:
            self._start("Verifying flash:")

    def flash_write(self, offset: int, total: int) -> None:
        if self._progress is not None:
            self._progress.update(self._task, completed=offset)

    def flash_verify(self, offset: int, total: int, result: VerifyResult) -> None:
        if self._progress is None:
            return
        if not result.is_valid and not self._errored:
            self._errored = True
            self._bar.complete_style = "red"
            self._bar.finished_style = "red"
            self._progress.update(self._task, status="errors detected")
        self._progress.update(self._task, completed=offset)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"gb-cartpp-fwupd {__version__}")
        raise typer.Exit()


@app.callback()
def main_options(
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only show warnings and errors"),
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """GB-CARTPP-XC firmware updater."""
    setup_logging(verbose, quiet)


@app.command()
def update(
    image: str = typer.Argument(..., help="Firmware image archive (- for standard input)"),
    allow_invalid_signature: bool = typer.Option(
        False,
        "--allow-invalid-signature",
        help="Allow flashing firmware without a valid signature",
    ),
) -> None:
    """Update the connected cartridge's firmware."""
    print_header("GB-CARTPP-XC Firmware Update")

    observer = ConsoleUpdateObserver(console)
    try:
        result = core_update_firmware(
            image,
            allow_invalid_signature=allow_invalid_signature,
            observer=observer,
        )
    finally:
        observer.close()

    finish(result)
    if result.metadata.get("skipped"):
        print_success("Firmware is already up to date")
    else:
        print_success("Firmware update complete")


@app.command()
def devices() -> None:
    """List connected GB-CARTPP-XC devices."""
    print_header("GB-CARTPP-XC Devices")

    result = core_list_devices()
    finish(result)

    rows = result.metadata.get("devices", [])
    if not rows:
        print_warning("No GB-CARTPP-XC devices found")
        return

    table = Table(title="USB Devices")
    table.add_column("Address", style="cyan")
    table.add_column("Mode", style="magenta")
    table.add_column("Firmware", style="green")
    table.add_column("Bootloader", style="yellow")

    for row in rows:
        table.add_row(
            f"{row['address']:03}",
            row["mode"],
            row["firmware"] or "-",
            row["bootloader"] or "-",
        )

    console.print(table)


@app.command()
def inspect(
    image: str = typer.Argument(..., help="Firmware image archive (- for standard input)"),
    export_hex: Optional[str] = typer.Option(
        None, "--export-hex", help="Write the decoded image as Intel HEX"
    ),
) -> None:
    """Show what a firmware image contains."""
    print_header("Firmware Image")

    result = core_inspect_image(image, export_hex=export_hex)
    finish(result)

    table = Table(title="Image Information")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", f"v{result.image_version}")
    table.add_row("Checksum", f"{result.checksums['image']:#06x}")
    table.add_row("Signature", result.metadata["signature"])
    table.add_row(
        "ID bytes",
        " ".join(f"{addr:06X}={value:02X}" for addr, value in result.metadata["id_bytes"]) or "-",
    )
    table.add_row(
        "Config bytes",
        " ".join(f"{addr:06X}={value:02X}" for addr, value in result.metadata["config_bytes"]) or "-",
    )

    console.print(table)
    if result.metadata.get("exported"):
        print_success(f"Intel HEX written to {result.metadata['exported']}")


@app.command()
def diagnose() -> None:
    """Dump registers and diagnostics of a cartridge in bootloader mode."""
    print_header("GB-CARTPP-XC Diagnostics")

    result = core_read_diagnostics()
    finish(result)

    console.print(f"Using {result.device}")

    sfr_table = Table(title="Special Function Registers")
    sfr_table.add_column("Register", style="cyan")
    sfr_table.add_column("Value", style="green")
    for name, value in result.metadata["sfrs"].items():
        sfr_table.add_row(name, f"0x{value:02X}")
    console.print(sfr_table)

    diagnostics = result.metadata["diagnostics"]
    usb_errors = diagnostics.usb_errors
    diag_table = Table(title="Firmware Diagnostics")
    diag_table.add_column("Field", style="cyan")
    diag_table.add_column("Value", style="green")
    diag_table.add_row("Reset voltage (ADC)", str(diagnostics.initial_res_voltage))
    diag_table.add_row("RCON at reset", f"0x{diagnostics.initial_rcon:02X}")
    diag_table.add_row("STKPTR at reset", f"0x{diagnostics.initial_stkptr:02X}")
    for label, count in zip(USB_ERROR_FLAGS, (
        usb_errors.pid,
        usb_errors.crc5,
        usb_errors.crc16,
        usb_errors.dfn8,
        usb_errors.bto,
        usb_errors.bts,
    )):
        diag_table.add_row(f"USB {label} errors", str(count))
    diag_table.add_row("USB error flags", ", ".join(usb_errors.active_flags) or "none")
    console.print(diag_table)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
