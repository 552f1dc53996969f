"""Thin CLI wrapper for multiwrite.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import asyncio
import contextlib
import json
import logging
import signal
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from multiwrite import __version__
from multiwrite.config import Settings, get_settings, print_settings_json
from multiwrite.units import prettybytes

if TYPE_CHECKING:
    from multiwrite.hub import Hub
    from multiwrite.progress import Meter

app = typer.Typer(
    name="multiwrite",
    help="multiwrite - flash one image onto every removable drive that shows up",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"multiwrite version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """multiwrite - flash one image onto every removable drive that shows up."""


def configure_logging(settings: Settings, meter: "Meter | None" = None) -> None:
    """Route log records to a file, the progress Meter or stderr.

    While a Meter draws the progress frame, records are printed through it so
    the next frame does not overwrite them.
    """
    from multiwrite.progress import MeterHandler

    handler: logging.Handler
    if settings.log_file:
        handler = logging.FileHandler(settings.log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    elif meter is not None:
        handler = MeterHandler(meter)
    else:
        handler = RichHandler(console=Console(stderr=True), show_path=False)

    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    blacklist = ", ".join(sorted(settings.blacklist)) or "(none)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Image:[/bold]")
    console.print(f"  Image URL:           {settings.image_url or '(not set)'}")
    console.print(f"  Data directory:      {settings.image_data_dir}")
    console.print()
    console.print("[bold]Discovery:[/bold]")
    console.print(f"  Drive blacklist:     {blacklist}")
    console.print(f"  Poll interval:       {settings.poll_interval}")
    console.print()
    console.print("[bold]Display (seconds):[/bold]")
    console.print(f"  Render interval:     {settings.render_interval}")
    console.print(f"  Error hold:          {settings.error_hold}")
    console.print(f"  Unmount hold:        {settings.unmount_hold}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Block size:          {prettybytes(settings.block_size)}")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Log file:            {settings.log_file or '(stderr)'}")


@app.command()
def drives(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List attached drives and whether discovery would consider them."""
    from multiwrite.errors import EnumerationError
    from multiwrite.flash.device import list_drives
    from multiwrite.hub.service import qualifies

    settings = get_settings()
    configure_logging(settings)

    try:
        found = asyncio.run(list_drives())
    except EnumerationError as e:
        console.print(f"[red]Could not list drives: {e.message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = [
            {**asdict(drive), "eligible": qualifies(drive, settings.blacklist)}
            for drive in found
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not found:
        console.print("[yellow]No drives found[/yellow]")
        return

    console.print(f"[bold]Found {len(found)} drive(s):[/bold]")
    console.print()
    for drive in found:
        eligible = qualifies(drive, settings.blacklist)
        color = "green" if eligible else "red"
        console.print(f"  [{color}]{drive.device}[/{color}]")
        console.print(f"    Description: {drive.description}")
        console.print(f"    Size: {prettybytes(drive.size)}")
        console.print(f"    System: {drive.system}  Protected: {drive.protected}")
        console.print(f"    Mountpoints: {', '.join(drive.mountpoints) or '(none)'}")
        console.print(f"    Eligible: {eligible}")
        console.print()


async def _serve(hub: "Hub") -> None:
    image = await hub.fetch()
    console.print(
        f"Flashing [bold]{image.path.name}[/bold] ({prettybytes(image.original)})"
    )

    with contextlib.suppress(NotImplementedError):
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, hub.stop)

    await hub.run()


@app.command()
def run(
    image_url: Annotated[
        str | None,
        typer.Option("--image-url", "-u", help="URL of the image to flash"),
    ] = None,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", "-d", help="Directory the image is cached in"),
    ] = None,
    blacklist: Annotated[
        str | None,
        typer.Option(
            "--blacklist", "-b", help="Comma-separated devices that are never flashed"
        ),
    ] = None,
) -> None:
    """Fetch the image, then flash every qualifying drive until interrupted."""
    from multiwrite.errors import FetchError
    from multiwrite.hub import Hub
    from multiwrite.progress import ConsoleStream, Meter

    settings = get_settings()
    overrides = {
        key: value
        for key, value in {
            "image_url": image_url,
            "image_data_dir": data_dir,
            "drive_blacklist": blacklist,
        }.items()
        if value is not None
    }
    if overrides:
        settings = settings.model_copy(update=overrides)

    if not settings.image_url:
        console.print(
            "[red]No image URL configured. "
            "Set MULTIWRITE_IMAGE_URL or pass --image-url.[/red]"
        )
        raise typer.Exit(code=1)

    meter = Meter(ConsoleStream(console), interval=settings.render_interval)
    configure_logging(settings, meter)

    hub = Hub(settings, meter=meter)

    try:
        asyncio.run(_serve(hub))
    except FetchError as e:
        console.print(f"[red]Image fetch failed: {e.message}[/red]")
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=130) from None


if __name__ == "__main__":
    app()
