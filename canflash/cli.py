"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import typer

from canflash.core.errors import CanflashError
from canflash.core.service import BootloaderService, parse_target_id
from canflash.shell import BootloaderShell, format_device_info, history_path

app = typer.Typer(help="Firmware upload to a CAN bootloader")


@dataclass(frozen=True)
class _Options:
    profile: str | None
    channel: str | None
    interface: str | None
    target_id: str | None


def _build_service(ctx: typer.Context) -> BootloaderService:
    options: _Options = ctx.obj
    target_id = parse_target_id(options.target_id) if options.target_id else None
    service = BootloaderService(
        options.profile,
        channel=options.channel,
        interface=options.interface,
        target_id=target_id,
    )
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


@app.callback()
def main(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="Device profile ID"),
    channel: str | None = typer.Option(None, "--channel", help="CAN channel, e.g. can0"),
    interface: str | None = typer.Option(None, "--interface", help="python-can interface name"),
    target_id: str | None = typer.Option(None, "--target-id", help="Node ID (hex 0x01 or decimal)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log warnings and errors"),
    debug: bool = typer.Option(False, "--debug", help="Log every frame"),
) -> None:
    level = logging.DEBUG if debug else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")
    ctx.obj = _Options(profile=profile, channel=channel, interface=interface, target_id=target_id)


@app.command("profiles")
def list_profiles(ctx: typer.Context) -> None:
    """List available device profiles."""
    try:
        service = _build_service(ctx)
        for profile in service.list_profiles():
            typer.echo(
                f"{profile.id}: {profile.name} "
                f"({profile.bus.interface}:{profile.bus.channel}, node 0x{profile.target_id:02X})"
            )
    except CanflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("erase")
def erase(ctx: typer.Context) -> None:
    """Erase the application flash."""
    try:
        with _build_service(ctx) as service:
            ok = service.erase()
    except CanflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if not ok:
        typer.echo("Erase failed!", err=True)
        raise typer.Exit(code=1)
    typer.echo("Erase completed successfully!")


@app.command("write")
def write(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Firmware binary to upload"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Erase, program, and verify a firmware image."""
    size = path.stat().st_size if path.is_file() else 0
    if size and not yes:
        typer.echo(f"Firmware file: {path} ({size} bytes, {size / 1024.0:.2f} KB)")
        if not typer.confirm("Proceed with firmware upload?"):
            typer.echo("Upload cancelled")
            return

    try:
        with _build_service(ctx) as service:
            with typer.progressbar(length=max(size, 1), label="Writing") as bar:
                written = 0

                def on_progress(done: int, total: int) -> None:
                    nonlocal written
                    bar.update(done - written)
                    written = done

                ok = service.upload_image(path, on_progress=on_progress)
            report = service.last_report
    except CanflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if report is not None and report.words_total:
        typer.echo(f"Words written: {report.words_written}/{report.words_total}")
    if not ok:
        if report is not None and report.error is not None:
            typer.echo(f"Error: {report.error}", err=True)
        typer.echo("Firmware upload failed!", err=True)
        raise typer.Exit(code=1)
    typer.echo("Firmware upload completed successfully!")


@app.command("crc")
def crc(ctx: typer.Context) -> None:
    """Request the application checksum from the device."""
    try:
        with _build_service(ctx) as service:
            value = service.query_checksum()
    except CanflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if value is None:
        typer.echo("Failed to get CRC!", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Application CRC: 0x{value:08X}")


@app.command("info")
def info(ctx: typer.Context) -> None:
    """Show device layout and application state."""
    try:
        with _build_service(ctx) as service:
            device = service.device_info()
    except CanflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    for line in format_device_info(device):
        typer.echo(line)


@app.command("shell")
def shell(ctx: typer.Context) -> None:
    """Start the interactive bootloader shell."""
    try:
        with _build_service(ctx) as service:
            BootloaderShell(service, history_file=history_path()).run()
    except CanflashError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
