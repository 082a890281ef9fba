"""Interactive bootloader shell with line history."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

import typer

from canflash.core.errors import CanflashError
from canflash.core.model import DeviceInfo
from canflash.core.service import BootloaderService, parse_target_id
from canflash.core.uploader import read_image

try:
    import readline
except ImportError:  # pragma: no cover - platforms without GNU readline
    readline = None  # type: ignore[assignment]

PROMPT = "bootloader> "
COMMANDS = ("setid", "erase", "write", "crc", "info", "verbose", "help", "exit", "quit")
LOGGER = logging.getLogger(__name__)


def history_path() -> Path:
    state_home = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local/state"))
    return state_home / "canflash/history"


def complete_command(text: str, state: int) -> str | None:
    matches = [cmd for cmd in COMMANDS if cmd.startswith(text)]
    return matches[state] if state < len(matches) else None


def format_device_info(info: DeviceInfo) -> list[str]:
    lines = ["Device Information:", f"  - Current Node ID: 0x{info.target_id:02X}"]
    if info.flash is not None:
        lines.extend(
            [
                f"  - Application Start: 0x{info.flash.app_start:08X}",
                f"  - Application End: 0x{info.flash.app_end:08X}",
                f"  - Flash Size: {info.flash.flash_size_kb}KB",
                f"  - RAM Size: {info.flash.ram_size_kb}KB",
            ]
        )
    if info.checksum is None:
        lines.append("  - Application CRC: <no response>")
    else:
        lines.append(f"  - Application CRC: 0x{info.checksum:08X}")
        state = "VALID" if info.application_valid else "INVALID or not programmed"
        lines.append(f"  - Application: {state}")
    return lines


class BootloaderShell:
    """Line-oriented front end mirroring the CLI commands.

    `read_line` is called for the prompt and for follow-up questions; it must
    raise `EOFError` when input is exhausted.
    """

    def __init__(
        self,
        service: BootloaderService,
        *,
        read_line: Callable[[str], str] = input,
        echo: Callable[..., None] = typer.echo,
        history_file: Path | None = None,
    ) -> None:
        self._service = service
        self._read_line = read_line
        self._echo = echo
        self._history_file = history_file
        self._handlers: dict[str, Callable[[str], None]] = {
            "setid": self._do_setid,
            "erase": self._do_erase,
            "write": self._do_write,
            "crc": self._do_crc,
            "info": self._do_info,
            "verbose": self._do_verbose,
            "help": self._do_help,
        }

    def _load_history(self) -> None:
        if readline is None or self._history_file is None:
            return
        readline.set_completer(complete_command)
        readline.parse_and_bind("tab: complete")
        try:
            readline.read_history_file(self._history_file)
        except OSError:
            LOGGER.debug("No history at %s", self._history_file)

    def _save_history(self) -> None:
        if readline is None or self._history_file is None:
            return
        try:
            self._history_file.parent.mkdir(parents=True, exist_ok=True)
            readline.write_history_file(self._history_file)
        except OSError as exc:
            LOGGER.warning("Could not write history file %s: %s", self._history_file, exc)

    def print_welcome(self) -> None:
        self._echo("==========================================")
        self._echo("         canflash bootloader shell")
        self._echo("==========================================")
        self._echo(f"Current Node ID: 0x{self._service.target_id:02X}")
        self._echo("Available commands:")
        self._echo("  setid   - Set CAN node ID")
        self._echo("  erase   - Erase application flash")
        self._echo("  write   - Upload firmware file")
        self._echo("  crc     - Check application CRC")
        self._echo("  info    - Show device information")
        self._echo("  verbose - Toggle protocol logging (on/off)")
        self._echo("  exit    - Quit application")
        self._echo("==========================================")

    def run(self) -> None:
        self._load_history()
        self.print_welcome()
        try:
            while True:
                try:
                    line = self._read_line(PROMPT)
                except EOFError:
                    break
                if not self.handle(line):
                    break
        finally:
            self._save_history()
        self._echo("Goodbye!")

    def handle(self, line: str) -> bool:
        """Run one command line. Returns False when the shell should exit."""
        parts = line.strip().split(maxsplit=1)
        if not parts:
            return True
        command = parts[0]
        argument = parts[1] if len(parts) > 1 else ""

        if command in ("exit", "quit"):
            return False
        handler = self._handlers.get(command)
        if handler is None:
            self._echo(f"Unknown command: {command}", err=True)
            self._echo("Type 'help' for available commands")
            return True
        try:
            handler(argument)
        except CanflashError as exc:
            self._echo(f"Error: {exc}", err=True)
        return True

    def _ask(self, prompt: str, argument: str) -> str:
        if argument:
            return argument.strip()
        try:
            return self._read_line(prompt).strip()
        except EOFError:
            return ""

    def _do_setid(self, argument: str) -> None:
        text = self._ask("Enter node ID (hex, e.g., 0x01): ", argument)
        if not text:
            return
        self._service.set_target_identifier(parse_target_id(text))
        self._echo(f"Node ID set to: 0x{self._service.target_id:02X}")

    def _do_erase(self, argument: str) -> None:
        if self._service.erase():
            self._echo("Erase completed successfully!")
        else:
            self._echo("Erase failed!", err=True)

    def _do_write(self, argument: str) -> None:
        filename = self._ask("Enter firmware file path: ", argument)
        size = len(read_image(filename))
        self._echo(f"Firmware file: {filename}")
        self._echo(f"File size: {size} bytes ({size / 1024.0:.2f} KB)")
        confirm = self._ask("Proceed with firmware upload? (y/n): ", "")
        if confirm not in ("y", "Y"):
            self._echo("Upload cancelled")
            return
        if self._service.upload_image(filename):
            self._echo("Firmware upload completed successfully!")
        else:
            self._echo("Firmware upload failed!", err=True)

    def _do_crc(self, argument: str) -> None:
        value = self._service.query_checksum()
        if value is None:
            self._echo("Failed to get CRC!", err=True)
        else:
            self._echo(f"Application CRC: 0x{value:08X}")

    def _do_info(self, argument: str) -> None:
        for line in format_device_info(self._service.device_info()):
            self._echo(line)

    def _do_verbose(self, argument: str) -> None:
        choice = argument.strip().lower()
        if choice not in ("on", "off"):
            self._echo("Usage: verbose on|off", err=True)
            return
        self._service.set_verbose_logging(choice == "on")
        self._echo(f"Verbose logging {choice}")

    def _do_help(self, argument: str) -> None:
        self.print_welcome()
