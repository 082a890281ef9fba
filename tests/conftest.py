from __future__ import annotations

from pathlib import Path

import pytest

from canflash.core.checksum import checksum
from canflash.core.codec import (
    CMD_ACK_STATUS,
    CMD_CHECKSUM_REPORT,
    CMD_ERASE,
    CMD_REQUEST_CHECKSUM,
    CMD_WRITE_DATA,
    decode,
    encode,
)
from canflash.core.errors import TransportSendError
from canflash.core.model import Frame

STANDARD_ID_MASK = 0x7FF


class FakeBootloader:
    """Transport double that answers like the bootloader, from inside `send`."""

    def __init__(self, *, reported_checksum: int | None = None) -> None:
        self.sent: list[Frame] = []
        self.flash = bytearray()
        self.reported_checksum = reported_checksum
        self.reject: dict[int, int] = {}
        self.silent: set[int] = set()
        self.send_errors: set[int] = set()
        self.reject_write_at: int | None = None
        self.started = False
        self.closed = False
        self._callback = None

    def on_receive(self, callback) -> None:
        self._callback = callback

    def start_receiving(self) -> None:
        self.started = True

    def close(self) -> None:
        self.closed = True

    @property
    def commands(self) -> list[int]:
        return [decode(frame)[1] for frame in self.sent]

    @property
    def writes(self) -> list[bytes]:
        return [frame.payload for frame in self.sent if decode(frame)[1] == CMD_WRITE_DATA]

    def send(self, frame: Frame) -> None:
        if frame.address > STANDARD_ID_MASK:
            raise TransportSendError(f"Frame 0x{frame.address:X} does not fit a standard CAN identifier")
        self.sent.append(frame)
        target, command, payload = decode(frame)
        if command in self.send_errors:
            raise TransportSendError("CAN send failed: bus off")
        if command in self.silent:
            return
        if command == CMD_ERASE:
            self.flash.clear()
        if command == CMD_REQUEST_CHECKSUM:
            value = self.reported_checksum
            if value is None:
                value = checksum(bytes(self.flash))
            self.reply(encode(target, CMD_CHECKSUM_REPORT, value.to_bytes(4, "big")))
            return
        status = self.reject.get(command, 0xFF)
        if command == CMD_WRITE_DATA:
            if self.reject_write_at is not None and len(self.writes) - 1 == self.reject_write_at:
                status = 0x01
            else:
                self.flash.extend(payload)
        self.reply(encode(target, CMD_ACK_STATUS, bytes([status, 0x00, 0x00])))

    def reply(self, frame: Frame) -> None:
        assert self._callback is not None, "transport was never wired to a dispatcher"
        self._callback(frame)


@pytest.fixture(autouse=True)
def isolated_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    return tmp_path


@pytest.fixture
def bootloader() -> FakeBootloader:
    return FakeBootloader()
