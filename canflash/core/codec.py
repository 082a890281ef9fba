"""Bootloader frame codec: address field packing and payload limits."""

from __future__ import annotations

from canflash.core.errors import InvalidCommandError, InvalidFrameError
from canflash.core.model import Frame

CMD_ERASE = 0x01
CMD_BEGIN_WRITE = 0x02
CMD_WRITE_DATA = 0x03
CMD_END_WRITE = 0x04
CMD_REQUEST_CHECKSUM = 0x05
CMD_ACK_STATUS = 0x11
CMD_CHECKSUM_REPORT = 0x12

COMMAND_BITS = 7
MAX_COMMAND = (1 << COMMAND_BITS) - 1
MAX_TARGET_ID = 0x1F
MAX_PAYLOAD_BYTES = 8

STATUS_SUCCESS = 0xFF

COMMAND_NAMES = {
    CMD_ERASE: "Erase flash",
    CMD_BEGIN_WRITE: "Start write",
    CMD_WRITE_DATA: "Write data",
    CMD_END_WRITE: "End write",
    CMD_REQUEST_CHECKSUM: "Request checksum",
    CMD_ACK_STATUS: "Acknowledgement",
    CMD_CHECKSUM_REPORT: "Checksum report",
}


def describe_command(command: int) -> str:
    return COMMAND_NAMES.get(command, f"Unknown command 0x{command:02X}")


def encode(target: int, command: int, payload: bytes = b"") -> Frame:
    if command < 0 or command > MAX_COMMAND:
        raise InvalidCommandError(
            f"Command 0x{command:02X} does not fit the {COMMAND_BITS}-bit command field"
        )
    if target < 0 or target > MAX_TARGET_ID:
        raise InvalidFrameError(f"Target identifier must be between 0 and 0x{MAX_TARGET_ID:02X}")
    payload = bytes(payload)
    if len(payload) > MAX_PAYLOAD_BYTES:
        raise InvalidFrameError(
            f"Payload of {len(payload)} bytes exceeds the {MAX_PAYLOAD_BYTES}-byte frame limit"
        )
    return Frame(address=(target << COMMAND_BITS) | command, payload=payload)


def decode(frame: Frame) -> tuple[int, int, bytes]:
    return frame.address >> COMMAND_BITS, frame.address & MAX_COMMAND, bytes(frame.payload)
