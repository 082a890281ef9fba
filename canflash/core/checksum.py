"""CRC-32 used to verify the programmed image against the source file."""

from __future__ import annotations

_POLYNOMIAL = 0xEDB88320


def _build_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ _POLYNOMIAL
            else:
                crc >>= 1
        table.append(crc)
    return tuple(table)


_TABLE = _build_table()


def checksum(data: bytes) -> int:
    """Reflected CRC-32 (init 0xFFFFFFFF, final complement), one byte at a time.

    The bootloader computes the same value over the programmed region, so the
    local and device-reported values are compared as plain integers.
    """
    crc = 0xFFFFFFFF
    for byte in data:
        crc = (crc >> 8) ^ _TABLE[(crc ^ byte) & 0xFF]
    return crc ^ 0xFFFFFFFF
