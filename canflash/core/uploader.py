"""Firmware upload sequencing: erase, write, verify."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path

from canflash.core.checksum import checksum
from canflash.core.codec import CMD_BEGIN_WRITE, CMD_END_WRITE, CMD_ERASE, CMD_WRITE_DATA
from canflash.core.errors import (
    DeviceRejectedError,
    InvalidInputError,
    ProtocolTimeoutError,
    TransportError,
)
from canflash.core.model import UploadReport, UploadStage
from canflash.core.sync import CommandSynchronizer

FILL_BYTE = 0xFF
WORD_SIZE = 4
PROGRESS_INTERVAL = 1024
LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

_STAGE_LABELS = {
    UploadStage.ERASING: "Erase",
    UploadStage.BEGIN_WRITE: "Begin write",
    UploadStage.WRITING: "Write",
    UploadStage.END_WRITE: "End write",
    UploadStage.VERIFYING: "Checksum request",
}

_COMMAND_FAILURES = (ProtocolTimeoutError, DeviceRejectedError, TransportError)


def read_image(path: str | Path) -> bytes:
    image_path = Path(path)
    if not str(path).strip():
        raise InvalidInputError("No firmware file given")
    try:
        data = image_path.read_bytes()
    except FileNotFoundError as exc:
        raise InvalidInputError(f"File not found: {image_path}") from exc
    except OSError as exc:
        raise InvalidInputError(f"Could not read firmware file {image_path}: {exc}") from exc
    if not data:
        raise InvalidInputError(f"File is empty: {image_path}")
    return data


def iter_words(image: bytes) -> Iterator[tuple[int, bytes]]:
    """Yield `(offset, word)` in ascending order; the last word is padded with the fill byte."""
    for offset in range(0, len(image), WORD_SIZE):
        word = image[offset : offset + WORD_SIZE]
        yield offset, word.ljust(WORD_SIZE, bytes([FILL_BYTE]))


class UploadOrchestrator:
    """Drives the linear bootloader sequence over a `CommandSynchronizer`.

    Every operation resolves protocol and transport failures into a boolean
    (or `None`) plus a log line; nothing is retried.
    """

    def __init__(self, synchronizer: CommandSynchronizer) -> None:
        self._sync = synchronizer
        self.last_report: UploadReport | None = None

    def erase(self) -> bool:
        LOGGER.info("Erasing application flash...")
        return self._sync.await_acknowledgement(CMD_ERASE)

    def query_checksum(self) -> int | None:
        return self._sync.await_checksum()

    def upload_image(
        self,
        path: str | Path,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> bool:
        report = UploadReport(path=str(path))
        self.last_report = report

        try:
            image = read_image(path)
        except InvalidInputError as exc:
            report.stage = UploadStage.FAILED
            report.error = exc
            LOGGER.error("%s", exc)
            return False

        report.image_size = len(image)
        report.words_total = (len(image) + WORD_SIZE - 1) // WORD_SIZE
        report.local_checksum = checksum(image)
        LOGGER.info("Firmware file: %s", path)
        LOGGER.info("File size: %d bytes (%.2f KB)", len(image), len(image) / 1024.0)
        LOGGER.info("Local file checksum: 0x%08X", report.local_checksum)

        try:
            return self._run(image, report, on_progress)
        except _COMMAND_FAILURES as exc:
            label = _STAGE_LABELS.get(report.stage, report.stage.value)
            LOGGER.error("%s failed: %s", label, exc)
            report.failed_at = report.stage
            report.stage = UploadStage.FAILED
            report.error = exc
            return False

    def _run(
        self,
        image: bytes,
        report: UploadReport,
        on_progress: ProgressCallback | None,
    ) -> bool:
        report.stage = UploadStage.ERASING
        LOGGER.info("Sending erase command...")
        self._sync.confirm(CMD_ERASE)

        report.stage = UploadStage.BEGIN_WRITE
        LOGGER.info("Sending start write command...")
        self._sync.confirm(CMD_BEGIN_WRITE)

        report.stage = UploadStage.WRITING
        LOGGER.info("Writing data...")
        self._write_words(image, report, on_progress)
        LOGGER.info("Download completed! Successful writes: %d", report.words_written)

        report.stage = UploadStage.END_WRITE
        LOGGER.info("Sending end write command...")
        self._sync.confirm(CMD_END_WRITE)

        report.stage = UploadStage.VERIFYING
        LOGGER.info("Write completed, verifying checksum...")
        remote = self._sync.fetch_checksum()
        report.remote_checksum = remote
        LOGGER.info("Device checksum: 0x%08X", remote)
        LOGGER.info("Local checksum:  0x%08X", report.local_checksum)

        if remote != report.local_checksum:
            report.stage = UploadStage.REJECTED
            report.error = DeviceRejectedError(
                f"Checksum verification failed: device 0x{remote:08X}, "
                f"local 0x{report.local_checksum:08X}",
                expected=report.local_checksum,
                actual=remote,
            )
            LOGGER.error("%s", report.error)
            return False

        report.stage = UploadStage.VERIFIED
        LOGGER.info("Checksum verification passed!")
        return True

    def _write_words(
        self,
        image: bytes,
        report: UploadReport,
        on_progress: ProgressCallback | None,
    ) -> None:
        state = self._sync.state
        previous_verbose = state.verbose
        state.verbose = False
        try:
            self._send_words(image, report, on_progress)
        finally:
            state.verbose = previous_verbose

    def _send_words(
        self,
        image: bytes,
        report: UploadReport,
        on_progress: ProgressCallback | None,
    ) -> None:
        total = len(image)
        for offset, word in iter_words(image):
            try:
                self._sync.confirm(CMD_WRITE_DATA, word, quiet=True)
            except _COMMAND_FAILURES:
                report.words_failed += 1
                LOGGER.error("Write word failed at offset=%d", offset)
                LOGGER.info(
                    "Successful writes: %d, Failed writes: %d",
                    report.words_written,
                    report.words_failed,
                )
                raise
            report.words_written += 1

            consumed = min(offset + WORD_SIZE, total)
            if on_progress is not None and (consumed % PROGRESS_INTERVAL == 0 or consumed == total):
                on_progress(consumed, total)
