from __future__ import annotations

import logging
import queue
import random
import threading
import time
from pathlib import Path

import pytest

from canflash.core.checksum import checksum
from canflash.core.codec import (
    CMD_ACK_STATUS,
    CMD_BEGIN_WRITE,
    CMD_CHECKSUM_REPORT,
    CMD_END_WRITE,
    CMD_ERASE,
    CMD_REQUEST_CHECKSUM,
    CMD_WRITE_DATA,
    decode,
    encode,
)
from canflash.core.dispatcher import EventDispatcher
from canflash.core.errors import DeviceRejectedError, ProtocolTimeoutError, TransportSendError
from canflash.core.model import Frame, PendingWait, UploadStage, WaitKind
from canflash.core.sync import CommandSynchronizer, ProtocolState
from canflash.core.uploader import UploadOrchestrator, iter_words

from conftest import FakeBootloader


def _image(size: int, seed: int = 7) -> bytes:
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


def _write(tmp_path: Path, data: bytes, name: str = "app.bin") -> Path:
    path = tmp_path / name
    path.write_bytes(data)
    return path


def _orchestrator(transport, *, ack_timeout_s: float = 10.0, state: ProtocolState | None = None) -> UploadOrchestrator:
    state = state or ProtocolState()
    transport.on_receive(EventDispatcher(state).handle_frame)
    return UploadOrchestrator(
        CommandSynchronizer(transport, state, ack_timeout_s=ack_timeout_s, checksum_timeout_s=1.0)
    )


def test_iter_words_pads_final_word_with_fill_byte() -> None:
    words = list(iter_words(b"\x01\x02\x03\x04\x05"))
    assert words == [(0, b"\x01\x02\x03\x04"), (4, b"\x05\xff\xff\xff")]


def test_upload_end_to_end(tmp_path: Path, bootloader: FakeBootloader) -> None:
    data = _image(2050)
    bootloader.reported_checksum = checksum(data)
    orchestrator = _orchestrator(bootloader)

    assert orchestrator.upload_image(_write(tmp_path, data)) is True

    commands = bootloader.commands
    assert commands[:2] == [CMD_ERASE, CMD_BEGIN_WRITE]
    assert commands[-2:] == [CMD_END_WRITE, CMD_REQUEST_CHECKSUM]
    writes = bootloader.writes
    assert len(writes) == 513
    assert b"".join(writes[:512]) == data[:2048]
    assert writes[512] == bytes([data[2048], data[2049], 0xFF, 0xFF])

    report = orchestrator.last_report
    assert report is not None
    assert report.stage is UploadStage.VERIFIED
    assert report.succeeded
    assert report.words_written == 513
    assert report.words_failed == 0
    assert report.local_checksum == report.remote_checksum == checksum(data)


def test_upload_reports_progress(tmp_path: Path, bootloader: FakeBootloader) -> None:
    data = _image(2050)
    bootloader.reported_checksum = checksum(data)
    progress: list[tuple[int, int]] = []

    assert _orchestrator(bootloader).upload_image(
        _write(tmp_path, data), on_progress=lambda done, total: progress.append((done, total))
    )
    assert progress == [(1024, 2050), (2048, 2050), (2050, 2050)]


def test_data_phase_does_not_log_each_word(
    tmp_path: Path, bootloader: FakeBootloader, caplog: pytest.LogCaptureFixture
) -> None:
    data = _image(4096)
    bootloader.reported_checksum = checksum(data)
    state = ProtocolState(verbose=True)
    orchestrator = _orchestrator(bootloader, state=state)

    with caplog.at_level(logging.INFO):
        assert orchestrator.upload_image(_write(tmp_path, data)) is True

    confirmed = [record for record in caplog.records if record.getMessage() == "Operation confirmed"]
    assert len(bootloader.writes) == 1024
    assert len(confirmed) == 3
    assert state.verbose is True


def test_data_phase_restores_verbose_after_failure(tmp_path: Path, bootloader: FakeBootloader) -> None:
    bootloader.reject_write_at = 1
    state = ProtocolState(verbose=True)

    assert _orchestrator(bootloader, state=state).upload_image(_write(tmp_path, _image(64))) is False
    assert state.verbose is True


def test_checksum_mismatch_rejects(tmp_path: Path, bootloader: FakeBootloader, caplog: pytest.LogCaptureFixture) -> None:
    data = _image(2050)
    bootloader.reported_checksum = checksum(data) ^ 0x00000001
    orchestrator = _orchestrator(bootloader)

    with caplog.at_level(logging.ERROR):
        assert orchestrator.upload_image(_write(tmp_path, data)) is False

    assert bootloader.commands[-1] == CMD_REQUEST_CHECKSUM
    report = orchestrator.last_report
    assert report is not None
    assert report.stage is UploadStage.REJECTED
    assert isinstance(report.error, DeviceRejectedError)
    assert report.error.expected == checksum(data)
    assert report.error.actual == checksum(data) ^ 0x00000001
    assert "Checksum verification failed" in caplog.text


def test_erase_failure_aborts_before_write(tmp_path: Path, bootloader: FakeBootloader) -> None:
    bootloader.reject[CMD_ERASE] = 0x02
    orchestrator = _orchestrator(bootloader)

    assert orchestrator.upload_image(_write(tmp_path, b"\x00" * 16)) is False
    assert bootloader.commands == [CMD_ERASE]
    report = orchestrator.last_report
    assert report is not None
    assert report.stage is UploadStage.FAILED
    assert report.failed_at is UploadStage.ERASING


def test_begin_write_failure_keeps_erase(tmp_path: Path, bootloader: FakeBootloader) -> None:
    bootloader.reject[CMD_BEGIN_WRITE] = 0x05
    orchestrator = _orchestrator(bootloader)

    assert orchestrator.upload_image(_write(tmp_path, b"\x00" * 16)) is False
    assert bootloader.commands == [CMD_ERASE, CMD_BEGIN_WRITE]


def test_write_failure_stops_at_first_bad_word(tmp_path: Path, bootloader: FakeBootloader) -> None:
    bootloader.reject_write_at = 10
    orchestrator = _orchestrator(bootloader)

    assert orchestrator.upload_image(_write(tmp_path, _image(400))) is False

    assert len(bootloader.writes) == 11
    assert CMD_END_WRITE not in bootloader.commands
    report = orchestrator.last_report
    assert report is not None
    assert report.failed_at is UploadStage.WRITING
    assert report.words_written == 10
    assert report.words_failed == 1
    assert report.words_total == 100


def test_write_timeout_fails(tmp_path: Path, bootloader: FakeBootloader) -> None:
    bootloader.silent.add(CMD_WRITE_DATA)
    orchestrator = _orchestrator(bootloader, ack_timeout_s=0.05)

    assert orchestrator.upload_image(_write(tmp_path, _image(40))) is False
    assert len(bootloader.writes) == 1
    report = orchestrator.last_report
    assert report is not None
    assert isinstance(report.error, ProtocolTimeoutError)


def test_checksum_timeout_fails(tmp_path: Path, bootloader: FakeBootloader) -> None:
    bootloader.silent.add(CMD_REQUEST_CHECKSUM)
    state = ProtocolState()
    bootloader.on_receive(EventDispatcher(state).handle_frame)
    orchestrator = UploadOrchestrator(CommandSynchronizer(bootloader, state, checksum_timeout_s=0.05))

    assert orchestrator.upload_image(_write(tmp_path, _image(8))) is False
    report = orchestrator.last_report
    assert report is not None
    assert report.stage is UploadStage.FAILED
    assert report.failed_at is UploadStage.VERIFYING
    assert report.remote_checksum is None


def test_transport_error_aborts(tmp_path: Path, bootloader: FakeBootloader) -> None:
    bootloader.send_errors.add(CMD_END_WRITE)
    orchestrator = _orchestrator(bootloader)

    assert orchestrator.upload_image(_write(tmp_path, _image(8))) is False
    report = orchestrator.last_report
    assert report is not None
    assert isinstance(report.error, TransportSendError)
    assert report.failed_at is UploadStage.END_WRITE
    assert CMD_REQUEST_CHECKSUM not in bootloader.commands


def test_missing_file_sends_nothing(tmp_path: Path, bootloader: FakeBootloader) -> None:
    orchestrator = _orchestrator(bootloader)
    assert orchestrator.upload_image(tmp_path / "nope.bin") is False
    assert bootloader.sent == []


def test_empty_file_sends_nothing(tmp_path: Path, bootloader: FakeBootloader) -> None:
    orchestrator = _orchestrator(bootloader)
    assert orchestrator.upload_image(_write(tmp_path, b"")) is False
    assert bootloader.sent == []


def test_rerun_is_deterministic(tmp_path: Path, bootloader: FakeBootloader) -> None:
    data = _image(37)
    path = _write(tmp_path, data)
    bootloader.reported_checksum = checksum(data)
    orchestrator = _orchestrator(bootloader)

    assert orchestrator.upload_image(path) is True
    first = list(bootloader.sent)
    bootloader.sent.clear()
    assert orchestrator.upload_image(path) is True
    assert bootloader.sent == first


def test_erase_and_query(bootloader: FakeBootloader) -> None:
    bootloader.reported_checksum = 0xFFFFFFFF
    orchestrator = _orchestrator(bootloader)
    assert orchestrator.erase() is True
    assert orchestrator.query_checksum() == 0xFFFFFFFF


class ThreadedBootloader:
    """Replies from a separate thread with jitter and injects noise frames."""

    def __init__(self, image_checksum: int, seed: int) -> None:
        self.sent: list[Frame] = []
        self._checksum = image_checksum
        self._rng = random.Random(seed)
        self._inbox: queue.Queue[Frame | None] = queue.Queue()
        self._callback = None
        self._worker = threading.Thread(target=self._serve, daemon=True)

    def on_receive(self, callback) -> None:
        self._callback = callback

    def start_receiving(self) -> None:
        self._worker.start()

    def close(self) -> None:
        self._inbox.put(None)
        self._worker.join(timeout=5)

    def send(self, frame: Frame) -> None:
        self.sent.append(frame)
        self._inbox.put(frame)

    def _noise(self, target: int) -> Frame:
        if self._rng.random() < 0.5:
            return encode(target, self._rng.choice([0x00, 0x06, 0x13, 0x7F]), b"\xff\x00")
        return encode(target, CMD_ACK_STATUS, b"\xff")

    def _serve(self) -> None:
        while True:
            frame = self._inbox.get()
            if frame is None:
                return
            target, command, _ = decode(frame)
            for _ in range(self._rng.randint(0, 2)):
                self._callback(self._noise(target))
            time.sleep(self._rng.random() / 2000)
            if command == CMD_REQUEST_CHECKSUM:
                self._callback(encode(target, CMD_CHECKSUM_REPORT, self._checksum.to_bytes(4, "big")))
            else:
                self._callback(encode(target, CMD_ACK_STATUS, b"\xff\x00\x00"))


class RecordingState(ProtocolState):
    def __init__(self) -> None:
        super().__init__(verbose=False)
        self.max_pending = 0
        self._armed = 0
        self._count_lock = threading.Lock()

    def arm(self, kind: WaitKind) -> PendingWait:
        pending = super().arm(kind)
        with self._count_lock:
            self._armed += 1
            self.max_pending = max(self.max_pending, self._armed)
        return pending

    def wait_for(self, pending: PendingWait, timeout_s: float):
        try:
            return super().wait_for(pending, timeout_s)
        finally:
            with self._count_lock:
                self._armed -= 1


@pytest.mark.parametrize("seed", range(5))
def test_single_outstanding_wait_under_interleaved_events(tmp_path: Path, seed: int) -> None:
    data = _image(130, seed=seed)
    device = ThreadedBootloader(checksum(data), seed)
    state = RecordingState()
    orchestrator = _orchestrator(device, state=state)
    device.start_receiving()
    try:
        assert orchestrator.upload_image(_write(tmp_path, data)) is True
    finally:
        device.close()

    assert state.max_pending == 1
    assert state.pending is None
    write_payloads = [f.payload for f in device.sent if decode(f)[1] == CMD_WRITE_DATA]
    assert b"".join(write_payloads)[: len(data)] == data
