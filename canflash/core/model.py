"""Core data models used across codec, dispatcher, uploader, and CLI."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Union

from canflash.core.errors import CanflashError


@dataclass(frozen=True)
class Frame:
    address: int
    payload: bytes = b""


@dataclass(frozen=True)
class Acknowledgement:
    success: bool
    raw_status: int


@dataclass(frozen=True)
class ChecksumReport:
    value: int


@dataclass(frozen=True)
class Unrecognized:
    target: int
    command: int
    payload: bytes


Event = Union[Acknowledgement, ChecksumReport, Unrecognized]


class WaitKind(enum.Enum):
    CONFIRMATION = "confirmation"
    CHECKSUM = "checksum"


@dataclass
class PendingWait:
    """The single outstanding wait; `result` is filled by the receive path."""

    kind: WaitKind
    result: Acknowledgement | ChecksumReport | None = None


class UploadStage(enum.Enum):
    IDLE = "idle"
    ERASING = "erasing"
    BEGIN_WRITE = "begin-write"
    WRITING = "writing"
    END_WRITE = "end-write"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class UploadReport:
    path: str
    stage: UploadStage = UploadStage.IDLE
    image_size: int = 0
    words_total: int = 0
    words_written: int = 0
    words_failed: int = 0
    local_checksum: int | None = None
    remote_checksum: int | None = None
    failed_at: UploadStage | None = None
    error: CanflashError | None = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.stage is UploadStage.VERIFIED


@dataclass(frozen=True)
class BusSpec:
    channel: str
    interface: str = "socketcan"
    bitrate: int | None = None


@dataclass(frozen=True)
class Timeouts:
    ack_s: float = 10.0
    checksum_s: float = 1.0


@dataclass(frozen=True)
class FlashLayout:
    app_start: int
    app_end: int
    flash_size_kb: int
    ram_size_kb: int


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    bus: BusSpec
    target_id: int = 0x01
    timeouts: Timeouts = field(default_factory=Timeouts)
    flash: FlashLayout | None = None
    verbose: bool = True


@dataclass(frozen=True)
class DeviceInfo:
    target_id: int
    flash: FlashLayout | None
    checksum: int | None

    @property
    def application_valid(self) -> bool | None:
        if self.checksum is None:
            return None
        return self.checksum != 0xFFFFFFFF
