"""Stable public API for building tooling on top of canflash.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from pathlib import Path

from canflash.core.checksum import checksum
from canflash.core.errors import (
    CanflashError,
    CommandInFlightError,
    DeviceRejectedError,
    FrameError,
    InvalidCommandError,
    InvalidFrameError,
    InvalidInputError,
    ProfileLoadError,
    ProfileSelectionError,
    ProfileValidationError,
    ProtocolError,
    ProtocolTimeoutError,
    TransportConnectError,
    TransportError,
    TransportSendError,
)
from canflash.core.model import (
    DeviceInfo,
    FlashLayout,
    Frame,
    Profile,
    UploadReport,
    UploadStage,
)
from canflash.core.service import BootloaderService
from canflash.core.uploader import ProgressCallback
from canflash.transports.base import Transport
from canflash.transports.socketcan import SocketCANTransport

__all__ = [
    "CanflashError",
    "CommandInFlightError",
    "DeviceRejectedError",
    "FrameError",
    "InvalidCommandError",
    "InvalidFrameError",
    "InvalidInputError",
    "ProfileLoadError",
    "ProfileSelectionError",
    "ProfileValidationError",
    "ProtocolError",
    "ProtocolTimeoutError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "DeviceInfo",
    "FlashLayout",
    "Frame",
    "Profile",
    "UploadReport",
    "UploadStage",
    "SocketCANTransport",
    "Transport",
    "checksum",
    "Client",
]


class Client:
    """Public client for driving a CAN bootloader.

    A `Client` wraps profile loading, the bus transport, and the upload
    sequence behind a stable API intended for third-party tools
    (GUI/TUI/services/scripts). Use it as a context manager so the bus is
    released on exit.
    """

    def __init__(
        self,
        profile_id: str | None = None,
        *,
        transport: Transport | None = None,
        channel: str | None = None,
        interface: str | None = None,
        target_id: int | None = None,
    ) -> None:
        self._service = BootloaderService(
            profile_id,
            transport=transport,
            channel=channel,
            interface=interface,
            target_id=target_id,
        )

    def __enter__(self) -> Client:
        self._service.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._service.close()

    def close(self) -> None:
        self._service.close()

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def profile(self) -> Profile:
        return self._service.profile

    @property
    def target_id(self) -> int:
        return self._service.target_id

    @property
    def last_report(self) -> UploadReport | None:
        return self._service.last_report

    def list_profiles(self) -> list[Profile]:
        return self._service.list_profiles()

    def set_target_identifier(self, target_id: int) -> None:
        self._service.set_target_identifier(target_id)

    def set_verbose_logging(self, enabled: bool) -> None:
        self._service.set_verbose_logging(enabled)

    def erase(self) -> bool:
        return self._service.erase()

    def upload_image(
        self,
        path: str | Path,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> bool:
        return self._service.upload_image(path, on_progress=on_progress)

    def query_checksum(self) -> int | None:
        return self._service.query_checksum()

    def device_info(self) -> DeviceInfo:
        return self._service.device_info()
