"""Service layer used by the CLI, the interactive shell, and the public API."""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType

from canflash.core.codec import MAX_TARGET_ID
from canflash.core.dispatcher import EventDispatcher
from canflash.core.errors import InvalidInputError, TransportError
from canflash.core.model import DeviceInfo, Profile, UploadReport
from canflash.core.profile_loader import load_profiles, select_profile
from canflash.core.sync import CommandSynchronizer, ProtocolState
from canflash.core.uploader import ProgressCallback, UploadOrchestrator
from canflash.transports.base import Transport
from canflash.transports.socketcan import SocketCANTransport

LOGGER = logging.getLogger(__name__)


def parse_target_id(text: str) -> int:
    """Parse `0x1F`-style hex or plain decimal into a validated target identifier."""
    value = text.strip()
    if not value:
        raise InvalidInputError("Target identifier must not be empty")
    try:
        target_id = int(value, 16) if value.lower().startswith("0x") else int(value, 10)
    except ValueError as exc:
        raise InvalidInputError(f"Invalid node ID format: {value}") from exc
    return _validate_target_id(target_id)


def _validate_target_id(target_id: int) -> int:
    if target_id < 0 or target_id > MAX_TARGET_ID:
        raise InvalidInputError(f"Node ID must be between 0 and 0x{MAX_TARGET_ID:02X}")
    return target_id


class BootloaderService:
    def __init__(
        self,
        profile_id: str | None = None,
        *,
        transport: Transport | None = None,
        channel: str | None = None,
        interface: str | None = None,
        target_id: int | None = None,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self.profile: Profile = select_profile(self.profiles, profile_id)

        self.transport: Transport = transport or SocketCANTransport(
            channel or self.profile.bus.channel,
            interface=interface or self.profile.bus.interface,
            bitrate=self.profile.bus.bitrate,
        )
        self.state = ProtocolState(
            target_id=self.profile.target_id if target_id is None else _validate_target_id(target_id),
            verbose=self.profile.verbose,
        )
        self.dispatcher = EventDispatcher(self.state)
        self.synchronizer = CommandSynchronizer(
            self.transport,
            self.state,
            ack_timeout_s=self.profile.timeouts.ack_s,
            checksum_timeout_s=self.profile.timeouts.checksum_s,
        )
        self.orchestrator = UploadOrchestrator(self.synchronizer)
        self._opened = False

    def __enter__(self) -> BootloaderService:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def list_profiles(self) -> list[Profile]:
        return sorted(self.profiles.values(), key=lambda p: p.id)

    def open(self) -> None:
        if self._opened:
            return
        self.transport.on_receive(self.dispatcher.handle_frame)
        self.transport.start_receiving()
        self._opened = True
        LOGGER.info("CAN interface ready")

    def close(self) -> None:
        if not self._opened:
            return
        self.transport.close()
        self._opened = False

    @property
    def target_id(self) -> int:
        return self.state.target_id

    def set_target_identifier(self, target_id: int) -> None:
        self.state.target_id = _validate_target_id(target_id)
        LOGGER.info("Node ID set to: 0x%02X", self.state.target_id)

    def set_verbose_logging(self, enabled: bool) -> None:
        self.state.verbose = enabled

    @property
    def last_report(self) -> UploadReport | None:
        return self.orchestrator.last_report

    def _ensure_open(self) -> bool:
        try:
            self.open()
        except TransportError as exc:
            LOGGER.error("%s", exc)
            return False
        return True

    def erase(self) -> bool:
        if not self._ensure_open():
            return False
        return self.orchestrator.erase()

    def upload_image(self, path: str | Path, *, on_progress: ProgressCallback | None = None) -> bool:
        if not self._ensure_open():
            return False
        return self.orchestrator.upload_image(path, on_progress=on_progress)

    def query_checksum(self) -> int | None:
        if not self._ensure_open():
            return None
        return self.orchestrator.query_checksum()

    def device_info(self) -> DeviceInfo:
        LOGGER.info("Querying device status...")
        return DeviceInfo(
            target_id=self.state.target_id,
            flash=self.profile.flash,
            checksum=self.query_checksum(),
        )
