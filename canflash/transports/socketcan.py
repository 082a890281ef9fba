"""CAN transport implementation using python-can."""

from __future__ import annotations

import logging
from typing import Any

import can

from canflash.core.errors import TransportConnectError, TransportSendError
from canflash.core.model import Frame
from canflash.transports.base import FrameCallback

LOGGER = logging.getLogger(__name__)


class SocketCANTransport:
    def __init__(
        self,
        channel: str,
        *,
        interface: str = "socketcan",
        bitrate: int | None = None,
        send_timeout_s: float = 1.0,
    ) -> None:
        self.channel = channel
        self.interface = interface
        self.bitrate = bitrate
        self.send_timeout_s = send_timeout_s
        self._bus: can.BusABC | None = None
        self._notifier: can.Notifier | None = None
        self._callback: FrameCallback | None = None

    def _open(self) -> can.BusABC:
        if self._bus is not None:
            return self._bus
        kwargs: dict[str, Any] = {
            "interface": self.interface,
            "channel": self.channel,
            "receive_own_messages": False,
        }
        if self.bitrate is not None:
            kwargs["bitrate"] = self.bitrate
        try:
            self._bus = can.Bus(**kwargs)
        except (can.CanError, OSError, ValueError) as exc:
            raise TransportConnectError(
                f"Could not open CAN interface {self.interface}:{self.channel}: {exc}"
            ) from exc
        return self._bus

    def on_receive(self, callback: FrameCallback) -> None:
        self._callback = callback

    def start_receiving(self) -> None:
        bus = self._open()
        if self._notifier is None:
            self._notifier = can.Notifier(bus, [self._on_message])

    def _on_message(self, message: can.Message) -> None:
        if (
            message.is_extended_id
            or message.is_fd
            or message.is_error_frame
            or message.is_remote_frame
        ):
            return
        callback = self._callback
        if callback is None:
            return
        callback(Frame(address=message.arbitration_id, payload=bytes(message.data)))

    def send(self, frame: Frame) -> None:
        try:
            message = can.Message(
                arbitration_id=frame.address,
                is_extended_id=False,
                data=frame.payload,
                check=True,
            )
        except ValueError as exc:
            raise TransportSendError(
                f"Frame 0x{frame.address:X} does not fit a standard CAN identifier: {exc}"
            ) from exc
        bus = self._open()
        try:
            bus.send(message, timeout=self.send_timeout_s)
        except (can.CanError, OSError) as exc:
            raise TransportSendError(f"CAN send failed: {exc}") from exc

    def close(self) -> None:
        if self._notifier is not None:
            self._notifier.stop()
            self._notifier = None
        if self._bus is not None:
            try:
                self._bus.shutdown()
            except (can.CanError, OSError) as exc:
                LOGGER.warning("CAN shutdown failed: %s", exc)
            self._bus = None
