"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from canflash.core.model import Frame

FrameCallback = Callable[[Frame], None]


class Transport(Protocol):
    def send(self, frame: Frame) -> None:
        """Put a frame on the bus. Raises `TransportError` on failure."""

    def on_receive(self, callback: FrameCallback) -> None:
        """Register the callback invoked for every inbound frame."""

    def start_receiving(self) -> None:
        """Open the bus if needed and begin delivering inbound frames."""

    def close(self) -> None:
        """Stop delivery and release the bus."""
