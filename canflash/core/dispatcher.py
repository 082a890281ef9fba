"""Turns inbound bus frames into protocol events for the pending wait."""

from __future__ import annotations

import logging

from canflash.core.codec import CMD_ACK_STATUS, CMD_CHECKSUM_REPORT, STATUS_SUCCESS, decode
from canflash.core.model import Acknowledgement, ChecksumReport, Event, Frame, Unrecognized
from canflash.core.sync import ProtocolState

LOGGER = logging.getLogger(__name__)


def classify(frame: Frame) -> Event:
    target, command, payload = decode(frame)
    if command == CMD_CHECKSUM_REPORT and len(payload) >= 4:
        return ChecksumReport(value=int.from_bytes(payload[:4], "big"))
    if command == CMD_ACK_STATUS and len(payload) >= 1:
        status = payload[0]
        return Acknowledgement(success=status == STATUS_SUCCESS, raw_status=status)
    return Unrecognized(target=target, command=command, payload=payload)


class EventDispatcher:
    """Sole consumer of inbound frames.

    `handle_frame` runs on the transport's receive thread; it only updates the
    shared state and signals, so it never blocks on the command flow.
    """

    def __init__(self, state: ProtocolState) -> None:
        self._state = state

    def handle_frame(self, frame: Frame) -> Acknowledgement | ChecksumReport | None:
        event = classify(frame)
        verbose = self._state.verbose

        if isinstance(event, Unrecognized):
            if verbose:
                LOGGER.info(
                    "Response from node 0x%X, cmd=0x%X, DLC=%d",
                    event.target,
                    event.command,
                    len(event.payload),
                )
            return None

        if verbose:
            if isinstance(event, ChecksumReport):
                LOGGER.info("Checksum report: 0x%08X", event.value)
            elif event.success:
                LOGGER.info("Operation confirmed")
            else:
                LOGGER.info("Operation failed, status: 0x%02X", event.raw_status)

        if not self._state.deliver(event):
            LOGGER.warning("Dropped %s: no matching command outstanding", event)
            return None
        return event
