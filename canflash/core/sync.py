"""Bridges the asynchronous receive path into blocking, deadline-bound command calls."""

from __future__ import annotations

import logging
import threading

from canflash.core.codec import CMD_REQUEST_CHECKSUM, describe_command, encode
from canflash.core.errors import (
    CommandInFlightError,
    DeviceRejectedError,
    ProtocolError,
    ProtocolTimeoutError,
    TransportError,
)
from canflash.core.model import Acknowledgement, ChecksumReport, PendingWait, WaitKind
from canflash.transports.base import Transport

DEFAULT_TARGET_ID = 0x01
DEFAULT_ACK_TIMEOUT_S = 10.0
DEFAULT_CHECKSUM_TIMEOUT_S = 1.0
LOGGER = logging.getLogger(__name__)


class ProtocolState:
    """State shared by the command flow and the receive flow.

    Only the pending wait is guarded by the lock. `target_id` and `verbose` are
    plain attributes: they are changed between commands by the interactive flow
    and the receive path only reads them for log text.
    """

    def __init__(self, *, target_id: int = DEFAULT_TARGET_ID, verbose: bool = True) -> None:
        self.target_id = target_id
        self.verbose = verbose
        self._condition = threading.Condition()
        self._pending: PendingWait | None = None

    @property
    def pending(self) -> PendingWait | None:
        with self._condition:
            return self._pending

    def arm(self, kind: WaitKind) -> PendingWait:
        with self._condition:
            if self._pending is not None:
                raise CommandInFlightError(
                    f"Cannot wait for {kind.value}: a {self._pending.kind.value} wait is still pending"
                )
            self._pending = PendingWait(kind=kind)
            return self._pending

    def disarm(self, pending: PendingWait) -> None:
        with self._condition:
            if self._pending is pending:
                self._pending = None

    def deliver(self, event: Acknowledgement | ChecksumReport) -> bool:
        """Hand an event to the pending wait if its kind matches. Never blocks on I/O."""
        kind = WaitKind.CHECKSUM if isinstance(event, ChecksumReport) else WaitKind.CONFIRMATION
        with self._condition:
            pending = self._pending
            if pending is None or pending.kind is not kind:
                return False
            pending.result = event
            self._pending = None
            self._condition.notify()
            return True

    def wait_for(
        self, pending: PendingWait, timeout_s: float
    ) -> Acknowledgement | ChecksumReport | None:
        with self._condition:
            delivered = self._condition.wait_for(lambda: pending.result is not None, timeout=timeout_s)
            if not delivered and self._pending is pending:
                self._pending = None
            return pending.result


class CommandSynchronizer:
    """Sends one frame at a time and blocks until the device answers or the deadline passes.

    Callers must serialize command issuance; arming a second wait while one is
    outstanding raises `CommandInFlightError`.
    """

    def __init__(
        self,
        transport: Transport,
        state: ProtocolState,
        *,
        ack_timeout_s: float = DEFAULT_ACK_TIMEOUT_S,
        checksum_timeout_s: float = DEFAULT_CHECKSUM_TIMEOUT_S,
    ) -> None:
        self._transport = transport
        self._state = state
        self.ack_timeout_s = ack_timeout_s
        self.checksum_timeout_s = checksum_timeout_s

    @property
    def state(self) -> ProtocolState:
        return self._state

    def _exchange(
        self,
        kind: WaitKind,
        command: int,
        payload: bytes,
        timeout_s: float,
        quiet: bool,
    ) -> Acknowledgement | ChecksumReport | None:
        target = self._state.target_id
        frame = encode(target, command, payload)
        pending = self._state.arm(kind)
        try:
            self._transport.send(frame)
            if self._state.verbose and not quiet:
                if payload:
                    LOGGER.info(
                        "Sent: %s to node 0x%02X, data length: %d",
                        describe_command(command),
                        target,
                        len(payload),
                    )
                else:
                    LOGGER.info("Sent: %s to node 0x%02X", describe_command(command), target)
            else:
                LOGGER.debug("Sent 0x%03X [%s]", frame.address, payload.hex())

            return self._state.wait_for(pending, timeout_s)
        finally:
            self._state.disarm(pending)

    def confirm(
        self,
        command: int,
        payload: bytes = b"",
        *,
        timeout_s: float | None = None,
        quiet: bool = False,
    ) -> None:
        """Send `command` and require a successful acknowledgement.

        Raises `ProtocolTimeoutError` when nothing arrives in time and
        `DeviceRejectedError` when the device reports a failure status.
        """
        timeout = self.ack_timeout_s if timeout_s is None else timeout_s
        result = self._exchange(WaitKind.CONFIRMATION, command, payload, timeout, quiet)
        if result is None:
            raise ProtocolTimeoutError(
                f"Timeout waiting for confirmation of '{describe_command(command)}' after {timeout:g}s"
            )
        if not isinstance(result, Acknowledgement):
            raise ProtocolError(f"Expected an acknowledgement, got {result}")
        if not result.success:
            raise DeviceRejectedError(
                f"'{describe_command(command)}' failed, status: 0x{result.raw_status:02X}",
                status=result.raw_status,
            )

    def fetch_checksum(self, *, timeout_s: float | None = None) -> int:
        timeout = self.checksum_timeout_s if timeout_s is None else timeout_s
        result = self._exchange(WaitKind.CHECKSUM, CMD_REQUEST_CHECKSUM, b"", timeout, False)
        if result is None:
            raise ProtocolTimeoutError(f"Timeout waiting for checksum after {timeout:g}s")
        if not isinstance(result, ChecksumReport):
            raise ProtocolError(f"Expected a checksum report, got {result}")
        if self._state.verbose:
            LOGGER.info("Checksum received: 0x%08X", result.value)
        return result.value

    def await_acknowledgement(
        self,
        command: int,
        payload: bytes = b"",
        *,
        timeout_s: float | None = None,
        quiet: bool = False,
    ) -> bool:
        try:
            self.confirm(command, payload, timeout_s=timeout_s, quiet=quiet)
        except (ProtocolTimeoutError, DeviceRejectedError, TransportError) as exc:
            LOGGER.error("%s", exc)
            return False
        return True

    def await_checksum(self, *, timeout_s: float | None = None) -> int | None:
        try:
            return self.fetch_checksum(timeout_s=timeout_s)
        except (ProtocolTimeoutError, TransportError) as exc:
            LOGGER.error("%s", exc)
            return None
