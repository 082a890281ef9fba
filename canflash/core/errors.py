"""Domain-specific errors for canflash."""


class CanflashError(Exception):
    """Base error for canflash."""


class ProfileValidationError(CanflashError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(CanflashError):
    """Raised when loading profile sources fails."""


class ProfileSelectionError(CanflashError):
    """Raised when a requested profile cannot be resolved."""


class InvalidInputError(CanflashError):
    """Raised for bad user input (target identifier, firmware file) before any bus traffic."""


class FrameError(CanflashError):
    """Base frame codec error."""


class InvalidCommandError(FrameError):
    """Raised when a command identifier does not fit the address field."""


class InvalidFrameError(FrameError):
    """Raised when a target identifier or payload cannot be encoded."""


class TransportError(CanflashError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when the bus cannot be opened."""


class TransportSendError(TransportError):
    """Raised when a frame cannot be put on the bus."""


class ProtocolError(CanflashError):
    """Base bootloader protocol error."""


class ProtocolTimeoutError(ProtocolError):
    """Raised when no matching response arrives before the deadline."""


class DeviceRejectedError(ProtocolError):
    """Raised when the device answers with a failure status or a mismatching checksum."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.expected = expected
        self.actual = actual


class CommandInFlightError(ProtocolError):
    """Raised when a second wait is armed while another command is outstanding."""
