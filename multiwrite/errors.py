"""Error taxonomy and the process-wide error channel.

Only FetchError is fatal. Every other error is scoped to one drive or one
enumeration poll: it is emitted through the ErrorSink and the affected drive
becomes eligible again on a later poll.
"""

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class MultiwriteError(Exception):
    """Base exception for multiwrite errors."""

    def __init__(
        self, message: str, error_code: str, device: str | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.device = device


class FetchError(MultiwriteError):
    """The source image could not be downloaded."""

    def __init__(self, message: str, error_code: str = "FETCH_ERROR") -> None:
        super().__init__(message, error_code=error_code)


class EnumerationError(MultiwriteError):
    """Listing the attached drives failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="ENUMERATION_ERROR")


class UnmountError(MultiwriteError):
    """A drive could not be unmounted."""

    def __init__(self, device: str, message: str) -> None:
        super().__init__(message, error_code="UNMOUNT_ERROR", device=device)


class WriteEngineError(MultiwriteError):
    """Writing or verifying the image failed."""

    def __init__(
        self, message: str, error_code: str = "WRITE_IO_ERROR", device: str | None = None
    ) -> None:
        super().__init__(message, error_code=error_code, device=device)


class PartitionTableError(MultiwriteError):
    """A boot sector could not be decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="INVALID_BOOT_SECTOR")


ErrorHandler = Callable[[MultiwriteError], None]


class ErrorSink:
    """Single channel every non-fatal error is reported through.

    Errors are logged once here; subscribers get the error object itself.
    """

    def __init__(self) -> None:
        self._handlers: list[ErrorHandler] = []

    def subscribe(self, handler: ErrorHandler) -> None:
        """Register a handler called for every emitted error."""
        self._handlers.append(handler)

    def emit(self, error: MultiwriteError) -> None:
        """Log an error and pass it to all subscribers."""
        if error.device:
            logger.error("[%s] %s: %s", error.error_code, error.device, error.message)
        else:
            logger.error("[%s] %s", error.error_code, error.message)
        for handler in self._handlers:
            handler(error)


__all__ = [
    "EnumerationError",
    "ErrorHandler",
    "ErrorSink",
    "FetchError",
    "MultiwriteError",
    "PartitionTableError",
    "UnmountError",
    "WriteEngineError",
]
