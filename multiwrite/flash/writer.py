"""Writer module for flashing an image onto a drive.

This module handles the actual write operations:
- Stream the image onto the raw device with fsync
- Read the written bytes back and compare checksums
- Report incremental progress for both passes

Blocking reads and writes run in worker threads; progress callbacks are
always invoked on the event loop thread, and none fire after write()
returns or raises.
"""

import asyncio
import hashlib
import logging
import os
import time
import zlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, BinaryIO

from multiwrite.errors import WriteEngineError
from multiwrite.types import ImageSource, ProgressState, ProgressType

logger = logging.getLogger(__name__)

# Default block size for I/O operations (1 MiB)
DEFAULT_BLOCK_SIZE = 1024 * 1024

ProgressCallback = Callable[[ProgressState], None]


@dataclass
class WriteResult:
    """Result of a write operation.

    Attributes:
        bytes_written: Number of bytes written.
        source_checksums: Checksums of the image, by algorithm.
        device_checksums: Checksums read back from the device (if verified).
        verified: Whether the read-back pass ran and matched.
    """

    bytes_written: int
    source_checksums: dict[str, str]
    device_checksums: dict[str, str] | None
    verified: bool


class _Crc32:
    """hashlib-style wrapper around zlib.crc32."""

    def __init__(self) -> None:
        self._value = 0

    def update(self, data: bytes) -> None:
        self._value = zlib.crc32(data, self._value)

    def hexdigest(self) -> str:
        return f"{self._value & 0xFFFFFFFF:08x}"


class Checksums:
    """Several running checksums fed from the same stream."""

    def __init__(self, algorithms: Iterable[str]) -> None:
        self._hashers: dict[str, Any] = {}
        for algorithm in algorithms:
            if algorithm == "crc32":
                self._hashers[algorithm] = _Crc32()
            else:
                try:
                    self._hashers[algorithm] = hashlib.new(algorithm)
                except ValueError as e:
                    raise WriteEngineError(
                        f"Unsupported checksum algorithm: {algorithm}",
                        error_code="UNSUPPORTED_CHECKSUM",
                    ) from e

    def update(self, data: bytes) -> None:
        for hasher in self._hashers.values():
            hasher.update(data)

    def hexdigests(self) -> dict[str, str]:
        return {name: hasher.hexdigest() for name, hasher in self._hashers.items()}


class _ProgressTracker:
    """Turns byte deltas into ProgressState events for one pass."""

    def __init__(self, progress_type: ProgressType, total: int) -> None:
        self.type = progress_type
        self.total = total
        self.processed = 0
        self.started = time.monotonic()

    def advance(self, delta: int) -> ProgressState:
        self.processed += delta
        elapsed = max(time.monotonic() - self.started, 1e-6)
        speed = self.processed / elapsed
        remaining = max(self.total - self.processed, 0)
        eta = int(remaining / speed) if speed > 0 else 0
        percentage = (
            min(self.processed / self.total * 100, 100.0) if self.total > 0 else 100.0
        )
        return ProgressState(
            type=self.type,
            delta=delta,
            speed=speed,
            eta=eta,
            percentage=percentage,
        )


def _sync(dest: BinaryIO) -> None:
    dest.flush()
    os.fsync(dest.fileno())


class ImageWriter:
    """Writes one image onto one device and optionally verifies it.

    Args:
        image: Image to write.
        path: Raw device path to write to.
        verify: Read the data back and compare checksums after writing.
        checksum_algorithms: 'crc32' or any hashlib algorithm name.
        block_size: Block size for I/O.
    """

    def __init__(
        self,
        image: ImageSource,
        path: str,
        *,
        verify: bool = True,
        checksum_algorithms: Iterable[str] = ("crc32",),
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self.image = image
        self.path = path
        self.verify = verify
        self.checksum_algorithms = tuple(checksum_algorithms)
        self.block_size = block_size

    async def write(self, on_progress: ProgressCallback) -> WriteResult:
        """Write the image, then verify it if requested.

        Args:
            on_progress: Called with a ProgressState after every block.

        Returns:
            WriteResult with checksums of both passes.

        Raises:
            WriteEngineError: I/O failure, permission problem or checksum
                mismatch.
        """
        logger.info(
            "Writing image %s (%d bytes) to %s",
            self.image.path.name,
            self.image.final.value,
            self.path,
        )

        source = Checksums(self.checksum_algorithms)
        tracker = _ProgressTracker(ProgressType.WRITE, self.image.final.value)
        bytes_written = 0

        try:
            with open(self.image.path, "rb") as src, open(self.path, "r+b") as dst:
                while True:
                    chunk = await asyncio.to_thread(src.read, self.block_size)
                    if not chunk:
                        break
                    await asyncio.to_thread(dst.write, chunk)
                    source.update(chunk)
                    bytes_written += len(chunk)
                    on_progress(tracker.advance(len(chunk)))

                await asyncio.to_thread(_sync, dst)
        except PermissionError as e:
            logger.error("Permission denied writing to device: %s", e)
            raise WriteEngineError(
                f"Permission denied writing to device: {self.path}",
                error_code="WRITE_PERMISSION_DENIED",
            ) from e
        except OSError as e:
            logger.error("I/O error writing to device: %s", e)
            raise WriteEngineError(f"Error writing to {self.path}: {e}") from e

        logger.info("Wrote %d bytes to %s", bytes_written, self.path)
        source_checksums = source.hexdigests()

        if not self.verify:
            return WriteResult(
                bytes_written=bytes_written,
                source_checksums=source_checksums,
                device_checksums=None,
                verified=False,
            )

        device_checksums = await self._read_back(bytes_written, on_progress)
        if device_checksums != source_checksums:
            logger.error(
                "Checksum verification FAILED on %s: expected=%s, got=%s",
                self.path,
                source_checksums,
                device_checksums,
            )
            raise WriteEngineError(
                f"Checksum verification failed for {self.path}. "
                f"Expected {source_checksums}, got {device_checksums}. "
                "The card may be defective.",
                error_code="CHECKSUM_MISMATCH",
            )

        logger.info("Checksum verification passed for %s", self.path)
        return WriteResult(
            bytes_written=bytes_written,
            source_checksums=source_checksums,
            device_checksums=device_checksums,
            verified=True,
        )

    async def _read_back(
        self, num_bytes: int, on_progress: ProgressCallback
    ) -> dict[str, str]:
        """Checksum the first num_bytes of the device."""
        device = Checksums(self.checksum_algorithms)
        tracker = _ProgressTracker(ProgressType.VERIFY, num_bytes)
        bytes_read = 0

        try:
            with open(self.path, "rb") as f:
                while bytes_read < num_bytes:
                    read_size = min(self.block_size, num_bytes - bytes_read)
                    chunk = await asyncio.to_thread(f.read, read_size)
                    if not chunk:
                        break
                    device.update(chunk)
                    bytes_read += len(chunk)
                    on_progress(tracker.advance(len(chunk)))
        except OSError as e:
            logger.error("I/O error verifying device: %s", e)
            raise WriteEngineError(
                f"Error verifying {self.path}: {e}", error_code="VERIFY_IO_ERROR"
            ) from e

        return device.hexdigests()


__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "Checksums",
    "ImageWriter",
    "ProgressCallback",
    "WriteResult",
]
