"""Shared type definitions for multiwrite.

This module contains dataclasses and enums shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class SessionState(str, Enum):
    """Lifecycle state of a flashing session."""

    DETECTED = "detected"
    UNMOUNTING = "unmounting"
    WRITING = "writing"
    VERIFYING = "verifying"
    FINISHED = "finished"
    UNMOUNTED = "unmounted"
    ERROR = "error"
    REMOVED = "removed"


class ProgressType(str, Enum):
    """Phase a progress event belongs to."""

    WRITE = "write"
    VERIFY = "verify"


@dataclass(frozen=True)
class ProgressState:
    """One progress event from the write engine.

    Attributes:
        type: Phase the event belongs to.
        delta: Bytes processed since the previous event.
        speed: Throughput in bytes per second.
        eta: Estimated seconds remaining in this phase.
        percentage: Completion of this phase, 0-100.
    """

    type: ProgressType
    delta: int
    speed: float
    eta: int
    percentage: float


@dataclass(frozen=True)
class SizeEstimate:
    """Size used as the write engine's completion denominator."""

    value: int
    estimation: bool = False


@dataclass(frozen=True)
class ImageSource:
    """A local image file ready to be flashed.

    Attributes:
        path: Location of the image on disk.
        original: Size of the image file in bytes.
        final: Number of bytes that end up on the device.
    """

    path: Path
    original: int
    final: SizeEstimate

    @classmethod
    def from_file(cls, path: Path) -> "ImageSource":
        """Build an ImageSource from the on-disk size of a file."""
        size = path.stat().st_size
        return cls(path=path, original=size, final=SizeEstimate(value=size))


__all__ = [
    "ImageSource",
    "ProgressState",
    "ProgressType",
    "SessionState",
    "SizeEstimate",
]
