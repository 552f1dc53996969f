"""Per-drive flashing session.

A Session holds everything about one drive being flashed: the drive
snapshot, its Gauge, the writer and an explicit lifecycle state.

    DETECTED -> UNMOUNTING -> WRITING -> VERIFYING -> FINISHED -> UNMOUNTED -> REMOVED
                     |            |           |            |
                     +------------+-----------+---> ERROR  +-> REMOVED
                                                      |
                                                      +-> REMOVED

Transitions outside the table are ignored and logged, so a late event (a
progress report after an error, say) cannot drive a finished session again.
"""

import logging

from multiwrite.errors import MultiwriteError
from multiwrite.flash.device import Drive
from multiwrite.flash.writer import ImageWriter
from multiwrite.progress.meter import Gauge
from multiwrite.types import ProgressState, ProgressType, SessionState
from multiwrite.units import prettybytes

logger = logging.getLogger(__name__)

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DETECTED: frozenset({SessionState.UNMOUNTING, SessionState.ERROR}),
    SessionState.UNMOUNTING: frozenset({SessionState.WRITING, SessionState.ERROR}),
    SessionState.WRITING: frozenset(
        {SessionState.VERIFYING, SessionState.FINISHED, SessionState.ERROR}
    ),
    SessionState.VERIFYING: frozenset({SessionState.FINISHED, SessionState.ERROR}),
    SessionState.FINISHED: frozenset({SessionState.UNMOUNTED, SessionState.REMOVED}),
    SessionState.UNMOUNTED: frozenset({SessionState.REMOVED}),
    SessionState.ERROR: frozenset({SessionState.REMOVED}),
    SessionState.REMOVED: frozenset(),
}

_MODE_LABELS = {
    ProgressType.WRITE: " WRITE",
    ProgressType.VERIFY: "VERIFY",
}


def format_progress(device: str, state: ProgressState) -> str:
    """Build the gauge message for a progress event.

    Example: ``' WRITE /dev/sdb | 42% | 12.3 MB/s | 3 min 12 s'``
    """
    eta = max(int(state.eta), 0)
    return (
        f"{_MODE_LABELS[state.type]} {device} | {state.percentage:.0f}% | "
        f"{prettybytes(state.speed)}/s | {eta // 60} min {eta % 60} s"
    )


class Session:
    """Live flashing state for one drive."""

    def __init__(self, drive: Drive, gauge: Gauge) -> None:
        self.drive = drive
        self.gauge = gauge
        self.writer: ImageWriter | None = None
        self.state = SessionState.DETECTED
        self.error: MultiwriteError | None = None

        gauge.tick(0, f"[DETECTED] {drive.device}")

    def __repr__(self) -> str:
        return f"<Session(device='{self.device}', state='{self.state.value}')>"

    @property
    def device(self) -> str:
        return self.drive.device

    @property
    def active(self) -> bool:
        """Whether the session still holds its drive."""
        return self.state not in (SessionState.ERROR, SessionState.REMOVED)

    def can_transition(self, state: SessionState) -> bool:
        return state in TRANSITIONS[self.state]

    def transition(self, state: SessionState) -> bool:
        """Move to a new state.

        Returns:
            True if the transition happened, False if it was not allowed.
        """
        if not self.can_transition(state):
            logger.debug(
                "%s: ignoring transition %s -> %s",
                self.device,
                self.state.value,
                state.value,
            )
            return False
        logger.debug("%s: %s -> %s", self.device, self.state.value, state.value)
        self.state = state
        return True

    def on_progress(self, progress: ProgressState) -> None:
        """Relay a progress event from the writer to the gauge."""
        if progress.type is ProgressType.VERIFY and self.state is SessionState.WRITING:
            self.transition(SessionState.VERIFYING)

        if self.state not in (SessionState.WRITING, SessionState.VERIFYING):
            logger.debug("%s: progress ignored in state %s", self.device, self.state.value)
            return

        self.gauge.tick(progress.delta, format_progress(self.device, progress))

    def fail(self, error: MultiwriteError) -> bool:
        """Enter ERROR and show the message on the gauge."""
        if not self.transition(SessionState.ERROR):
            return False
        self.error = error
        self.gauge.tick(0, f"[ERROR] {error.message}")
        return True

    def finish(self) -> bool:
        if not self.transition(SessionState.FINISHED):
            return False
        self.gauge.tick(0, "[FINISHED]")
        return True

    def mark_unmounted(self) -> bool:
        if not self.transition(SessionState.UNMOUNTED):
            return False
        self.gauge.tick(0, f"[UNMOUNTED] {self.device}")
        return True

    def remove(self) -> None:
        """Enter REMOVED and detach the gauge. Idempotent."""
        self.transition(SessionState.REMOVED)
        self.gauge.remove()


__all__ = ["Session", "TRANSITIONS", "format_progress"]
