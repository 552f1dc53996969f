"""Terminal progress rendering for concurrent flashing sessions."""

from multiwrite.progress.meter import RENDER_INTERVAL, Gauge, Meter, MeterHandler
from multiwrite.progress.terminal import ConsoleStream, TerminalStream

__all__ = [
    "ConsoleStream",
    "Gauge",
    "Meter",
    "MeterHandler",
    "RENDER_INTERVAL",
    "TerminalStream",
]
