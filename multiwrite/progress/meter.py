"""Multi-gauge progress renderer.

A Meter owns any number of Gauges and is the only thing that writes to the
terminal: every frame it moves the cursor back over the lines of the previous
frame, erases them and prints one line per live Gauge. Gauges never render
themselves on mutation; they only mark themselves dirty and wait for the
Meter's next frame. Log lines go through the Meter as well and stay above
the frame.
"""

import asyncio
import contextlib
import logging
import threading

from multiwrite.progress.terminal import TerminalStream

# Seconds between frames
RENDER_INTERVAL = 0.3


class Gauge:
    """A single labelled progress bar.

    Args:
        template: Line template containing ':bar' and ':message'.
        width: Number of cells in the bar.
        value: Starting value.
        total: Value at which the bar is full (0 is treated as 1).
        complete: Glyph for filled cells.
        incomplete: Glyph for empty cells.
        head: Glyph for the last filled cell; defaults to `complete`.
    """

    def __init__(
        self,
        template: str,
        *,
        width: int = 20,
        value: float = 0,
        total: float = 1,
        complete: str = "=",
        incomplete: str = "-",
        head: str | None = None,
    ) -> None:
        self.template = template
        self.width = width
        self.value = value
        self.total = total or 1
        self.complete = complete
        self.incomplete = incomplete
        self.head = head if head is not None else complete

        self.meter: Meter | None = None
        self.message = ""
        self.content = ""
        self.dirty = True

    @property
    def ratio(self) -> float:
        return min(max(self.value / self.total, 0.0), 1.0)

    def tick(self, delta: float, message: str | None = None) -> None:
        """Advance the bar and optionally replace the message.

        The value is not clamped here; a caller may overshoot `total`.
        """
        self.dirty = True
        self.value += delta
        self.message = message or self.message

    def render(self) -> str:
        """Return the gauge line, re-rendering only when dirty."""
        if not self.dirty:
            return self.content

        filled = round(self.width * self.ratio)
        complete = self.complete * filled
        incomplete = self.incomplete * max(self.width - filled, 0)

        if filled > 0:
            complete = complete[:-1] + self.head

        self.dirty = False
        self.content = self.template.replace(":bar", complete + incomplete, 1)
        self.content = self.content.replace(":message", self.message, 1)
        return self.content

    def remove(self) -> None:
        """Detach from the owning Meter. Safe to call more than once."""
        if self.meter is not None:
            self.meter.remove(self)


class Meter:
    """Renders all registered Gauges as one block of terminal lines.

    Args:
        stream: Terminal the frames are drawn on.
        interval: Seconds between frames once started.
    """

    def __init__(self, stream: TerminalStream, interval: float = RENDER_INTERVAL) -> None:
        self.stream = stream
        self.interval = interval
        # Insertion-ordered set
        self.gauges: dict[Gauge, None] = {}
        self.content = ""
        self.lines = 0
        self._task: asyncio.Task[None] | None = None
        # Log records may arrive from worker threads
        self._lock = threading.RLock()

    def create_gauge(self, template: str, **options: object) -> Gauge:
        """Create a Gauge and register it with this Meter."""
        gauge = Gauge(template, **options)  # type: ignore[arg-type]
        gauge.meter = self
        self.gauges[gauge] = None
        return gauge

    def remove(self, gauge: Gauge) -> None:
        """Stop rendering a gauge from the next frame on."""
        self.gauges.pop(gauge, None)

    def _erase(self) -> None:
        for _ in range(self.lines):
            self.stream.move_cursor(0, -1)
            self.stream.clear_line()
        self.lines = 0

    def render(self) -> None:
        """Draw one frame over the previous one."""
        with self._lock:
            self._erase()

            self.content = "".join(f"{gauge.render()}\n" for gauge in list(self.gauges))
            self.lines = self.content.count("\n")

            self.stream.cursor_to(0)
            self.stream.write(self.content)

    def print(self, text: str) -> None:
        """Write a line that stays on screen above the frame.

        The current frame is erased and the text takes its place; the next
        frame is drawn below it.
        """
        with self._lock:
            self._erase()
            self.stream.cursor_to(0)
            self.stream.write(f"{text}\n")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Draw the first frame and start the periodic redraw task.

        Must be called from within a running event loop.
        """
        if self.running:
            return
        self.render()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="meter-render"
        )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.render()

    async def stop(self) -> None:
        """Stop redrawing and leave the final frame on screen."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self.render()


class MeterHandler(logging.Handler):
    """Log handler that prints records above a Meter's frame."""

    def __init__(self, meter: Meter, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.meter = meter
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.meter.print(self.format(record))
        except Exception:
            self.handleError(record)


__all__ = ["Gauge", "Meter", "MeterHandler", "RENDER_INTERVAL"]
