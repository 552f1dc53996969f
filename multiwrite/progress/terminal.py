"""Terminal primitives the Meter draws with."""

from typing import Protocol

from rich.console import Console
from rich.control import Control
from rich.segment import ControlType

# Erase-in-line mode 2 clears the whole line
_ERASE_WHOLE_LINE = 2


class TerminalStream(Protocol):
    """Minimal cursor-addressable output stream."""

    def clear_line(self) -> None: ...

    def move_cursor(self, dx: int, dy: int) -> None: ...

    def cursor_to(self, x: int) -> None: ...

    def write(self, text: str) -> None: ...


class ConsoleStream:
    """TerminalStream on top of a Rich console.

    Cursor control is dropped when the console is not a terminal, so piping
    the output yields plain successive frames.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def clear_line(self) -> None:
        self.console.control(Control((ControlType.ERASE_IN_LINE, _ERASE_WHOLE_LINE)))

    def move_cursor(self, dx: int, dy: int) -> None:
        self.console.control(Control.move(dx, dy))

    def cursor_to(self, x: int) -> None:
        self.console.control(Control.move_to_column(x))

    def write(self, text: str) -> None:
        self.console.out(text, end="", highlight=False)


__all__ = ["ConsoleStream", "TerminalStream"]
