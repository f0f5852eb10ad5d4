"""Output sinks for human-readable progress lines."""

import logging
from typing import Protocol

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)

LEVEL_STYLES = {
    "info": "cyan",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


class Sink(Protocol):
    """Anything that can show a line to the user."""

    def info(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class ConsoleSink:
    """Writes colored lines to the terminal via rich."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(highlight=False)

    def _emit(self, level: str, message: str) -> None:
        self.console.print(f"[{LEVEL_STYLES[level]}]{escape(message)}[/]")

    def info(self, message: str) -> None:
        self._emit("info", message)

    def success(self, message: str) -> None:
        self._emit("success", message)

    def warning(self, message: str) -> None:
        self._emit("warning", message)

    def error(self, message: str) -> None:
        self._emit("error", message)


class ListSink:
    """Collects (level, message) pairs in memory."""

    def __init__(self):
        self.lines: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.lines.append(("info", message))

    def success(self, message: str) -> None:
        self.lines.append(("success", message))

    def warning(self, message: str) -> None:
        self.lines.append(("warning", message))

    def error(self, message: str) -> None:
        self.lines.append(("error", message))

    def messages(self, level: str | None = None) -> list[str]:
        return [msg for lvl, msg in self.lines if level is None or lvl == level]


class LoggingSink:
    """Forwards to another sink and mirrors every line to the log."""

    _LOG_LEVELS = {
        "info": logging.INFO,
        "success": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, inner: Sink, prefix: str = "[BATCH]"):
        self._inner = inner
        self._prefix = prefix

    def _emit(self, level: str, message: str) -> None:
        logger.log(self._LOG_LEVELS[level], "%s %s", self._prefix, message)
        getattr(self._inner, level)(message)

    def info(self, message: str) -> None:
        self._emit("info", message)

    def success(self, message: str) -> None:
        self._emit("success", message)

    def warning(self, message: str) -> None:
        self._emit("warning", message)

    def error(self, message: str) -> None:
        self._emit("error", message)
