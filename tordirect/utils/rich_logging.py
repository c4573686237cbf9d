"""Rich logging integration for tordirect.

Provides the console handler used by :func:`setup_logging` and a file
formatter that strips Rich markup.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

_MARKUP_PATTERN = re.compile(r"\[/?[^\]]+\]")


class CorrelationRichHandler(RichHandler):
    """RichHandler that prefixes the calling function and tags correlation ids.

    Function names are colored pink (#ff69b4). Content ids (40 hex chars)
    are colored bright cyan so a single transfer can be followed in the log.
    """

    CONTENT_ID_PATTERN = re.compile(r"\b[0-9a-f]{40}\b")

    def __init__(
        self,
        *args: Any,
        console: Console | None = None,
        show_colors: bool = True,
        **kwargs: Any,
    ) -> None:
        """Initialize the handler.

        Args:
            *args: Positional arguments for RichHandler
            console: Optional Rich Console instance
            show_colors: Whether to colorize function names and content ids
            **kwargs: Keyword arguments for RichHandler

        """
        if console is None:
            console = Console(file=sys.stdout, markup=True, color_system="auto")
        self.show_colors = show_colors
        kwargs.setdefault("markup", True)
        super().__init__(*args, console=console, **kwargs)

    def _colorize(self, message: str) -> str:
        return self.CONTENT_ID_PATTERN.sub(
            lambda m: f"[bright_cyan]{m.group(0)}[/bright_cyan]", message
        )

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a record with function name and content id coloring."""
        try:
            if not hasattr(record, "correlation_id"):
                from tordirect.utils.logging_config import correlation_id

                record.correlation_id = correlation_id.get() or "no-correlation-id"

            if self.show_colors:
                # Other handlers share the record; decorate a copy.
                record = logging.makeLogRecord(record.__dict__)
                message = self._colorize(escape(record.getMessage()))
                func_name = getattr(record, "funcName", None)
                if func_name and func_name != "<module>":
                    message = f"[#ff69b4]{func_name}[/#ff69b4] {message}"
                record.msg = message
                record.args = ()

            super().emit(record)
        except Exception:
            self.handleError(record)

    def handleError(self, record: logging.LogRecord) -> None:
        """Write the failed record straight to stderr."""
        try:
            sys.stderr.write(
                f"Logging error: {record.levelname} {record.name}: {record.msg}\n"
            )
            sys.stderr.flush()
        except OSError:
            pass


def strip_rich_markup(text: str) -> str:
    """Strip Rich markup from text for file logging.

    Args:
        text: Text with Rich markup

    Returns:
        Text without Rich markup

    """
    return _MARKUP_PATTERN.sub("", text)


class FileFormatter(logging.Formatter):
    """Formatter for file output that strips Rich markup."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record, stripping Rich markup for file output."""
        return strip_rich_markup(super().format(record))


def create_rich_handler(
    console: Console | None = None,
    level: int | str = logging.INFO,
    show_path: bool = False,
    rich_tracebacks: bool = True,
    show_colors: bool = True,
) -> logging.Handler:
    """Create a RichHandler with correlation id support.

    Args:
        console: Optional Rich Console instance
        level: Log level
        show_path: Whether to show file paths in log output
        rich_tracebacks: Whether to use rich tracebacks
        show_colors: Whether to colorize function names and content ids

    Returns:
        Configured RichHandler instance

    """
    if console is None:
        console = Console(
            file=sys.stdout,
            force_interactive=False,
            legacy_windows=False,
            markup=True,
        )

    return CorrelationRichHandler(
        console=console,
        level=level,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
        show_colors=show_colors,
    )
