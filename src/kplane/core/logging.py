"""Logging configuration for kplane using stdlib logging with rich."""

import logging
from collections.abc import MutableMapping
from typing import Any, Protocol, runtime_checkable

from rich.console import Console
from rich.logging import RichHandler


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that formats kwargs as structured context data.

    Example:
        logger = get_logger(__name__)
        logger.info("Created cluster", provider="kind", cluster="kplane-management")
        # Output: Created cluster [cluster=kplane-management provider=kind]
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        """Process log message and kwargs to extract context data.

        Args:
            msg: Log message
            kwargs: Keyword arguments including context data

        Returns:
            Tuple of (formatted_message, cleaned_kwargs)
        """
        # Standard library logging kwargs that should not be treated as context
        stdlib_kwargs = {"exc_info", "stack_info", "stacklevel", "extra"}

        context = {k: v for k, v in kwargs.items() if k not in stdlib_kwargs}
        clean_kwargs = {k: v for k, v in kwargs.items() if k in stdlib_kwargs}

        if context:
            context_items = [f"{k}={v}" for k, v in sorted(context.items())]
            context_str = " ".join(context_items)
            msg = f"{msg} [dim][[/dim]{context_str}[dim]][/dim]"

        return msg, clean_kwargs


def setup_logging(verbose: bool = False, trace: bool = False) -> None:
    """Configure structured logging with rich integration.

    Args:
        verbose: Enable debug logging
        trace: Enable trace logging (most verbose)
    """
    log_level = logging.DEBUG if verbose or trace else logging.INFO

    console = Console(stderr=True)

    handler = RichHandler(
        console=console,
        show_time=True,
        show_path=trace,
        markup=True,
        rich_tracebacks=True,
        tracebacks_show_locals=verbose or trace,
        log_time_format="[%Y-%m-%d %H:%M:%S]",
    )

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )


def set_color(enabled: bool) -> None:
    """Turn colored output of the installed rich handlers on or off."""
    for handler in logging.getLogger().handlers:
        if isinstance(handler, RichHandler):
            handler.console.no_color = not enabled


def get_logger(name: str = "") -> StructuredLoggerAdapter:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Configured logger adapter with structured logging support
    """
    logger = logging.getLogger(name) if name else logging.getLogger(__name__)

    return StructuredLoggerAdapter(logger, {})


@runtime_checkable
class LogSink(Protocol):
    """Destination for user-facing progress emitted by long-running operations.

    Callers inject a sink; operations never reach for a global one.
    """

    def stage(self, name: str) -> None:
        """Announce that a pipeline stage is about to run."""
        ...

    def line(self, text: str) -> None:
        """Emit a free-form status line."""
        ...


class NullSink:
    """Sink that discards everything."""

    def stage(self, name: str) -> None:
        pass

    def line(self, text: str) -> None:
        pass


class LoggerSink:
    """Sink that forwards progress to a structured logger.

    Args:
        logger: Logger to write to
        prefix: Label prepended to stage names (e.g. "stack")
    """

    def __init__(self, logger: StructuredLoggerAdapter, prefix: str = "") -> None:
        self._logger = logger
        self._prefix = prefix

    def stage(self, name: str) -> None:
        if self._prefix:
            self._logger.info(f"{self._prefix}: {name}")
        else:
            self._logger.info(name)

    def line(self, text: str) -> None:
        self._logger.info(text)


class PrefixedSink:
    """Sink that labels every stage and line before passing it on.

    Args:
        sink: Sink to forward to
        prefix: Label prepended as ``"<prefix>: "``
    """

    def __init__(self, sink: LogSink, prefix: str) -> None:
        self._sink = sink
        self._prefix = prefix

    def stage(self, name: str) -> None:
        self._sink.stage(f"{self._prefix}: {name}")

    def line(self, text: str) -> None:
        self._sink.line(f"{self._prefix}: {text}")
