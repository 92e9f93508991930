"""Logging for Ledger Vault.

All modules log through ``logging.getLogger(__name__)`` under the
``ledger_vault`` namespace. ``setup_logging`` attaches a Rich console handler
and, when asked, a plain-text file handler that records everything down to
DEBUG. Log messages name records by path and never include field values or
key material.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


PACKAGE_LOGGER = "ledger_vault"

# Shared with the CLI so progress lines and log records interleave cleanly
console = Console()

FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(message)s"


def _console_handler(rich_output: bool) -> logging.Handler:
    if not rich_output:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        return handler

    handler = RichHandler(
        console=console,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    rich_output: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        level: Console log level name (unknown names fall back to INFO)
        log_file: Also write DEBUG and above to this file
        rich_output: Render console records with Rich instead of plain stderr

    Returns:
        The ``ledger_vault`` logger
    """
    console_level = logging.getLevelName(level.upper())
    if not isinstance(console_level, int):
        console_level = logging.INFO

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = _console_handler(rich_output)
    handler.setLevel(console_level)
    logger.addHandler(handler)
    logger.setLevel(console_level)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)
        logger.setLevel(logging.DEBUG)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger inside the package namespace."""
    if not name.startswith(PACKAGE_LOGGER):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)


class ProgressLogger:
    """
    Prints batch-engine progress to the console.

    Pass ``update`` as an engine's progress callback, then call ``complete``
    or ``error`` with the final state.
    """

    def __init__(self, operation: str = "Processing"):
        self.operation = operation
        self.updates = 0
        self.logger = get_logger("progress")

    def update(self, progress) -> None:
        self.updates += 1
        console.print(
            f"  {self.operation}: {progress.processed} seen, {progress.succeeded} written, "
            f"{progress.skipped} skipped, {progress.failed} failed",
            markup=False,
        )

    def complete(self, progress) -> None:
        if progress.failed:
            console.print(f"[yellow]{self.operation} finished with {progress.failed} failed records[/yellow]")
            self.logger.warning("%s finished with %d failed records", self.operation, progress.failed)
        else:
            console.print(f"[green]{self.operation} complete: {progress.processed} records[/green]")

    def error(self, message: str) -> None:
        console.print(f"[red]{self.operation} failed:[/red] {message}", highlight=False)
        self.logger.error("%s failed: %s", self.operation, message)
