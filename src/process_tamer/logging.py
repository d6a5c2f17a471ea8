"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (daemon_started, process_tamed, etc.)
5. Structlog configuration (configure, quiet)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from process_tamer.config import TamerConfig

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    RELOAD = "[cyan]↻[/]"
    TAMED = "[bright_blue]▼[/]"
    SIGNAL = "⚡"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started(mode: str, entries: int, interval_ms: int) -> None:
    """Log daemon startup complete."""
    suffix = "s" if entries != 1 else ""
    info(
        f"Tamer started [dim]({mode} mode, {entries} process name{suffix}, "
        f"every {interval_ms}ms)[/]",
        Icon.OK,
    )


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Tamer stopping...", Icon.WAIT)


def daemon_stopped(cycles: int, last_matches: int) -> None:
    """Log daemon shutdown complete."""
    info(
        f"Tamer stopped [dim]({cycles} passes, last pass matched {last_matches})[/]",
        Icon.OK,
    )


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def config_reloaded(path: str, entries: int) -> None:
    """Log a configuration change picked up from disk."""
    info(f"Reloaded [cyan]{path}[/] [dim]({entries} entries)[/]", Icon.RELOAD)


def config_empty(path: str) -> None:
    """Log a configuration that names no processes."""
    warn(f"No processes configured in [cyan]{path}[/]")


def process_tamed(name: str, pid: int, priority: int) -> None:
    """Log a process moved to its configured priority."""
    info(f"[cyan]{name}[/] [dim]({pid})[/] set to priority {priority}", Icon.TAMED)


def enforcement_failed(error_msg: str) -> None:
    """Log an enforcement pass that raised."""
    error(f"Enforcement failed: {error_msg}", Icon.FAIL)


def file_logging_unavailable(path: str, error_msg: str) -> None:
    """Log that the JSON log file could not be opened."""
    warn(f"File logging disabled, can't open [cyan]{path}[/]: {error_msg}")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: TamerConfig, log_path: Path) -> bool:
    """Configure structlog to write JSON Lines to a rotating log file.

    Console output is handled by Rich (see log functions above); structlog
    only writes to the JSON file for machine parsing.

    Args:
        config: Loaded configuration (rotation limits)
        log_path: Log file location for the current run mode

    Returns:
        True if the log file is in use, False if it couldn't be opened.
    """
    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)

    # Clear any existing handlers
    stdlib_root.handlers.clear()

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        file_logging_unavailable(str(log_path), str(e))
        file_handler = None

    if file_handler is not None:
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=[
                    structlog.contextvars.merge_contextvars,
                    structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                    structlog.processors.add_log_level,
                    _add_source("tamer"),
                    structlog.processors.format_exc_info,
                ],
            )
        )
        stdlib_root.addHandler(file_handler)
    else:
        stdlib_root.addHandler(logging.NullHandler())

    _configure_structlog()
    return file_handler is not None


def quiet() -> None:
    """Send structlog events nowhere until configure() installs the file sink.

    One-shot commands (install, uninstall, config) only print their result
    lines; the structured events of the modules they call are dropped.
    """
    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()
    stdlib_root.addHandler(logging.NullHandler())
    _configure_structlog()


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source("tamer"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

