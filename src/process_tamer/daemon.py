"""Background daemon for process-tamer."""

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog

from process_tamer import __version__
from process_tamer import logging as tlog
from process_tamer.config import ConfigLoadError, ConfigStore, RunMode
from process_tamer.enforcer import enforce_all
from process_tamer.processes import ProcessTable
from process_tamer.service import ServiceNotifier, ServiceRegistrationError

log = structlog.get_logger()

# Signals the service manager uses for stop and system shutdown
CONTROL_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class LifecycleState(Enum):
    """Lifecycle of the daemon: STOPPED -> INITIALIZING -> RUNNING -> STOP_PENDING -> STOPPED."""

    STOPPED = "stopped"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOP_PENDING = "stop_pending"


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    lifecycle: LifecycleState = LifecycleState.STOPPED
    cycle_count: int = 0
    last_cycle_time: datetime | None = None
    last_match_count: int = 0

    @property
    def running(self) -> bool:
        return self.lifecycle is LifecycleState.RUNNING

    def update_cycle(self, matches: int) -> None:
        """Update state after an enforcement pass."""
        self.cycle_count += 1
        self.last_match_count = matches
        self.last_cycle_time = datetime.now()


class Daemon:
    """Poll loop that keeps configured processes at their target priority.

    In service mode SIGTERM/SIGINT are handled on the event loop: the
    handler only flips the lifecycle state and sets the shutdown event, and
    the loop notices at its next wait. Standalone mode registers no handlers
    and runs until the process is killed or stop is requested in-process.
    """

    def __init__(
        self,
        store: ConfigStore,
        table: ProcessTable | None = None,
        notifier: ServiceNotifier | None = None,
    ):
        self.store = store
        self.mode = store.mode
        self.table = table or ProcessTable()
        self.notifier = notifier or ServiceNotifier()
        self.state = DaemonState()

        self._shutdown_event = asyncio.Event()
        self._signals: list[signal.Signals] = []

    async def start(self) -> None:
        """Initialize, then run the poll loop until stopped.

        Raises:
            ServiceRegistrationError: Service mode could not install its
                signal handlers.
            ConfigLoadError: No configuration could be loaded.
        """
        self.state.lifecycle = LifecycleState.INITIALIZING
        log.info("daemon_starting", version=__version__, mode=self.mode.value)

        if self.mode is RunMode.SERVICE:
            self._register_signal_handlers()

        try:
            count = self.store.require_loaded()
        except ConfigLoadError:
            self.state.lifecycle = LifecycleState.STOPPED
            log.error("config_load_failed", path=str(self.store.path))
            raise

        config = self.store.config
        if count == 0:
            log.warning("no_processes_configured", path=str(self.store.path))
            tlog.config_empty(str(self.store.path))

        if self._shutdown_event.is_set():
            # Stop arrived while initializing
            return

        self.state.lifecycle = LifecycleState.RUNNING
        self.notifier.ready(self._status_text(count))
        log.info(
            "daemon_started",
            path=str(self.store.path),
            entries=count,
            interval_ms=config.interval_ms,
        )
        tlog.daemon_started(self.mode.value, count, config.interval_ms)

        await self._main_loop()

    async def stop(self) -> None:
        """Acknowledge the stop to the service manager and release handlers."""
        if self.state.lifecycle is not LifecycleState.STOPPED:
            log.info("daemon_stopping")
            tlog.daemon_stopping()
            self.state.lifecycle = LifecycleState.STOP_PENDING
            self.notifier.stopping()

        self._remove_signal_handlers()

        self.state.lifecycle = LifecycleState.STOPPED
        last_cycle = self.state.last_cycle_time
        log.info(
            "daemon_stopped",
            cycles=self.state.cycle_count,
            last_cycle=last_cycle.isoformat() if last_cycle else None,
            last_matches=self.state.last_match_count,
        )
        tlog.daemon_stopped(self.state.cycle_count, self.state.last_match_count)

    def request_stop(self) -> None:
        """Ask the poll loop to finish. Safe to call from a signal handler."""
        if self.state.lifecycle in (LifecycleState.INITIALIZING, LifecycleState.RUNNING):
            self.state.lifecycle = LifecycleState.STOP_PENDING
        self._shutdown_event.set()

    def run_cycle(self) -> int:
        """Reload the configuration if it changed, then enforce every entry.

        All entries in one cycle share a single fresh snapshot.

        Returns:
            Total number of matching processes across all entries.
        """
        previous = self.store.config
        count = self.store.reload_if_changed()
        config = self.store.config
        if config is not previous:
            tlog.config_reloaded(str(self.store.path), count)
            self.notifier.status(self._status_text(count))

        matches = 0
        if config.entries:
            snapshot = self.table.snapshot()
            matches = enforce_all(config.entries, snapshot, self.table)

        self.state.update_cycle(matches)
        return matches

    def _status_text(self, count: int) -> str:
        suffix = "s" if count != 1 else ""
        return f"Taming {count} process name{suffix}"

    def _register_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            for sig in CONTROL_SIGNALS:
                loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
                self._signals.append(sig)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            self._remove_signal_handlers()
            self.state.lifecycle = LifecycleState.STOPPED
            log.error("signal_registration_failed", error=str(e))
            raise ServiceRegistrationError(f"Cannot register control handler: {e}") from e

    def _remove_signal_handlers(self) -> None:
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        tlog.signal_received(sig.name)
        self.request_stop()

    async def _main_loop(self) -> None:
        """Run enforcement passes at the configured interval.

        The interval is re-read after every pass so a changed Interval takes
        effect on the next wait. A stop request ends the wait early.
        """
        while not self._shutdown_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                log.error("enforcement_failed", error=str(e))
                tlog.enforcement_failed(str(e))

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.store.config.interval,
                )
                break  # Shutdown requested during sleep
            except asyncio.TimeoutError:
                pass  # Normal timeout, run the next pass


async def run_daemon(store: ConfigStore, table: ProcessTable | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        store: Configuration store for the chosen run mode
        table: Optional process facility, psutil-backed if not provided
    """
    daemon = Daemon(store, table)

    try:
        await daemon.start()
    except (ConfigLoadError, ServiceRegistrationError):
        raise
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
