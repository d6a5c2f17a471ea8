"""Tests for daemon core."""

import asyncio
import os
import signal
from pathlib import Path
from unittest.mock import patch

import pytest

from process_tamer.config import ConfigLoadError, ConfigStore, RunMode
from process_tamer.daemon import Daemon, DaemonState, LifecycleState, run_daemon
from process_tamer.processes import Priority
from process_tamer.service import ServiceRegistrationError

from tests.conftest import FakeNotifier, FakeProcessTable, write_config

IDLE = int(Priority.IDLE)
NORMAL = int(Priority.NORMAL)


async def wait_until(condition, timeout=2.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not condition():
        if asyncio.get_event_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def foo_config(config_path: Path) -> Path:
    """Config taming foo.exe to idle with a long interval."""
    return write_config(
        config_path,
        'Process1_Name = "foo.exe"\nProcess1_Prio = 1\n',
        service="Interval = 60000\n",
    )


@pytest.fixture
def service_store(foo_config: Path) -> ConfigStore:
    """Service-mode store reading foo_config."""
    return ConfigStore(RunMode.SERVICE, foo_config)


def test_daemon_state_initial():
    """DaemonState initializes with correct defaults."""
    state = DaemonState()

    assert state.lifecycle is LifecycleState.STOPPED
    assert state.running is False
    assert state.cycle_count == 0
    assert state.last_cycle_time is None
    assert state.last_match_count == 0


def test_daemon_state_update_cycle():
    """DaemonState updates after a pass."""
    state = DaemonState()

    state.update_cycle(matches=3)

    assert state.cycle_count == 1
    assert state.last_match_count == 3
    assert state.last_cycle_time is not None


def test_daemon_init_uses_store_mode(store: ConfigStore, fake_table, fake_notifier):
    """Daemon takes its mode from the store."""
    daemon = Daemon(store, fake_table, fake_notifier)

    assert daemon.mode is RunMode.STANDALONE
    assert daemon.table is fake_table
    assert daemon.state.lifecycle is LifecycleState.STOPPED


def test_run_cycle_enforces_entries(store: ConfigStore, foo_config: Path, fake_notifier):
    """run_cycle() reloads and tames matching processes."""
    table = FakeProcessTable({10: ("foo.exe", NORMAL), 11: ("bar.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)

    matches = daemon.run_cycle()

    assert matches == 1
    assert table.set_calls == [(10, IDLE)]
    assert table.snapshot_calls == 1
    assert daemon.state.cycle_count == 1


def test_run_cycle_fresh_snapshot_each_cycle(store: ConfigStore, foo_config: Path, fake_notifier):
    """Every cycle fetches a new snapshot and sees new processes."""
    table = FakeProcessTable({10: ("foo.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)

    daemon.run_cycle()
    table.processes[20] = ("foo.exe", NORMAL)
    daemon.run_cycle()

    assert table.snapshot_calls == 2
    assert table.set_calls == [(10, IDLE), (20, IDLE)]


def test_run_cycle_no_entries_skips_snapshot(store: ConfigStore, config_path: Path, fake_notifier):
    """With nothing configured no snapshot is taken."""
    write_config(config_path)
    table = FakeProcessTable({10: ("foo.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)

    assert daemon.run_cycle() == 0
    assert table.snapshot_calls == 0


def test_run_cycle_picks_up_config_change(store: ConfigStore, foo_config: Path, fake_notifier):
    """A changed file takes effect on the next cycle."""
    table = FakeProcessTable({10: ("foo.exe", NORMAL), 11: ("bar.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)
    daemon.run_cycle()

    write_config(foo_config, 'Process1_Name = "bar.exe"\nProcess1_Prio = 2\n')
    daemon.run_cycle()

    assert table.set_calls == [(10, IDLE), (11, int(Priority.BELOW_NORMAL))]
    assert "STATUS" in fake_notifier.messages


def test_run_cycle_keeps_config_when_file_unreadable(
    store: ConfigStore, foo_config: Path, fake_notifier
):
    """A vanished file keeps the last configuration in force."""
    table = FakeProcessTable({10: ("foo.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)
    daemon.run_cycle()

    foo_config.unlink()
    table.processes[20] = ("foo.exe", NORMAL)
    daemon.run_cycle()

    assert table.set_calls == [(10, IDLE), (20, IDLE)]


@pytest.mark.asyncio
async def test_start_fails_without_config(config_path: Path, fake_table, fake_notifier):
    """An unreadable file at first load stops the daemon cleanly."""
    store = ConfigStore(RunMode.STANDALONE, config_path)
    daemon = Daemon(store, fake_table, fake_notifier)

    with pytest.raises(ConfigLoadError):
        await daemon.start()

    assert daemon.state.lifecycle is LifecycleState.STOPPED
    assert daemon.state.cycle_count == 0
    assert "READY" not in fake_notifier.messages


@pytest.mark.asyncio
async def test_start_fails_without_config_removes_handlers(config_path: Path, fake_table):
    """Service mode failure at startup leaves no signal handlers installed."""
    store = ConfigStore(RunMode.SERVICE, config_path)
    daemon = Daemon(store, fake_table, FakeNotifier())

    with pytest.raises(ConfigLoadError):
        await daemon.start()
    await daemon.stop()

    assert daemon._signals == []


@pytest.mark.asyncio
async def test_start_runs_until_stopped(store: ConfigStore, foo_config: Path, fake_notifier):
    """Standalone daemon runs passes until stop is requested."""
    table = FakeProcessTable({10: ("foo.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)

    task = asyncio.create_task(daemon.start())
    await wait_until(lambda: daemon.state.cycle_count >= 1)
    assert daemon.state.lifecycle is LifecycleState.RUNNING

    daemon.request_stop()
    assert daemon.state.lifecycle is LifecycleState.STOP_PENDING
    await asyncio.wait_for(task, timeout=2.0)
    await daemon.stop()

    assert daemon.state.lifecycle is LifecycleState.STOPPED
    assert table.set_calls == [(10, IDLE)]


@pytest.mark.asyncio
async def test_standalone_registers_no_signal_handlers(
    store: ConfigStore, foo_config: Path, fake_table, fake_notifier
):
    """Standalone mode leaves signal handling alone."""
    daemon = Daemon(store, fake_table, fake_notifier)

    with patch.object(daemon, "_register_signal_handlers") as mock_register:
        task = asyncio.create_task(daemon.start())
        await wait_until(lambda: daemon.state.running)
        daemon.request_stop()
        await asyncio.wait_for(task, timeout=2.0)

    mock_register.assert_not_called()


@pytest.mark.asyncio
async def test_stop_signal_while_sleeping(service_store: ConfigStore, fake_table, fake_notifier):
    """SIGTERM during the interval wait stops the daemon and acknowledges."""
    daemon = Daemon(service_store, fake_table, fake_notifier)

    task = asyncio.create_task(daemon.start())
    await wait_until(lambda: daemon.state.cycle_count >= 1)
    assert fake_notifier.messages == ["READY"]

    # Interval is 60s, so the loop is sleeping now
    os.kill(os.getpid(), signal.SIGTERM)
    await asyncio.wait_for(task, timeout=2.0)
    await daemon.stop()

    assert daemon.state.lifecycle is LifecycleState.STOPPED
    assert fake_notifier.messages == ["READY", "STOPPING"]
    assert daemon._signals == []


@pytest.mark.asyncio
async def test_handle_signal_sets_stop_pending(service_store: ConfigStore, fake_table, fake_notifier):
    """The signal handler only flips state; the loop finishes the stop."""
    daemon = Daemon(service_store, fake_table, fake_notifier)

    task = asyncio.create_task(daemon.start())
    await wait_until(lambda: daemon.state.running)

    daemon._handle_signal(signal.SIGINT)
    assert daemon.state.lifecycle is LifecycleState.STOP_PENDING

    await asyncio.wait_for(task, timeout=2.0)
    await daemon.stop()
    assert daemon.state.lifecycle is LifecycleState.STOPPED


@pytest.mark.asyncio
async def test_registration_failure_is_fatal(service_store: ConfigStore, fake_table, fake_notifier):
    """Service mode can't start without its control handler."""
    daemon = Daemon(service_store, fake_table, fake_notifier)
    loop = asyncio.get_running_loop()

    with patch.object(loop, "add_signal_handler", side_effect=NotImplementedError):
        with pytest.raises(ServiceRegistrationError):
            await daemon.start()

    assert daemon.state.lifecycle is LifecycleState.STOPPED
    assert daemon.state.cycle_count == 0


@pytest.mark.asyncio
async def test_main_loop_survives_pass_errors(store: ConfigStore, foo_config: Path, fake_notifier):
    """An exception in one pass does not end the loop."""
    table = FakeProcessTable({10: ("foo.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)
    write_config(
        foo_config,
        'Process1_Name = "foo.exe"\nProcess1_Prio = 1\n',
        service="Interval = 10\n",
    )

    calls = 0
    original = table.snapshot

    def flaky_snapshot():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("process table unavailable")
        return original()

    table.snapshot = flaky_snapshot

    task = asyncio.create_task(daemon.start())
    await wait_until(lambda: table.set_calls)
    daemon.request_stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert calls >= 2
    assert table.set_calls == [(10, IDLE)]


@pytest.mark.asyncio
async def test_zero_entries_keeps_running(store: ConfigStore, config_path: Path, fake_table, fake_notifier):
    """A readable file with no processes is not a startup failure."""
    write_config(config_path, service="Interval = 60000\n")
    daemon = Daemon(store, fake_table, fake_notifier)

    task = asyncio.create_task(daemon.start())
    await wait_until(lambda: daemon.state.running)
    daemon.request_stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert fake_table.snapshot_calls == 0


@pytest.mark.asyncio
async def test_run_daemon_stops_on_config_failure(config_path: Path, fake_table):
    """run_daemon() propagates a startup config failure after cleanup."""
    store = ConfigStore(RunMode.STANDALONE, config_path)

    with pytest.raises(ConfigLoadError):
        await run_daemon(store, fake_table)


@pytest.mark.asyncio
async def test_stop_reports_last_cycle(store: ConfigStore, foo_config: Path, fake_notifier):
    """The stopped event carries the pass count and the last pass result."""
    table = FakeProcessTable({10: ("foo.exe", NORMAL), 11: ("foo.exe", NORMAL)})
    daemon = Daemon(store, table, fake_notifier)
    daemon.run_cycle()

    with (
        patch("process_tamer.daemon.log") as mock_log,
        patch("process_tamer.daemon.tlog.daemon_stopped") as mock_stopped,
    ):
        await daemon.stop()

    mock_log.info.assert_any_call(
        "daemon_stopped",
        cycles=1,
        last_cycle=daemon.state.last_cycle_time.isoformat(),
        last_matches=2,
    )
    mock_stopped.assert_called_once_with(1, 2)


@pytest.mark.asyncio
async def test_stop_before_any_cycle(store: ConfigStore, fake_table, fake_notifier):
    """Stopping before the first pass reports no last cycle time."""
    daemon = Daemon(store, fake_table, fake_notifier)

    with patch("process_tamer.daemon.log") as mock_log:
        await daemon.stop()

    mock_log.info.assert_any_call("daemon_stopped", cycles=0, last_cycle=None, last_matches=0)
