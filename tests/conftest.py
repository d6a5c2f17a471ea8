"""Shared test fixtures for process-tamer."""

from pathlib import Path

import psutil
import pytest

from process_tamer.config import ConfigStore, RunMode
from process_tamer.processes import ProcessInfo


class FakeProcessTable:
    """In-memory stand-in for ProcessTable.

    Priorities are stored per PID and native values equal the configured
    Priority values. PIDs listed in `denied` raise AccessDenied and PIDs in
    `vanished` raise NoSuchProcess.
    """

    def __init__(self, processes: dict[int, tuple[str, int]] | None = None):
        self.processes = dict(processes or {})
        self.denied: set[int] = set()
        self.vanished: set[int] = set()
        self.get_calls: list[int] = []
        self.set_calls: list[tuple[int, int]] = []
        self.snapshot_calls = 0

    def native_priority(self, priority: int) -> int:
        from process_tamer.processes import Priority

        return int(Priority(priority))

    def snapshot(self) -> list[ProcessInfo]:
        self.snapshot_calls += 1
        return [ProcessInfo(pid=pid, name=name) for pid, (name, _) in self.processes.items()]

    def _check(self, pid: int) -> None:
        if pid in self.vanished:
            raise psutil.NoSuchProcess(pid)
        if pid in self.denied:
            raise psutil.AccessDenied(pid)

    def get_priority(self, pid: int) -> int:
        self.get_calls.append(pid)
        self._check(pid)
        return self.processes[pid][1]

    def set_priority(self, pid: int, value: int) -> None:
        self._check(pid)
        self.set_calls.append((pid, value))
        name, _ = self.processes[pid]
        self.processes[pid] = (name, value)


class FakeNotifier:
    """Records service manager notifications."""

    def __init__(self) -> None:
        self.messages: list[str] = []

    def ready(self, status: str) -> bool:
        self.messages.append("READY")
        return True

    def status(self, status: str) -> bool:
        self.messages.append("STATUS")
        return True

    def stopping(self, status: str = "Stopping") -> bool:
        self.messages.append("STOPPING")
        return True


def write_config(path: Path, processes: str = "", service: str = "") -> Path:
    """Write a configuration file with the given section bodies."""
    path.write_text(f"[Service]\n{service}\n[Processes]\n{processes}\n")
    return path


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Path for a configuration file inside tmp_path (not created)."""
    return tmp_path / "process-tamer.toml"


@pytest.fixture
def store(config_path: Path) -> ConfigStore:
    """ConfigStore pointed at config_path."""
    return ConfigStore(RunMode.STANDALONE, config_path)


@pytest.fixture
def fake_table() -> FakeProcessTable:
    """Empty fake process table."""
    return FakeProcessTable()


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    """Notifier that records messages instead of sending them."""
    return FakeNotifier()
