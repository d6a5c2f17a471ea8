"""Process enumeration and priority access via psutil.

This is the only module that touches the OS process table. Priorities are
configured as portable Priority values and translated to the platform's
native representation here: psutil priority class constants on Windows,
nice values elsewhere.
"""

import sys
from dataclasses import dataclass
from enum import IntEnum

import psutil


class Priority(IntEnum):
    """Priority classes accepted in the configuration file."""

    NORMAL = 0
    IDLE = 1
    BELOW_NORMAL = 2
    ABOVE_NORMAL = 3
    HIGH = 4


# Nice values used on POSIX systems
_NICE_VALUES = {
    Priority.NORMAL: 0,
    Priority.IDLE: 19,
    Priority.BELOW_NORMAL: 10,
    Priority.ABOVE_NORMAL: -5,
    Priority.HIGH: -10,
}


def _windows_priority_classes() -> dict[Priority, int]:
    return {
        Priority.NORMAL: psutil.NORMAL_PRIORITY_CLASS,
        Priority.IDLE: psutil.IDLE_PRIORITY_CLASS,
        Priority.BELOW_NORMAL: psutil.BELOW_NORMAL_PRIORITY_CLASS,
        Priority.ABOVE_NORMAL: psutil.ABOVE_NORMAL_PRIORITY_CLASS,
        Priority.HIGH: psutil.HIGH_PRIORITY_CLASS,
    }


@dataclass(frozen=True)
class ProcessInfo:
    """One row of a process snapshot."""

    pid: int
    name: str


class ProcessTable:
    """psutil-backed view of the local process table.

    Errors from get_priority() and set_priority() (psutil.NoSuchProcess,
    psutil.AccessDenied) propagate so the caller can skip that process.
    """

    def __init__(self, platform: str | None = None):
        self.platform = platform or sys.platform

    def native_priority(self, priority: int) -> int:
        """Translate a configured priority to the value psutil expects.

        Raises:
            ValueError: If priority is not a known Priority.
        """
        level = Priority(priority)
        if self.platform == "win32":
            return _windows_priority_classes()[level]
        return _NICE_VALUES[level]

    def snapshot(self) -> list[ProcessInfo]:
        """Return the (pid, name) pairs of all running processes."""
        rows = []
        for proc in psutil.process_iter(["pid", "name"]):
            name = proc.info.get("name")
            if not name:
                continue
            rows.append(ProcessInfo(pid=proc.info["pid"], name=name))
        return rows

    def get_priority(self, pid: int) -> int:
        return psutil.Process(pid).nice()

    def set_priority(self, pid: int, value: int) -> None:
        psutil.Process(pid).nice(value)
