"""Priority enforcement: match configured names against running processes."""

from collections.abc import Iterable, Sequence

import psutil
import structlog

from process_tamer import logging as tlog
from process_tamer.config import ProcessEntry
from process_tamer.processes import ProcessInfo, ProcessTable

log = structlog.get_logger()


def enforce(entry: ProcessEntry, snapshot: Sequence[ProcessInfo], table: ProcessTable) -> int:
    """Bring every process named like entry to the entry's priority.

    Names are compared case-insensitively and must match exactly. Every
    matching instance is handled; a process that can't be read or changed
    (exited, access denied) is skipped without affecting the others.

    Args:
        entry: Configured process name and target priority
        snapshot: Current process list, fetched fresh for this pass
        table: Facility used to read and set priorities

    Returns:
        Number of processes in snapshot whose name matched.
    """
    try:
        target = table.native_priority(entry.priority)
    except ValueError:
        log.warning("unknown_priority", process=entry.name, priority=entry.priority)
        return 0

    wanted = entry.name.casefold()
    matches = 0
    for proc in snapshot:
        if proc.name.casefold() != wanted:
            continue
        matches += 1
        try:
            current = table.get_priority(proc.pid)
            if current == target:
                continue
            table.set_priority(proc.pid, target)
        except psutil.Error as e:
            log.debug("process_skipped", process=proc.name, pid=proc.pid, error=str(e))
            continue
        log.info(
            "process_tamed",
            process=proc.name,
            pid=proc.pid,
            previous=current,
            priority=target,
        )
        tlog.process_tamed(proc.name, proc.pid, target)
    return matches


def enforce_all(
    entries: Iterable[ProcessEntry],
    snapshot: Sequence[ProcessInfo],
    table: ProcessTable,
) -> int:
    """Run one enforcement pass over all entries against a single snapshot."""
    return sum(enforce(entry, snapshot, table) for entry in entries)
