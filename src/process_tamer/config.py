"""Configuration system for process-tamer.

The configuration file is TOML with two sections:

    [Service]
    DisplayName = "Process Tamer"
    Description = "Process priority taming service"
    Interval = 10000

    [Processes]
    Process1_Name = "note.exe"
    Process1_Prio = 1

String values must be quoted: an INI-style `Process1_Name=note.exe` line is
a TOML syntax error and the whole file is rejected.

ConfigStore owns the loaded TamerConfig and only reparses the file when its
checksum changes. A file that can't be read or parsed leaves the previous
configuration in place.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog
import tomlkit

from process_tamer.checksum import checksum
from process_tamer.processes import Priority

log = structlog.get_logger()

CONFIG_FILE_NAME = "process-tamer.toml"
MAX_PROCESS_NAME = 127  # Longest executable name kept from the file
MAX_SERVICE_TEXT = 255  # Longest display name / description kept from the file


class RunMode(Enum):
    """How the process was started. Fixed for the process lifetime."""

    SERVICE = "service"
    STANDALONE = "standalone"


class ConfigLoadError(Exception):
    """Raised when no configuration could ever be loaded."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"Error while reading configuration from {path} "
            "(TOML syntax, string values must be quoted)"
        )


@dataclass(frozen=True)
class ProcessEntry:
    """A configured executable name and the priority it should run at."""

    name: str
    priority: int = 0


@dataclass
class TamerConfig:
    """Main configuration container."""

    display_name: str = "Process Tamer"
    description: str = "Process priority taming service"
    interval_ms: int = 10000  # Milliseconds between enforcement passes
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep
    entries: tuple[ProcessEntry, ...] = field(default_factory=tuple)
    checksum: int | None = None  # CRC of the file as of the last successful load

    @property
    def interval(self) -> float:
        """Poll interval in seconds."""
        return self.interval_ms / 1000

    def save(self, path: Path) -> None:
        """Save config to TOML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        doc.add(tomlkit.comment("process-tamer configuration"))
        doc.add(tomlkit.nl())

        service = tomlkit.table()
        service.add("DisplayName", self.display_name)
        service.add("Description", self.description)
        service.add("Interval", self.interval_ms)
        service["Interval"].comment("milliseconds")
        service.add("LogMaxBytes", self.log_max_bytes)
        service.add("LogBackupCount", self.log_backup_count)
        doc.add("Service", service)
        doc.add(tomlkit.nl())

        processes = tomlkit.table()
        processes.add(
            tomlkit.comment("Prio: 0 normal, 1 idle, 2 below normal, 3 above normal, 4 high")
        )
        if not self.entries:
            processes.add(tomlkit.comment('Process1_Name = "example.exe"'))
            processes.add(tomlkit.comment("Process1_Prio = 1"))
        for index, entry in enumerate(self.entries, start=1):
            processes.add(f"Process{index}_Name", entry.name)
            processes.add(f"Process{index}_Prio", entry.priority)
        doc.add("Processes", processes)

        path.write_text(tomlkit.dumps(doc))


def resolve_config_path(mode: RunMode) -> Path:
    """Return the configuration file location for a run mode.

    Service mode reads from /etc (services run under systemd or launchd only),
    standalone mode from the current working directory.
    """
    if mode is RunMode.SERVICE:
        base = Path("/etc")
    else:
        base = Path.cwd()
    return base.absolute() / CONFIG_FILE_NAME


def resolve_log_path(mode: RunMode) -> Path:
    """Return the JSON log file location for a run mode."""
    if mode is RunMode.SERVICE:
        base = Path("/var/log/process-tamer")
    else:
        base = Path.home() / ".local" / "state" / "process-tamer"
    return base / "tamer.log"


def _as_int(value: object, default: int) -> int:
    """Coerce a TOML value to int, falling back to default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _as_text(value: object, default: str = "") -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    return str(value).strip()


def _section(doc: dict, name: str) -> dict:
    value = doc.get(name, {})
    return value if isinstance(value, dict) else {}


def _parse_entries(section: dict) -> list[ProcessEntry]:
    """Read the numbered process keys in file order.

    Process<i>_Name / Process<i>_Prio is tried first; a bare Process<i> key
    is accepted as a fallback and implies the idle priority. Enumeration
    stops at the first index with no name.
    """
    entries = []
    index = 1
    while True:
        name = _as_text(section.get(f"Process{index}_Name"))
        if name:
            priority = _as_int(section.get(f"Process{index}_Prio"), 0)
        else:
            name = _as_text(section.get(f"Process{index}"))
            if not name:
                break
            priority = int(Priority.IDLE)
        entries.append(ProcessEntry(name=name[:MAX_PROCESS_NAME], priority=priority))
        index += 1
    return entries


def parse_config(text: str, crc: int | None = None) -> TamerConfig:
    """Parse configuration file text, using dataclass defaults for missing values.

    Raises:
        tomlkit.exceptions.TOMLKitError: If the text is not valid TOML.
    """
    doc = tomlkit.parse(text).unwrap()
    service = _section(doc, "Service")
    defaults = TamerConfig()

    interval_ms = _as_int(service.get("Interval"), defaults.interval_ms)
    if interval_ms <= 0:
        log.warning("config_interval_invalid", interval_ms=interval_ms)
        interval_ms = defaults.interval_ms

    return TamerConfig(
        display_name=(
            _as_text(service.get("DisplayName")) or defaults.display_name
        )[:MAX_SERVICE_TEXT],
        description=(
            _as_text(service.get("Description")) or defaults.description
        )[:MAX_SERVICE_TEXT],
        interval_ms=interval_ms,
        log_max_bytes=_as_int(service.get("LogMaxBytes"), defaults.log_max_bytes),
        log_backup_count=_as_int(service.get("LogBackupCount"), defaults.log_backup_count),
        entries=tuple(_parse_entries(_section(doc, "Processes"))),
        checksum=crc,
    )


class ConfigStore:
    """Owns the current TamerConfig and reloads it when the file changes.

    The file path is resolved on first use and cached, so a later change of
    working directory does not move the configuration. Readers should grab
    `store.config` once per pass: a reload replaces the whole object and
    never edits it in place.
    """

    def __init__(self, mode: RunMode, path: Path | None = None):
        self.mode = mode
        self._path = path.absolute() if path is not None else None
        self.config = TamerConfig()
        self.loaded = False  # True once any load has succeeded
        self.parse_count = 0

    @property
    def path(self) -> Path:
        """Absolute path of the configuration file."""
        if self._path is None:
            self._path = resolve_config_path(self.mode)
        return self._path

    @property
    def entry_count(self) -> int:
        return len(self.config.entries)

    def reload_if_changed(self) -> int:
        """Reload the configuration if the file content changed.

        Returns:
            Number of configured process entries. An unreadable or malformed
            file returns the previous count and keeps the previous entries.
        """
        path = self.path
        try:
            data = path.read_bytes()
        except OSError as e:
            log.warning("config_unreadable", path=str(path), error=str(e))
            return self.entry_count

        crc = checksum(data)
        if crc == self.config.checksum:
            return self.entry_count

        self.parse_count += 1
        try:
            new_config = parse_config(data.decode("utf-8"), crc)
        except (UnicodeDecodeError, tomlkit.exceptions.TOMLKitError) as e:
            log.warning("config_malformed", path=str(path), error=str(e))
            return self.entry_count

        self.config = new_config
        self.loaded = True
        log.info(
            "config_reloaded",
            path=str(path),
            entries=len(new_config.entries),
            interval_ms=new_config.interval_ms,
            checksum=f"{crc:08x}",
        )
        return self.entry_count

    def require_loaded(self) -> int:
        """Reload and fail if no configuration has ever been loaded.

        Raises:
            ConfigLoadError: If the file could not be read or parsed and
                there is no earlier configuration to fall back on.
        """
        count = self.reload_if_changed()
        if not self.loaded:
            raise ConfigLoadError(self.path)
        return count
