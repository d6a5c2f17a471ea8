"""Service manager integration.

Installing and removing the tamer as a system service (systemd on Linux,
launchd on macOS), plus the status notifications a running service sends
back to its manager.
"""

import os
import shlex
import socket
import subprocess
import sys
from pathlib import Path
from xml.sax.saxutils import escape

import structlog

log = structlog.get_logger()

SERVICE_NAME = "process-tamer"
LAUNCHD_LABEL = "com.process-tamer.daemon"


class ServiceError(Exception):
    """Raised when the service manager rejects an install or uninstall."""


class ServiceRegistrationError(ServiceError):
    """Raised when a service can't register for stop/shutdown signals."""


def service_command(config_path: Path | None = None) -> list[str]:
    """Return the command line the service manager should run.

    config_path pins the installed service to the file that was loaded at
    install time instead of the default service location.
    """
    command = [sys.executable, "-m", "process_tamer.cli"]
    if config_path is not None:
        command += ["--config", str(config_path)]
    return command


class ServiceManager:
    """Base class for a host service manager."""

    name = SERVICE_NAME

    def install(self, command: list[str], display_name: str, description: str) -> Path:
        """Register the service. Returns the path of the written definition."""
        raise NotImplementedError

    def uninstall(self) -> None:
        """Stop the service if it is running, then deregister it."""
        raise NotImplementedError

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(list(args), check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise ServiceError(f"{args[0]} not found") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise ServiceError(f"{' '.join(args)} failed: {stderr}") from e


class SystemdManager(ServiceManager):
    """systemd unit management via systemctl."""

    def __init__(self, unit_dir: Path = Path("/etc/systemd/system")):
        self.unit_dir = unit_dir

    @property
    def unit(self) -> str:
        return f"{self.name}.service"

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / self.unit

    def render_unit(self, command: list[str], display_name: str, description: str) -> str:
        return f"""[Unit]
Description={display_name} - {description}
After=multi-user.target

[Service]
Type=notify
ExecStart={shlex.join(command)}
Restart=on-failure

[Install]
WantedBy=multi-user.target
"""

    def install(self, command: list[str], display_name: str, description: str) -> Path:
        if self.unit_path.exists():
            raise ServiceError(f"Service already installed at {self.unit_path}")

        self.unit_dir.mkdir(parents=True, exist_ok=True)
        self.unit_path.write_text(self.render_unit(command, display_name, description))
        log.info("service_unit_written", path=str(self.unit_path))

        try:
            self._run("systemctl", "daemon-reload")
            self._run("systemctl", "enable", self.unit)
        except ServiceError:
            self.unit_path.unlink()
            raise
        return self.unit_path

    def uninstall(self) -> None:
        if not self.unit_path.exists():
            raise ServiceError("Service is not installed")

        # stop blocks until the unit has left the stopping state
        self._run("systemctl", "stop", self.unit)
        self._run("systemctl", "disable", self.unit)
        self.unit_path.unlink()
        self._run("systemctl", "daemon-reload")
        log.info("service_unit_removed", path=str(self.unit_path))


class LaunchdManager(ServiceManager):
    """launchd daemon management via launchctl."""

    def __init__(self, plist_dir: Path = Path("/Library/LaunchDaemons")):
        self.plist_dir = plist_dir

    @property
    def plist_path(self) -> Path:
        return self.plist_dir / f"{LAUNCHD_LABEL}.plist"

    def render_plist(self, command: list[str], display_name: str, description: str) -> str:
        arguments = "\n".join(f"        <string>{escape(arg)}</string>" for arg in command)
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<!-- {escape(display_name)}: {escape(description)} -->
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{LAUNCHD_LABEL}</string>
    <key>ProgramArguments</key>
    <array>
{arguments}
    </array>
    <key>RunAtLoad</key>
    <true/>
    <key>KeepAlive</key>
    <true/>
    <key>ProcessType</key>
    <string>Background</string>
</dict>
</plist>
"""

    def install(self, command: list[str], display_name: str, description: str) -> Path:
        if self.plist_path.exists():
            raise ServiceError(f"Service already installed at {self.plist_path}")

        self.plist_dir.mkdir(parents=True, exist_ok=True)
        self.plist_path.write_text(self.render_plist(command, display_name, description))
        log.info("service_plist_written", path=str(self.plist_path))

        try:
            self._run("launchctl", "bootstrap", "system", str(self.plist_path))
        except ServiceError:
            self.plist_path.unlink()
            raise
        return self.plist_path

    def uninstall(self) -> None:
        if not self.plist_path.exists():
            raise ServiceError("Service is not installed")

        try:
            self._run("launchctl", "bootout", f"system/{LAUNCHD_LABEL}")
        except ServiceError as e:
            # "No such process" is fine - service may not be running
            if "No such process" not in str(e):
                raise
        self.plist_path.unlink()
        log.info("service_plist_removed", path=str(self.plist_path))


def get_service_manager(platform: str | None = None) -> ServiceManager:
    """Return the service manager for the current platform.

    Raises:
        ServiceError: If the platform has no supported service manager.
    """
    platform = platform or sys.platform
    if platform == "darwin":
        return LaunchdManager()
    if platform.startswith("linux"):
        return SystemdManager()
    raise ServiceError(f"No supported service manager on {platform}")


class ServiceNotifier:
    """Status reporting to systemd through $NOTIFY_SOCKET (see sd_notify(3)).

    When no socket is advertised (launchd, manual runs) every call is a
    no-op that returns False.
    """

    def __init__(self, address: str | None = None):
        self.address = address if address is not None else os.environ.get("NOTIFY_SOCKET")

    @property
    def enabled(self) -> bool:
        return bool(self.address)

    def notify(self, **fields: str) -> bool:
        """Send KEY=value lines in a single datagram."""
        if not self.address:
            return False

        message = "\n".join(f"{key}={value}" for key, value in fields.items())
        address = self.address
        if address.startswith("@"):
            # Abstract namespace socket
            address = "\0" + address[1:]

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
                sock.connect(address)
                sock.sendall(message.encode())
        except OSError as e:
            log.warning("service_notify_failed", address=self.address, error=str(e))
            return False
        return True

    def ready(self, status: str) -> bool:
        return self.notify(READY="1", STATUS=status)

    def status(self, status: str) -> bool:
        return self.notify(STATUS=status)

    def stopping(self, status: str = "Stopping") -> bool:
        return self.notify(STOPPING="1", STATUS=status)
