"""
Service for periodic execution: systemd timer units, or an in-process loop.
"""
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from portsync.core.config import Settings, settings as default_settings
from portsync.core.exceptions import ConfigurationError, PortSyncError
from portsync.utils.command_runner import CommandError, CommandRunner

logger = logging.getLogger(__name__)

SERVICE_TEMPLATE = """[Unit]
Description=Sync open ports to iptables and the OCI security list
Wants=network-online.target
After=network-online.target docker.service

[Service]
Type=oneshot
ExecStart={exec_start}
"""

TIMER_TEMPLATE = """[Unit]
Description=Run {service_name} every {interval} minutes

[Timer]
OnCalendar=*:0/{interval}
Persistent=true

[Install]
WantedBy=timers.target
"""


def validate_interval(interval: int) -> int:
    """
    Check a sync interval in minutes.

    Raises:
        ConfigurationError: If the interval cannot be expressed as *:0/N
    """
    if not 1 <= interval <= 59:
        raise ConfigurationError(f"Sync interval must be between 1 and 59 minutes, got {interval}")
    return interval


class SchedulerService:
    """Installs and removes the systemd service/timer pair."""

    def __init__(self, runner: CommandRunner, config: Optional[Settings] = None):
        self.runner = runner
        self.config = config or default_settings
        self.systemd_dir = Path(self.config.SYSTEMD_DIR)

    @property
    def service_path(self) -> Path:
        return self.systemd_dir / f"{self.config.SERVICE_NAME}.service"

    @property
    def timer_path(self) -> Path:
        return self.systemd_dir / f"{self.config.SERVICE_NAME}.timer"

    def exec_start(self, security_list_id: Optional[str]) -> str:
        command = [sys.executable, "-m", "portsync.main", "sync", "--yes"]
        if security_list_id:
            command += ["--security-list", security_list_id]
        return " ".join(command)

    def render_units(self, security_list_id: Optional[str], interval: int):
        """Return (service, timer) unit file contents."""
        service = SERVICE_TEMPLATE.format(exec_start=self.exec_start(security_list_id))
        timer = TIMER_TEMPLATE.format(service_name=self.config.SERVICE_NAME, interval=interval)
        return service, timer

    def _systemctl(self, *args: str, check: bool = True):
        return self.runner.run(["systemctl", *args], check=check)

    def install_daemon(self, security_list_id: Optional[str] = None, interval: Optional[int] = None) -> None:
        """
        Write the service and timer units and start the timer.

        Args:
            security_list_id: Security list passed to every scheduled sync
            interval: Minutes between runs (defaults to SYNC_INTERVAL_MINUTES)

        Raises:
            ConfigurationError: If the interval is invalid or units cannot be written
            PortSyncError: If systemctl fails
        """
        interval = validate_interval(self.config.SYNC_INTERVAL_MINUTES if interval is None else interval)
        service, timer = self.render_units(security_list_id, interval)
        try:
            self.systemd_dir.mkdir(parents=True, exist_ok=True)
            self.service_path.write_text(service, encoding="utf-8")
            self.timer_path.write_text(timer, encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot write unit files to {self.systemd_dir}", cause=str(e))
        logger.info(f"Wrote {self.service_path} and {self.timer_path}")

        try:
            self._systemctl("daemon-reload")
            self._systemctl("enable", "--now", self.timer_path.name)
        except CommandError as e:
            raise PortSyncError(f"Cannot enable {self.timer_path.name}", cause=e.stderr)
        logger.info(f"Automatic sync enabled every {interval} minutes")

    def uninstall_daemon(self) -> bool:
        """
        Stop the timer and remove both units.

        Returns:
            True if any unit file was removed
        """
        try:
            self._systemctl("disable", "--now", self.timer_path.name, check=False)
        except CommandError as e:
            logger.warning(f"Cannot disable {self.timer_path.name}: {e}")
        removed = False
        for path in (self.timer_path, self.service_path):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise ConfigurationError(f"Cannot remove {path}", cause=str(e))
            removed = True
            logger.info(f"Removed {path}")
        try:
            self._systemctl("daemon-reload")
        except CommandError as e:
            logger.warning(f"systemctl daemon-reload failed: {e}")
        return removed

    def timer_status(self) -> str:
        """systemd's view of the timer ("active", "inactive", "not installed"...)."""
        if not self.timer_path.exists():
            return "not installed"
        try:
            result = self._systemctl("is-active", self.timer_path.name, check=False)
        except CommandError as e:
            return f"unknown ({e.stderr})"
        return result.stdout.strip() or "unknown"


@contextmanager
def stop_on_signals(stop_event: threading.Event):
    """
    Turn SIGINT/SIGTERM into stop_event for the duration of the block.

    A store already applying finishes; the reconciler checks the event before
    starting the next one. Previous handlers are restored on exit.
    """
    def _request_stop(signum, frame):
        logger.info(f"Received signal {signum}, stopping after the current step")
        stop_event.set()

    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield stop_event
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run_forever(cycle: Callable[[], Any], interval_minutes: int, stop_event: threading.Event) -> None:
    """
    Run cycles back to back, waiting interval_minutes between them.

    Cycles never overlap. SIGINT/SIGTERM set stop_event: a running cycle is
    allowed to finish its current store, and no new cycle starts.
    """
    interval_minutes = validate_interval(interval_minutes)

    with stop_on_signals(stop_event):
        logger.info(f"Sync loop started, interval {interval_minutes} minutes")
        while not stop_event.is_set():
            try:
                cycle()
            except PortSyncError as e:
                logger.error(f"Sync cycle failed: {e}")
            stop_event.wait(interval_minutes * 60)
    logger.info("Sync loop stopped")
