"""
Configuration for the buildwatch supervisor.

Loads settings from environment variables with sensible defaults.
Relative paths are resolved against the project working directory.
"""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .ports import BindAddress

load_dotenv()

WATCH_EVENT_KINDS = ("create", "modify", "delete", "move")
SWAP_STRATEGIES = ("blue_green", "restart")


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_timeout(name: str, default: str = "") -> Optional[float]:
    """Read a timeout in seconds; empty or "none" means no timeout."""
    raw = os.environ.get(name, default).strip().lower()
    if raw in ("", "none", "0"):
        return None
    return float(raw)


def parse_timeout(value) -> Optional[float]:
    """Normalise a timeout value; None and non-positive numbers mean unbounded."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip().lower()
        if value in ("", "none"):
            return None
    value = float(value)
    return value if value > 0 else None


def parse_events(value) -> frozenset[str]:
    """Parse a comma-separated event mask like "create,modify"."""
    if isinstance(value, str):
        names = [part.strip().lower() for part in value.split(",") if part.strip()]
    else:
        names = [str(part).lower() for part in value]
    unknown = [name for name in names if name not in WATCH_EVENT_KINDS]
    if unknown:
        raise ValueError(f"Unknown watch event(s): {', '.join(unknown)}")
    if not names:
        raise ValueError("Watch event mask is empty")
    return frozenset(names)


@dataclass
class Config:
    """Buildwatch configuration."""

    # Project layout
    work_dir: Path = Path(os.environ.get("BUILDWATCH_WORK_DIR", os.getcwd()))
    watch_root: Path = Path(os.environ.get("BUILDWATCH_WATCH_ROOT", "src"))
    watch_recursive: bool = _env_bool("BUILDWATCH_WATCH_RECURSIVE", "true")
    watch_events: frozenset = os.environ.get(
        "BUILDWATCH_WATCH_EVENTS", ",".join(WATCH_EVENT_KINDS)
    )
    coalesce_events: bool = _env_bool("BUILDWATCH_COALESCE_EVENTS", "false")

    # Build
    build_command: str = os.environ.get("BUILDWATCH_BUILD_COMMAND", "cargo build --release")
    artifact_path: Path = Path(os.environ.get("BUILDWATCH_ARTIFACT", "target/release/server"))

    # Managed server
    bind_address: BindAddress = os.environ.get("BUILDWATCH_BIND", "0.0.0.0:8080")
    server_args: list[str] = field(
        default_factory=lambda: shlex.split(os.environ.get("BUILDWATCH_SERVER_ARGS", ""))
    )
    swap_strategy: str = os.environ.get("BUILDWATCH_SWAP_STRATEGY", "blue_green")
    health_timeout: float = float(os.environ.get("BUILDWATCH_HEALTH_TIMEOUT", "10"))
    health_path: str = os.environ.get("BUILDWATCH_HEALTH_PATH", "")

    # Logging
    log_file: Path = Path(os.environ.get("BUILDWATCH_LOG_FILE", "monitor.log"))
    recent_log_entries: int = int(os.environ.get("BUILDWATCH_RECENT_LOG_ENTRIES", "500"))

    # Timeouts (None = wait forever)
    build_timeout: Optional[float] = _env_timeout("BUILDWATCH_BUILD_TIMEOUT")
    stop_timeout: Optional[float] = _env_timeout("BUILDWATCH_STOP_TIMEOUT")
    watch_timeout: Optional[float] = _env_timeout("BUILDWATCH_WATCH_TIMEOUT")
    crash_check_interval: Optional[float] = _env_timeout("BUILDWATCH_CRASH_CHECK_INTERVAL", "5")
    port_release_timeout: Optional[float] = _env_timeout("BUILDWATCH_PORT_RELEASE_TIMEOUT", "10")

    # Status API (port 0 disables it)
    status_host: str = os.environ.get("BUILDWATCH_STATUS_HOST", "127.0.0.1")
    status_port: int = int(os.environ.get("BUILDWATCH_STATUS_PORT", "0"))

    def __post_init__(self):
        """Validate values and resolve paths against the working directory."""
        self.work_dir = Path(self.work_dir).expanduser().resolve()
        self.watch_root = self._resolve(self.watch_root)
        self.artifact_path = self._resolve(self.artifact_path)
        self.log_file = self._resolve(self.log_file)

        self.watch_events = parse_events(self.watch_events)
        if not isinstance(self.bind_address, BindAddress):
            self.bind_address = BindAddress.parse(self.bind_address)

        if self.swap_strategy not in SWAP_STRATEGIES:
            raise ValueError(
                f"Unknown swap strategy '{self.swap_strategy}', "
                f"expected one of: {', '.join(SWAP_STRATEGIES)}"
            )

        self.build_timeout = parse_timeout(self.build_timeout)
        self.stop_timeout = parse_timeout(self.stop_timeout)
        self.watch_timeout = parse_timeout(self.watch_timeout)
        self.crash_check_interval = parse_timeout(self.crash_check_interval)
        self.port_release_timeout = parse_timeout(self.port_release_timeout)

        self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path) -> Path:
        path = Path(path).expanduser()
        if not path.is_absolute():
            path = self.work_dir / path
        return path

    @property
    def build_argv(self) -> list[str]:
        return shlex.split(self.build_command)


def load_config(**overrides) -> Config:
    """Build a Config from the environment, with explicit overrides applied."""
    return Config(**overrides)
