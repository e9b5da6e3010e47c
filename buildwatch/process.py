"""
Process supervision for the managed server.

The supervisor owns at most one active server process, bound to a fixed
`host:port`. It starts the built artifact, stops it by signalling its own
process group, detects crashes, and swaps in a freshly built artifact after
a successful rebuild. Server stdout/stderr are copied into the event log.
"""

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

import psutil

from .errors import AddressInUse, SpawnFailure, StartupFailure
from .eventlog import start_capture_thread
from .ports import (
    BindAddress,
    describe_port_owner,
    find_free_port,
    http_health_check,
    is_port_free,
    wait_for_listen,
    wait_for_port_release,
)

logger = logging.getLogger(__name__)
server_logger = logging.getLogger("buildwatch.server")

BLUE_GREEN = "blue_green"
RESTART = "restart"


class ProcessState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


TERMINAL_STATES = (ProcessState.STOPPED, ProcessState.CRASHED)


@dataclass
class ProcessHandle:
    """The supervisor's record of one spawned server instance."""

    bind_address: BindAddress
    artifact: Path
    process: Optional[subprocess.Popen] = None
    started_at: datetime = field(default_factory=datetime.now)
    state: ProcessState = ProcessState.STARTING
    exit_code: Optional[int] = None
    readers: list[threading.Thread] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def is_alive(self) -> bool:
        """True while the process has not exited (poll() reaps a finished child)."""
        return self.process is not None and self.process.poll() is None

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "bind_address": str(self.bind_address),
            "artifact": str(self.artifact),
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": (datetime.now() - self.started_at).total_seconds(),
            "exit_code": self.exit_code,
        }


class ProcessSupervisor:
    """Owns zero or one active server process."""

    def __init__(
        self,
        artifact: Path,
        bind_address: BindAddress,
        builder=None,
        server_args: Optional[list[str]] = None,
        work_dir: Optional[Path] = None,
        stop_timeout: Optional[float] = None,
        port_release_timeout: Optional[float] = 10,
        swap_strategy: str = BLUE_GREEN,
        health_timeout: float = 10,
        health_path: str = "",
    ):
        self.artifact = Path(artifact)
        self.bind_address = bind_address
        self.builder = builder
        self.server_args = list(server_args or [])
        self.work_dir = work_dir
        self.stop_timeout = stop_timeout
        self.port_release_timeout = port_release_timeout
        self.swap_strategy = swap_strategy
        self.health_timeout = health_timeout
        self.health_path = health_path

        self._active: Optional[ProcessHandle] = None
        self._lock = threading.Lock()
        self.start_count = 0
        self.replace_count = 0

    @classmethod
    def from_config(cls, config, builder=None) -> "ProcessSupervisor":
        return cls(
            artifact=config.artifact_path,
            bind_address=config.bind_address,
            builder=builder,
            server_args=config.server_args,
            work_dir=config.work_dir,
            stop_timeout=config.stop_timeout,
            port_release_timeout=config.port_release_timeout,
            swap_strategy=config.swap_strategy,
            health_timeout=config.health_timeout,
            health_path=config.health_path,
        )

    @property
    def active(self) -> Optional[ProcessHandle]:
        with self._lock:
            return self._active

    def start(self, bind_address: Optional[BindAddress] = None, artifact: Optional[Path] = None) -> ProcessHandle:
        """
        Start the server and make it the active handle.

        If the artifact is missing, one synchronous rebuild is attempted
        before retrying. Raises StartupFailure if no server could be launched
        and AddressInUse if a server is already active or the address is
        still held.
        """
        address = bind_address or self.bind_address
        artifact = Path(artifact) if artifact else self.artifact

        self.check()
        with self._lock:
            active = self._active
        if active is not None and active.is_alive():
            raise AddressInUse(f"Server PID {active.pid} is already active on {active.bind_address}")

        if not is_port_free(address):
            logger.info(f"Waiting for {address} to be released...")
            if not wait_for_port_release(address, self.port_release_timeout):
                owner = describe_port_owner(address) or "another process"
                raise AddressInUse(f"{address} is still held by {owner}")

        logger.info("Starting server...")
        try:
            handle = self._spawn(artifact, address)
        except SpawnFailure as e:
            if artifact.exists() or self.builder is None:
                raise StartupFailure(f"Failed to start server: {e}") from e

            logger.error("Server binary not found. Building first...")
            result = self.builder.run()
            if not result.succeeded:
                raise StartupFailure("Failed to build server") from e
            try:
                handle = self._spawn(artifact, address)
            except SpawnFailure as retry_error:
                raise StartupFailure(f"Failed to start server: {retry_error}") from retry_error

        with self._lock:
            self._active = handle
            self.start_count += 1
        logger.info(f"Server started with PID: {handle.pid}")
        return handle

    def stop(self, handle: Optional[ProcessHandle] = None):
        """
        Terminate a server process and reap it.

        Sends SIGTERM to the handle's process group and waits for it to exit,
        escalating to SIGKILL after stop_timeout (no timeout by default).
        Signalling a process that is already gone is not an error.
        """
        with self._lock:
            handle = handle or self._active
        if handle is None:
            return
        if handle.state in TERMINAL_STATES or handle.process is None:
            self._release(handle, handle.state)
            return

        handle.state = ProcessState.STOPPING
        logger.info(f"Stopping server with PID: {handle.pid}")
        self._signal(handle, signal.SIGTERM)

        try:
            handle.process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Server PID {handle.pid} did not stop gracefully, forcing kill")
            self._signal(handle, signal.SIGKILL)
            handle.process.wait()

        handle.exit_code = handle.process.returncode
        for reader in handle.readers:
            reader.join(timeout=1)
        self._release(handle, ProcessState.STOPPED)
        logger.info(f"Server PID {handle.pid} stopped (exit code {handle.exit_code})")

    def replace(self, artifact: Optional[Path] = None) -> Optional[ProcessHandle]:
        """
        Swap the running server for one started from the new artifact.

        Returns the new active handle. Returns the old one if the candidate
        fails its health check, and None if the old server was stopped but no
        replacement could be started.
        """
        artifact = Path(artifact) if artifact else self.artifact
        self.check()
        with self._lock:
            self.replace_count += 1
            old = self._active

        if self.swap_strategy == BLUE_GREEN and old is not None:
            if not self._verify_candidate(artifact):
                logger.error(f"New build failed its health check, keeping server PID {old.pid}")
                return old

        if old is not None:
            self.stop(old)

        try:
            return self.start(artifact=artifact)
        except (StartupFailure, AddressInUse) as e:
            logger.error(f"Replacement failed, no server running: {e}")
            return None

    def check(self) -> Optional[ProcessHandle]:
        """Detect an active server that exited on its own; returns it if so."""
        with self._lock:
            handle = self._active
        if handle is None or handle.state != ProcessState.RUNNING or handle.is_alive():
            return None

        handle.exit_code = handle.process.returncode
        self._release(handle, ProcessState.CRASHED)
        logger.error(f"Server PID {handle.pid} exited unexpectedly with code {handle.exit_code}")
        return handle

    def shutdown(self):
        """Stop the active server, if any."""
        if self.active is not None:
            self.stop()

    def status(self) -> dict:
        """Snapshot of the active server with resource usage."""
        handle = self.active
        result = {
            "running": False,
            "bind_address": str(self.bind_address),
            "swap_strategy": self.swap_strategy,
            "starts": self.start_count,
            "replaces": self.replace_count,
            "server": None,
        }
        if handle is None:
            return result

        result["server"] = handle.to_dict()
        result["running"] = handle.is_alive()
        if result["running"]:
            try:
                proc = psutil.Process(handle.pid)
                result["server"]["cpu_percent"] = round(proc.cpu_percent(interval=0.1), 1)
                result["server"]["memory_mb"] = round(proc.memory_info().rss / 1024 / 1024, 1)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return result

    def _spawn(self, artifact: Path, address: BindAddress, label: str = "") -> ProcessHandle:
        handle = ProcessHandle(bind_address=address, artifact=artifact)
        cmd = [str(artifact), str(address), *self.server_args]
        try:
            handle.process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.work_dir,
                env=os.environ.copy(),
                start_new_session=True,  # Own process group, signalled via killpg
            )
        except OSError as e:
            handle.state = ProcessState.CRASHED
            logger.error(f"Error: could not launch {artifact}: {e}")
            raise SpawnFailure(str(e)) from e

        prefix = f"{label}: " if label else ""
        handle.readers = [
            start_capture_thread(handle.process.stdout, server_logger, logging.INFO, prefix),
            start_capture_thread(handle.process.stderr, server_logger, logging.WARNING, prefix),
        ]
        handle.state = ProcessState.RUNNING
        return handle

    def _signal(self, handle: ProcessHandle, sig: int):
        try:
            os.killpg(os.getpgid(handle.pid), sig)
        except ProcessLookupError:
            logger.info(f"Server PID {handle.pid} had already exited")

    def _release(self, handle: ProcessHandle, state: ProcessState):
        handle.state = state
        with self._lock:
            if self._active is handle:
                self._active = None

    def _verify_candidate(self, artifact: Path) -> bool:
        """Boot the new artifact on a spare port and check that it serves."""
        address = self.bind_address.with_port(find_free_port(self.bind_address.host))
        logger.info(f"Health-checking new build on {address}")
        try:
            candidate = self._spawn(artifact, address, label="candidate")
        except SpawnFailure:
            return False

        try:
            healthy = wait_for_listen(address, self.health_timeout, candidate.process)
            if healthy and self.health_path:
                healthy = http_health_check(address, self.health_path, self.health_timeout)
        finally:
            self.stop(candidate)

        if healthy:
            logger.info("New build passed its health check")
        return healthy
