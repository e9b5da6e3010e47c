"""
The build-watch-serve control loop.

Builds once and starts the server, then forever: wait for a change under the
watched tree, rebuild, and swap in the new server only if the build
succeeded. A failed rebuild leaves the running server untouched.
"""

import logging
import time
from typing import Optional

from .build import BuildExecutor, BuildResult
from .errors import AddressInUse, BuildFailure, StartupFailure
from .process import ProcessSupervisor
from .watcher import ChangeEvent, ChangeWatcher, WatchSpec

logger = logging.getLogger(__name__)


class SupervisorLoop:
    """Orchestrates builder, watcher and process supervisor on one thread."""

    def __init__(
        self,
        builder: BuildExecutor,
        supervisor: ProcessSupervisor,
        watcher: ChangeWatcher,
        spec: WatchSpec,
        watch_timeout: Optional[float] = None,
        coalesce_events: bool = False,
        crash_check_interval: Optional[float] = None,
    ):
        self.builder = builder
        self.supervisor = supervisor
        self.watcher = watcher
        self.spec = spec
        self.watch_timeout = watch_timeout
        self.coalesce_events = coalesce_events
        self.crash_check_interval = crash_check_interval

        self.last_build: Optional[BuildResult] = None
        self.build_count = 0
        self.failed_build_count = 0
        self.change_count = 0

    @classmethod
    def from_config(cls, config) -> "SupervisorLoop":
        builder = BuildExecutor(config.build_argv, config.work_dir, timeout=config.build_timeout)
        return cls(
            builder=builder,
            supervisor=ProcessSupervisor.from_config(config, builder=builder),
            watcher=ChangeWatcher(),
            spec=WatchSpec.from_config(config),
            watch_timeout=config.watch_timeout,
            coalesce_events=config.coalesce_events,
            crash_check_interval=config.crash_check_interval,
        )

    def run(self, max_cycles: Optional[int] = None) -> int:
        """
        Run the supervisor. Returns the process exit status.

        Only a failed initial build or initial start ends the run early (with a
        non-zero status); otherwise it loops until interrupted or until
        max_cycles change cycles have been handled.
        """
        try:
            self.startup()
        except (BuildFailure, StartupFailure, AddressInUse) as e:
            logger.error(f"Supervisor cannot start: {e}")
            return e.exit_code

        cycles = 0
        try:
            while max_cycles is None or cycles < max_cycles:
                self.cycle()
                cycles += 1
        except KeyboardInterrupt:
            logger.info("Supervisor interrupted")
        return 0

    def startup(self):
        """Initial build and start; both are fatal on failure."""
        if not self.spec.root.is_dir():
            raise StartupFailure(f"Watch root not found: {self.spec.root}")
        logger.info("Initial build...")
        result = self._build()
        if not result.succeeded:
            logger.error("Initial build failed")
            raise BuildFailure("Initial build failed", result)
        self.supervisor.start()

    def cycle(self) -> Optional[ChangeEvent]:
        """Wait for one change and handle it. Returns the event, or None on timeout."""
        logger.info("Monitoring for changes...")
        event = self._wait_for_change()
        if event is None:
            return None

        self.change_count += 1
        if self.coalesce_events:
            dropped = self.watcher.drain()
            if dropped:
                logger.info(f"Coalesced {dropped} further change(s) into this rebuild")

        logger.info("Change detected, rebuilding...")
        result = self._build()
        if result.succeeded:
            logger.info("Build successful, restarting server...")
            self.supervisor.replace()
        else:
            logger.error("Build failed, server not restarted")
        return event

    def _wait_for_change(self) -> Optional[ChangeEvent]:
        """
        Block until a change arrives, checking the server every crash_check_interval.

        Returns None once watch_timeout has elapsed without a change.
        """
        deadline = None if self.watch_timeout is None else time.monotonic() + self.watch_timeout
        while True:
            timeout = self.crash_check_interval
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0)
                timeout = remaining if timeout is None else min(timeout, remaining)

            event = self.watcher.wait(self.spec, timeout=timeout)
            if event is not None:
                return event
            self.supervisor.check()
            if deadline is not None and time.monotonic() >= deadline:
                return None

    def shutdown(self):
        """Stop the managed server and the watcher."""
        logger.info("Shutting down supervisor...")
        self.supervisor.shutdown()
        self.watcher.close()

    def status(self) -> dict:
        return {
            "changes": self.change_count,
            "builds": self.build_count,
            "failed_builds": self.failed_build_count,
            "last_build": self.last_build.to_dict() if self.last_build else None,
            "watch_root": str(self.spec.root),
            **self.supervisor.status(),
        }

    def _build(self) -> BuildResult:
        result = self.builder.run()
        self.last_build = result
        self.build_count += 1
        if not result.succeeded:
            self.failed_build_count += 1
        return result
