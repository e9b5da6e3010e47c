"""
Runs the external build command.

The build tool is opaque: it is started in the project directory, its output
is copied into the event log, and only its exit status matters. A build that
cannot even be launched counts as an ordinary failure.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .eventlog import start_capture_thread

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("buildwatch.build.output")


@dataclass(frozen=True)
class BuildResult:
    """Outcome of one build attempt."""

    started_at: datetime
    finished_at: datetime
    exit_status: Optional[int]
    succeeded: bool
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "exit_status": self.exit_status,
            "succeeded": self.succeeded,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class BuildExecutor:
    """Invokes the build command synchronously."""

    def __init__(self, argv: list[str], work_dir: Path, timeout: Optional[float] = None):
        if not argv:
            raise ValueError("Build command is empty")
        self.argv = list(argv)
        self.work_dir = Path(work_dir)
        self.timeout = timeout

    def run(self) -> BuildResult:
        """Run the build to completion and report the outcome. Never raises."""
        started_at = datetime.now()
        logger.info(f"Running build: {' '.join(self.argv)}")

        try:
            process = subprocess.Popen(
                self.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=self.work_dir,
                env=os.environ.copy(),
            )
        except OSError as e:
            logger.error(f"Build tool could not be started: {e}")
            return BuildResult(
                started_at=started_at,
                finished_at=datetime.now(),
                exit_status=None,
                succeeded=False,
                error=str(e),
            )

        reader = start_capture_thread(process.stdout, output_logger)
        error = None
        try:
            exit_status = process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Build exceeded {self.timeout}s timeout, killing it")
            process.kill()
            process.wait()
            exit_status = None
            error = f"timed out after {self.timeout}s"
        # Grandchildren of a killed build may still hold the pipe open.
        reader.join(timeout=5 if error else None)

        finished_at = datetime.now()
        succeeded = exit_status == 0
        if succeeded:
            logger.info(f"Build succeeded in {(finished_at - started_at).total_seconds():.1f}s")
        elif exit_status is not None:
            logger.error(f"Build exited with status {exit_status}")
            error = f"exit status {exit_status}"

        return BuildResult(
            started_at=started_at,
            finished_at=finished_at,
            exit_status=exit_status,
            succeeded=succeeded,
            error=error,
        )
