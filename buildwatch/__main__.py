"""
Entry point for running buildwatch via `python -m buildwatch`.

Builds, starts the managed server, and supervises it until terminated.
"""

import signal
import sys

from .config import load_config
from .eventlog import EventLog
from .loop import SupervisorLoop


def _interrupt(signum, frame):
    raise KeyboardInterrupt


def main() -> int:
    """Run the supervisor; returns the process exit status."""
    try:
        config = load_config()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    event_log = EventLog(config.log_file, recent=config.recent_log_entries).install()
    supervisor_loop = SupervisorLoop.from_config(config)

    status_server = None
    if config.status_port:
        from .api import serve_status

        status_server = serve_status(supervisor_loop, event_log, config.status_host, config.status_port)

    # The service manager stops us with SIGTERM; unwind like Ctrl+C.
    signal.signal(signal.SIGTERM, _interrupt)
    try:
        return supervisor_loop.run()
    except KeyboardInterrupt:
        return 0
    finally:
        supervisor_loop.shutdown()
        if status_server is not None:
            status_server.stop()
        event_log.close()


if __name__ == "__main__":
    sys.exit(main())
