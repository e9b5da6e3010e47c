"""
Filesystem change detection for the watched source tree.

A watchdog observer runs in the background and queues every matching event;
`ChangeWatcher.wait()` blocks on that queue. Events are not debounced: each
queued event is handed out by its own `wait()` call.
"""

import logging
import os
import queue
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .config import WATCH_EVENT_KINDS, parse_events

logger = logging.getLogger(__name__)

_EVENT_KINDS = {
    EVENT_TYPE_CREATED: "create",
    EVENT_TYPE_MODIFIED: "modify",
    EVENT_TYPE_DELETED: "delete",
    EVENT_TYPE_MOVED: "move",
}


@dataclass(frozen=True)
class WatchSpec:
    """What to watch: a root directory, recursion, and an event mask."""

    root: Path
    recursive: bool = True
    events: frozenset = frozenset(WATCH_EVENT_KINDS)

    def __post_init__(self):
        object.__setattr__(self, "root", Path(self.root))
        object.__setattr__(self, "events", parse_events(self.events))

    @classmethod
    def from_config(cls, config) -> "WatchSpec":
        return cls(
            root=config.watch_root,
            recursive=config.watch_recursive,
            events=config.watch_events,
        )


@dataclass(frozen=True)
class ChangeEvent:
    """Marker for one relevant change under the watched tree."""

    kind: str
    path: str
    detected_at: datetime = field(default_factory=datetime.now)


class ChangeEventHandler(FileSystemEventHandler):
    """Filters watchdog events by the mask and queues the matches."""

    def __init__(self, spec: WatchSpec, events: queue.Queue):
        super().__init__()
        self.spec = spec
        self.events = events

    def on_any_event(self, event: FileSystemEvent):
        kind = _EVENT_KINDS.get(event.event_type)
        if kind is None or kind not in self.spec.events:
            return
        # A directory "modified" event only echoes a change to one of its entries.
        if event.is_directory and kind == "modify":
            return
        self.events.put(ChangeEvent(kind=kind, path=os.fsdecode(event.src_path)))


class ChangeWatcher:
    """Blocks the caller until a relevant filesystem change occurs."""

    def __init__(self, observer_factory=Observer):
        self._observer_factory = observer_factory
        self._observer = None
        self._spec: Optional[WatchSpec] = None
        self._events: queue.Queue[ChangeEvent] = queue.Queue()

    def wait(self, spec: WatchSpec, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """
        Block until a change matching spec occurs.

        With no timeout this waits forever; with a timeout it returns None if
        nothing happened in time.
        """
        self._watch(spec)
        try:
            event = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        logger.debug(f"Change detected: {event.kind} {event.path}")
        return event

    def drain(self) -> int:
        """Discard queued events; returns how many were dropped."""
        dropped = 0
        while True:
            try:
                self._events.get_nowait()
            except queue.Empty:
                return dropped
            dropped += 1

    def pending(self) -> int:
        return self._events.qsize()

    def close(self):
        """Stop the background observer."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            self._spec = None

    def _watch(self, spec: WatchSpec):
        if self._spec == spec and self._observer is not None:
            return
        if not spec.root.is_dir():
            raise FileNotFoundError(f"Watch root not found: {spec.root}")

        self.close()
        observer = self._observer_factory()
        observer.schedule(ChangeEventHandler(spec, self._events), str(spec.root), recursive=spec.recursive)
        observer.start()
        self._observer = observer
        self._spec = spec
        logger.info(f"Watching {spec.root} for {', '.join(sorted(spec.events))}")
