import queue

import pytest
from pytest_mock import MockerFixture
from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from buildwatch.watcher import ChangeEvent, ChangeEventHandler, ChangeWatcher, WatchSpec


@pytest.fixture
def watch_root(tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    return root


@pytest.fixture
def watcher():
    watcher = ChangeWatcher()
    yield watcher
    watcher.close()


def _dispatch(spec, *events):
    found = queue.Queue()
    handler = ChangeEventHandler(spec, found)
    for event in events:
        handler.dispatch(event)
    return [found.get_nowait() for _ in range(found.qsize())]


def test_handler_maps_event_kinds(watch_root):
    spec = WatchSpec(watch_root)

    events = _dispatch(
        spec,
        FileCreatedEvent(str(watch_root / "main.rs")),
        FileModifiedEvent(str(watch_root / "main.rs")),
        FileDeletedEvent(str(watch_root / "old.rs")),
        FileMovedEvent(str(watch_root / "a.rs"), str(watch_root / "b.rs")),
    )

    assert [event.kind for event in events] == ["create", "modify", "delete", "move"]
    assert events[0].path == str(watch_root / "main.rs")


def test_handler_applies_event_mask(watch_root):
    spec = WatchSpec(watch_root, events="modify")

    events = _dispatch(
        spec,
        FileCreatedEvent(str(watch_root / "new.rs")),
        FileModifiedEvent(str(watch_root / "lib.rs")),
        FileClosedEvent(str(watch_root / "lib.rs")),
    )

    assert [event.kind for event in events] == ["modify"]


def test_handler_skips_directory_modified_echo(watch_root):
    events = _dispatch(
        WatchSpec(watch_root),
        DirModifiedEvent(str(watch_root)),
        DirCreatedEvent(str(watch_root / "handlers")),
    )

    assert [event.kind for event in events] == ["create"]


def test_watch_spec_is_immutable(watch_root):
    spec = WatchSpec(watch_root, recursive=False, events=["create", "delete"])

    assert spec.events == frozenset({"create", "delete"})
    with pytest.raises(AttributeError):
        spec.recursive = True


def test_wait_returns_on_real_change(watcher, watch_root):
    assert watcher.wait(WatchSpec(watch_root), timeout=0.2) is None

    (watch_root / "nested").mkdir()
    (watch_root / "nested" / "main.rs").write_text("fn main() {}\n")

    event = watcher.wait(WatchSpec(watch_root), timeout=5)
    assert isinstance(event, ChangeEvent)
    assert event.kind in ("create", "modify")


def test_wait_times_out_without_changes(watcher, watch_root):
    assert watcher.wait(WatchSpec(watch_root), timeout=0.2) is None


def test_missing_root_raises(watcher, tmp_path):
    with pytest.raises(FileNotFoundError):
        watcher.wait(WatchSpec(tmp_path / "missing"), timeout=0.1)


def test_events_are_not_coalesced(watch_root, mocker: MockerFixture):
    observer = mocker.Mock()
    watcher = ChangeWatcher(observer_factory=lambda: observer)
    spec = WatchSpec(watch_root)
    watcher.wait(spec, timeout=0.01)
    handler = observer.schedule.call_args.args[0]

    for name in ("a.rs", "b.rs", "c.rs"):
        handler.dispatch(FileModifiedEvent(str(watch_root / name)))

    assert watcher.pending() == 3
    assert watcher.wait(spec).path.endswith("a.rs")
    assert watcher.drain() == 2
    assert watcher.pending() == 0
    observer.schedule.assert_called_once_with(handler, str(watch_root), recursive=True)
    observer.start.assert_called_once()


def test_close_stops_observer(watch_root, mocker: MockerFixture):
    observer = mocker.Mock()
    watcher = ChangeWatcher(observer_factory=lambda: observer)
    watcher.wait(WatchSpec(watch_root), timeout=0.01)

    watcher.close()

    observer.stop.assert_called_once()
    observer.join.assert_called_once()
