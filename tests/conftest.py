import io
import stat
import sys
import textwrap

import pytest

from buildwatch.config import Config
from buildwatch.eventlog import EventLog
from buildwatch.ports import BindAddress, find_free_port

SERVER_SCRIPT = """\
#!{python}
import signal
import socket
import sys

host, port = sys.argv[1].rsplit(":", 1)
sock = socket.socket()
sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
sock.bind((host, int(port)))
sock.listen()
print("listening on " + sys.argv[1], flush=True)
signal.signal(signal.SIGTERM, lambda *args: sys.exit(0))
while True:
    conn, _ = sock.accept()
    conn.close()
"""

CRASHING_SCRIPT = """\
#!{python}
import sys

print("cannot serve " + sys.argv[1], file=sys.stderr, flush=True)
sys.exit(3)
"""

STUBBORN_SCRIPT = """\
#!{python}
import signal
import time

signal.signal(signal.SIGTERM, signal.SIG_IGN)
while True:
    time.sleep(0.1)
"""


def write_executable(path, template):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(template).format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def server_artifact(tmp_path):
    return write_executable(tmp_path / "target" / "release" / "server", SERVER_SCRIPT)


@pytest.fixture
def crashing_artifact(tmp_path):
    return write_executable(tmp_path / "target" / "crashing-server", CRASHING_SCRIPT)


@pytest.fixture
def stubborn_artifact(tmp_path):
    return write_executable(tmp_path / "target" / "stubborn-server", STUBBORN_SCRIPT)


@pytest.fixture
def bind_address():
    return BindAddress("127.0.0.1", find_free_port())


@pytest.fixture
def event_log(tmp_path):
    log = EventLog(tmp_path / "monitor.log", stream=io.StringIO()).install()
    yield log
    log.close()


@pytest.fixture
def make_config(tmp_path):
    (tmp_path / "src").mkdir(exist_ok=True)

    def factory(**overrides):
        values = {
            "work_dir": tmp_path,
            "watch_root": "src",
            "log_file": "monitor.log",
            "build_command": f"{sys.executable} -c pass",
            "bind_address": "127.0.0.1:8080",
        }
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def log_messages(event_log):
    def read():
        return [entry.message for entry in event_log.recent(0)]

    return read
