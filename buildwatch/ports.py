"""
Helpers for the managed server's network address.

Parses `host:port` bind addresses, checks whether a port is free, waits for
a stopped server to release its port, and probes a freshly started server.
"""

import logging
import socket
import time
from typing import NamedTuple, Optional

import httpx
import psutil

logger = logging.getLogger(__name__)

_WILDCARD_HOSTS = {"0.0.0.0": "127.0.0.1", "::": "::1", "": "127.0.0.1"}


class BindAddress(NamedTuple):
    """A `host:port` address handed to the managed server."""

    host: str
    port: int

    @classmethod
    def parse(cls, value: str) -> "BindAddress":
        """Parse "host:port" or "[v6host]:port"."""
        value = value.strip()
        if value.startswith("["):
            host, sep, port = value[1:].partition("]:")
        else:
            host, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"Invalid bind address '{value}', expected host:port")
        port_number = int(port)
        if not 0 < port_number < 65536:
            raise ValueError(f"Port out of range in bind address '{value}'")
        return cls(host, port_number)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @property
    def family(self) -> int:
        return socket.AF_INET6 if ":" in self.host else socket.AF_INET

    @property
    def connect_host(self) -> str:
        """Host to dial when probing; wildcard binds are probed on loopback."""
        return _WILDCARD_HOSTS.get(self.host, self.host)

    def with_port(self, port: int) -> "BindAddress":
        return self._replace(port=port)


def is_port_free(address: BindAddress) -> bool:
    """Return True if nothing is listening on the address."""
    with socket.socket(address.family, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((address.host, address.port))
        except OSError:
            return False
    return True


def wait_for_port_release(
    address: BindAddress,
    timeout: Optional[float],
    initial_delay: float = 0.05,
    max_delay: float = 1.0,
) -> bool:
    """
    Poll with exponential backoff until the address can be bound.

    A timeout of None waits forever. Returns False if the port is still held
    when the timeout expires.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    delay = initial_delay
    while True:
        if is_port_free(address):
            return True
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(delay, remaining))
        else:
            time.sleep(delay)
        delay = min(delay * 2, max_delay)


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused ephemeral port on host."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def wait_for_listen(address: BindAddress, timeout: float, process=None) -> bool:
    """
    Wait until something accepts TCP connections on the address.

    If a subprocess.Popen is given, stop early once it has exited.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if process is not None and process.poll() is not None:
            return False
        try:
            with socket.create_connection((address.connect_host, address.port), timeout=0.5):
                return True
        except OSError:
            time.sleep(0.1)
    return False


def http_health_check(address: BindAddress, path: str, timeout: float) -> bool:
    """GET the health path; any status below 500 counts as healthy."""
    host = address.connect_host
    if ":" in host:
        host = f"[{host}]"
    url = f"http://{host}:{address.port}/{path.lstrip('/')}"
    try:
        response = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        logger.warning(f"Health check {url} failed: {e}")
        return False
    if response.status_code >= 500:
        logger.warning(f"Health check {url} returned {response.status_code}")
        return False
    return True


def describe_port_owner(address: BindAddress) -> Optional[str]:
    """Best-effort description of the process listening on the port."""
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        return None

    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        if conn.laddr.port != address.port:
            continue
        if conn.pid is None:
            return "unknown process"
        try:
            return f"pid {conn.pid} ({psutil.Process(conn.pid).name()})"
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return f"pid {conn.pid}"
    return None
