from __future__ import annotations

import json
import queue
import socket
import threading
from typing import TYPE_CHECKING

import pytest

from session_runner.protocol import PanelNodeRef
from session_runner.supervisor import startup
from session_runner.supervisor.state import SessionState

if TYPE_CHECKING:
    from collections.abc import Iterator


class FakeClock:
    """Monotonic clock substitute that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class PanelNodeServer:
    """
    Loopback TCP server standing in for the panel node.
    Every accepted connection contributes one decoded JSON line to `messages`.
    """

    def __init__(self) -> None:
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(16)
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self.messages: queue.Queue[dict] = queue.Queue()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name="PanelNodeServer")
        self._thread.start()

    @property
    def ref(self) -> PanelNodeRef:
        return PanelNodeRef("127.0.0.1", self.port)

    @property
    def descriptor(self) -> dict:
        return {"sock_host": "127.0.0.1", "port": self.port}

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                conn.settimeout(2)
                with conn.makefile("rb") as stream:
                    line = stream.readline()
            if line.strip():
                self.messages.put(json.loads(line))

    def get(self, timeout: float = 3.0) -> dict:
        return self.messages.get(timeout=timeout)

    def assert_no_more(self, wait: float = 0.3) -> None:
        with pytest.raises(queue.Empty):
            self.messages.get(timeout=wait)

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2)
        self.sock.close()


class SubmitterClient:
    """
    Plays the worker's side of the submitter channel: connects once and
    collects the line the runner writes.
    """

    def __init__(self, host: str, port: int, timeout: float = 5.0) -> None:
        self.received: queue.Queue[dict] = queue.Queue()
        self._thread = threading.Thread(target=self._run, args=(host, port, timeout), daemon=True)
        self._thread.start()

    def _run(self, host: str, port: int, timeout: float) -> None:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            with sock.makefile("rb") as stream:
                line = stream.readline()
        if line.strip():
            self.received.put(json.loads(line))

    def get(self, timeout: float = 3.0) -> dict:
        return self.received.get(timeout=timeout)


def send_line(host: str, port: int, payload: dict) -> None:
    """Connects to a runner listener and writes one message line."""
    with socket.create_connection((host, port), timeout=5) as sock:
        sock.sendall((json.dumps(payload) + "\n").encode("utf-8"))


def unreachable_panel_node() -> PanelNodeRef:
    """A loopback address with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return PanelNodeRef("127.0.0.1", port)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def panel_node() -> Iterator[PanelNodeServer]:
    server = PanelNodeServer()
    try:
        yield server
    finally:
        server.close()


@pytest.fixture
def submitter_listener() -> Iterator[socket.socket]:
    sock = startup.create_listener_socket("127.0.0.1", "submitter channel")
    try:
        yield sock
    finally:
        sock.close()


@pytest.fixture
def session_state(panel_node, clock, tmp_path) -> SessionState:
    return SessionState(
        panel_node=panel_node.ref,
        session_id="42",
        max_idle_time=60,
        log_path=str(tmp_path / "session.log"),
        relay_accept_timeout=3,
        clock=clock,
    )
