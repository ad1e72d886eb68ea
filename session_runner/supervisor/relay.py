import json
import time
import socket
import logging
from typing import Optional

from session_runner.config import effective_settings as config
from session_runner.errors import RelayError, RelayTimeoutError
from session_runner.supervisor.state import SessionState
from session_runner.supervisor.tailer import DebugTailer

log = logging.getLogger(__name__)


def accept_pending(listener: socket.socket) -> Optional[socket.socket]:
    """
    Accepts one pending connection from a non-blocking listener.

    :return: The connection switched to blocking mode, or None if nobody is waiting.
    """
    try:
        conn, addr = listener.accept()
    except (BlockingIOError, InterruptedError):
        return None
    log.debug(f"Socket accepted from {addr[0]}:{addr[1]}")
    conn.setblocking(True)
    return conn


def respond_to_process(submitter_listener: socket.socket, message: str, timeout: Optional[float] = None) -> None:
    """
    Delivers one message to the worker through the submitter channel.

    Waits for the worker to connect, writes the message followed by a newline
    and closes that connection. The listener itself stays open.

    :param submitter_listener: The non-blocking submitter listener.
    :param message: The message text.
    :param timeout: Seconds to wait for the worker to connect, None to wait forever.
    :raises RelayTimeoutError: If no connection arrives within `timeout`.
    :raises RelayError: If writing to the connection fails.
    """
    log.info(message)
    deadline = None if timeout is None else time.monotonic() + timeout

    while True:
        conn = accept_pending(submitter_listener)
        if conn is not None:
            break
        if deadline is not None and time.monotonic() >= deadline:
            raise RelayTimeoutError(f"worker did not connect to the submitter channel within {timeout:.1f}s")
        time.sleep(config.POLL_INTERVAL)

    with conn:
        try:
            conn.sendall((message + "\n").encode("utf-8"))
        except OSError as e:
            raise RelayError(f"writing to submitter connection failed: {e}") from e
    log.debug("submitter ended")


def append_debug_data(message: str, tailer: DebugTailer) -> str:
    """Adds the worker output produced since the last call under a `debug` field."""
    if not tailer.exists():
        return message
    decoded = json.loads(message)
    decoded["debug"] = tailer.read_new()
    return json.dumps(decoded)


def respond_to_panel_node(state: SessionState, message: str, tailer: Optional[DebugTailer] = None) -> bool:
    """
    Sends one message to the panel node over a fresh connection.

    :param state: The session state holding the current panel node reference.
    :param message: The message text.
    :param tailer: Worker log tailer, used when the session runs in debug mode.
    :return: True if the message was written, False if the panel node was unreachable.
    """
    if state.is_debug and tailer is not None:
        message = append_debug_data(message, tailer)

    log.info(message)

    panel_node = state.panel_node
    try:
        with socket.create_connection((panel_node.host, panel_node.port), timeout=config.PANEL_NODE_CONNECT_TIMEOUT) as sock:
            sock.sendall((message + "\n").encode("utf-8"))
    except OSError as e:
        log.error(f"Connecting to panel node {panel_node.host}:{panel_node.port} failed, {e}")
        return False
    return True
