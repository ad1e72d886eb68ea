import json
import socket
import logging
from typing import Any, Dict, Tuple

from session_runner.errors import SetupError

log = logging.getLogger(__name__)


def create_listener_socket(host: str, name: str) -> socket.socket:
    """
    Creates a non-blocking TCP listener on an OS-assigned port.

    :param host: The address to bind to.
    :param name: Channel name used in log messages.
    :return: The listening socket.
    :raises SetupError: If the socket cannot be created, bound or put into listening mode.
    """
    log.debug(f"Creating {name} listener on {host}")
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as e:
        log.error(f"socket() failed, {name} listener socket, {e}")
        raise SetupError(f"could not create {name} listener: {e}") from e

    try:
        sock.bind((host, 0))
        sock.listen(socket.SOMAXCONN)
    except OSError as e:
        log.error(f"bind()/listen() failed, {name} listener socket, {e}")
        sock.close()
        raise SetupError(f"could not bind {name} listener on {host}: {e}") from e

    sock.setblocking(False)
    return sock


def listener_address(sock: socket.socket) -> Tuple[str, int]:
    host, port = sock.getsockname()[:2]
    return host, port


def describe_test_node(test_node: Dict[str, Any], worker_listener: socket.socket) -> str:
    """Returns the test node descriptor with the worker-channel port filled in."""
    _, port = listener_address(worker_listener)
    return json.dumps({**test_node, "port": port})


def describe_submitter(submitter_listener: socket.socket) -> str:
    host, port = listener_address(submitter_listener)
    return json.dumps({"host": host, "port": port})
