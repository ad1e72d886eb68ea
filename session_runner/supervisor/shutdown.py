import logging
from typing import TYPE_CHECKING

from session_runner.supervisor import process_utils

if TYPE_CHECKING:
    from .supervisor import SessionSupervisor

log = logging.getLogger(__name__)


def close_listeners(supervisor: "SessionSupervisor") -> None:
    """
    Closes both listener sockets. Safe to call more than once; each socket is
    closed the first time only.

    :param supervisor: The SessionSupervisor instance.
    """
    for attr in ("submitter_listener", "worker_listener"):
        sock = getattr(supervisor, attr)
        if sock is None:
            continue
        setattr(supervisor, attr, None)
        try:
            sock.close()
        except OSError as e:
            log.warning(f"Closing {attr} failed: {e}")


def log_worker_status(supervisor: "SessionSupervisor") -> None:
    """Logs the last known status of a standalone worker."""
    pid = supervisor.state.worker_pid
    if pid is None:
        return
    log.info(f"Worker (PID {pid}) is {process_utils.get_process_status(pid)} at session end.")
