import time
import socket
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from session_runner.config import effective_settings as config
from session_runner.errors import LaunchError, SetupError
from session_runner.log import ESCALATE
from session_runner.protocol import MessageCode, PanelNodeRef, encode_control
from session_runner.supervisor import process_utils, relay, shutdown, startup
from session_runner.supervisor.router import MessageRouter
from session_runner.supervisor.state import SessionState
from session_runner.supervisor.tailer import DebugTailer

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass
class SessionConfig:
    """Invocation parameters of one session, merged with the runner settings."""
    ini_path: str
    test_node: Dict[str, Any]
    panel_node: PanelNodeRef
    session_id: str
    panel_node_connection: str
    client: str
    working_dir: str
    public_dir: str
    media_url: str
    log_path: str
    is_debug: bool = False
    keep_alive_interval_time: float = 0
    keep_alive_tolerance_time: float = 0
    values: str = ""
    worker_environ: Optional[str] = None
    max_idle_time: float = 3600
    max_exec_time: int = 3
    listen_host: str = "0.0.0.0"


class SessionSupervisor:
    """
    Runs one session end-to-end: binds the worker and submitter listeners,
    launches the worker and relays messages until the session ends.
    """

    def __init__(self, session_config: SessionConfig) -> None:
        self.config = session_config
        self.state = SessionState(
            panel_node=session_config.panel_node,
            session_id=session_config.session_id,
            max_idle_time=session_config.max_idle_time,
            keep_alive_interval_time=session_config.keep_alive_interval_time,
            keep_alive_tolerance_time=session_config.keep_alive_tolerance_time,
            is_debug=session_config.is_debug,
            log_path=session_config.log_path,
            relay_accept_timeout=config.RELAY_ACCEPT_TIMEOUT,
            relay_min_accept_timeout=config.RELAY_MIN_ACCEPT_TIMEOUT,
        )
        self.tailer = DebugTailer(self.state.worker_log_path)
        self.router = MessageRouter(self.state, self.tailer)
        self.worker_listener: Optional[socket.socket] = None
        self.submitter_listener: Optional[socket.socket] = None

    def run(self) -> int:
        """
        Supervises the session.

        :return: 0 when the session ended normally (terminal message or timeout),
            1 when the listeners could not be set up or the worker could not be launched.
        """
        log.info(f"Starting session {self.config.session_id}")
        try:
            self.worker_listener = startup.create_listener_socket(self.config.listen_host, "worker channel")
            self.submitter_listener = startup.create_listener_socket(self.config.listen_host, "submitter channel")
            self.state.worker_pid = process_utils.launch_worker(self._launch_params())
        except SetupError as e:
            self._report_failure(f"creating listener socket failed; prematurely closing process: {e}")
            return EXIT_FAILURE
        except LaunchError as e:
            self._report_failure(f"launching worker failed; prematurely closing process: {e}")
            return EXIT_FAILURE
        else:
            self.start_listener()
            log.info("closing process")
            return EXIT_OK
        finally:
            shutdown.close_listeners(self)
            shutdown.log_worker_status(self)

    def _launch_params(self) -> process_utils.LaunchParams:
        return process_utils.LaunchParams(
            ini_path=self.config.ini_path,
            panel_node_connection=self.config.panel_node_connection,
            test_node=startup.describe_test_node(self.config.test_node, self.worker_listener),
            submitter=startup.describe_submitter(self.submitter_listener),
            client=self.config.client,
            session_id=self.config.session_id,
            working_dir=self.config.working_dir,
            public_dir=self.config.public_dir,
            media_url=self.config.media_url,
            max_exec_time=self.config.max_exec_time,
            log_path=self.state.log_path,
            worker_log_path=self.state.worker_log_path,
            values=self.config.values or "",
            worker_environ=self.config.worker_environ,
        )

    def _report_failure(self, reason: str) -> None:
        relay.respond_to_panel_node(self.state, encode_control(MessageCode.ERROR), self.tailer)
        log.error(reason, extra=ESCALATE)

    def start_listener(self) -> None:
        """The poll loop. Returns when a message ends the session or a timeout stops the worker."""
        log.info("listener started")
        self.state.reset_timers()
        while True:
            if self.check_idle_timeout() or self.check_keep_alive_timeout():
                break

            conn = relay.accept_pending(self.worker_listener)
            if conn is None:
                time.sleep(config.POLL_INTERVAL)
                continue

            message = self._read_message(conn)
            if not message:
                continue

            if self.router.route(self.submitter_listener, message):
                break
        log.info("listener ended")

    def _read_message(self, conn: socket.socket) -> str:
        with conn:
            conn.settimeout(config.SOCKET_READ_TIMEOUT)
            try:
                with conn.makefile("rb") as stream:
                    data = stream.readline(config.READ_BUFFER_SIZE)
            except OSError as e:
                log.warning(f"Reading from worker channel connection failed: {e}")
                return ""
        return data.decode("utf-8", errors="replace").strip()

    def check_idle_timeout(self) -> bool:
        if not self.state.idle_timed_out():
            return False
        log.info("idle timeout reached")
        self.router.stop_process(self.submitter_listener)
        return True

    def check_keep_alive_timeout(self) -> bool:
        if not self.state.keep_alive_timed_out():
            return False
        log.info("keep alive timeout reached")
        self.router.stop_process(self.submitter_listener)
        return True
