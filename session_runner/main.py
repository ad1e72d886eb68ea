import sys
import json
import logging
import argparse
import setproctitle
from typing import Any, Dict, List, Optional

from session_runner.config import effective_settings as config
from session_runner.errors import ProtocolError
from session_runner.log.setup import setup_logging
from session_runner.protocol import PanelNodeRef
from session_runner.supervisor import SessionConfig, SessionSupervisor

log = logging.getLogger(__name__)


def _json_object(value: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}")
    if not isinstance(decoded, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return decoded

def _json_text(value: str) -> str:
    """Validates a JSON descriptor that is passed on to the worker untouched."""
    _json_object(value)
    return value

def _panel_node(value: str) -> PanelNodeRef:
    try:
        return PanelNodeRef.from_descriptor(_json_object(value))
    except ProtocolError as e:
        raise argparse.ArgumentTypeError(str(e))

def _debug_flag(value: str) -> bool:
    if value not in ("0", "1"):
        raise argparse.ArgumentTypeError("debug flag must be 0 or 1")
    return value == "1"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="session-runner", description="Starts a new worker session.")
    parser.add_argument("ini_path", help="initialization file path")
    parser.add_argument("test_node", type=_json_object, help="test node json serialized data")
    parser.add_argument("panel_node", type=_panel_node, help="panel node json serialized data")
    parser.add_argument("test_session_id", help="test session id")
    parser.add_argument("panel_node_connection", type=_json_text, help="panel node connection json serialized data")
    parser.add_argument("client", type=_json_text, help="client json serialized data")
    parser.add_argument("working_directory", help="session working directory")
    parser.add_argument("public_directory", help="public directory")
    parser.add_argument("media_url", help="media URL")
    parser.add_argument("log_path", help="log path")
    parser.add_argument("debug", type=_debug_flag, help="debug test execution (0/1)")
    parser.add_argument("keep_alive_interval_time", type=float, help="keep-alive interval time, 0 disables")
    parser.add_argument("keep_alive_tolerance_time", type=float, help="keep-alive tolerance time")
    parser.add_argument("submit", nargs="?", default="", help="submitted variables")
    parser.add_argument("-renv", "--worker-environ", default=None, help="environment file path for the worker")
    parser.add_argument("--verbose", action="store_true", help="log debug messages to the console")
    return parser


def build_session_config(args: argparse.Namespace) -> SessionConfig:
    """Combines parsed arguments with the effective runner settings."""
    return SessionConfig(
        ini_path=args.ini_path,
        test_node=args.test_node,
        panel_node=args.panel_node,
        session_id=args.test_session_id,
        panel_node_connection=args.panel_node_connection,
        client=args.client,
        working_dir=args.working_directory,
        public_dir=args.public_directory,
        media_url=args.media_url,
        log_path=args.log_path,
        is_debug=args.debug,
        keep_alive_interval_time=args.keep_alive_interval_time,
        keep_alive_tolerance_time=args.keep_alive_tolerance_time,
        values=args.submit or "",
        worker_environ=args.worker_environ,
        max_idle_time=config.MAX_IDLE_TIME,
        max_exec_time=config.MAX_EXECUTION_TIME,
        listen_host=config.LISTEN_HOST,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """The entry point of the session runner. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    setproctitle.setproctitle(f"Session Runner - {args.test_session_id}")
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, session_id=args.test_session_id)

    supervisor = SessionSupervisor(build_session_config(args))
    try:
        return supervisor.run()
    except KeyboardInterrupt:
        log.warning("Session runner interrupted by user.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
