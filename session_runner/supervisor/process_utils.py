import os
import json
import shlex
import psutil
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from session_runner.config import effective_settings as config
from session_runner.errors import LaunchError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaunchParams:
    """Everything the worker needs to join the session."""
    ini_path: str
    panel_node_connection: str
    test_node: str
    submitter: str
    client: str
    session_id: str
    working_dir: str
    public_dir: str
    media_url: str
    max_exec_time: int
    log_path: str
    worker_log_path: str
    values: str = ""
    worker_environ: Optional[str] = None


@dataclass(frozen=True)
class ExecSpec:
    """A shell command line plus the environment variables added for the worker."""
    command: str
    env: Dict[str, str] = field(default_factory=dict)


#* --- Process Status ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)

def get_process_status(pid: int) -> str:
    """Gets a string representation of a process status."""
    try:
        if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
            return "zombie"
        return "running"
    except psutil.NoSuchProcess:
        return "stopped"
    except psutil.Error:
        return "unknown"


#* --- Command Construction ---
class CommandBuilder:
    """Builds the platform-specific shell command that starts the worker detached."""

    def __init__(self, executable: str = None, flags: List[str] = None, environ_variable: str = None) -> None:
        self.executable = executable or config.WORKER_EXECUTABLE
        self.flags = list(config.WORKER_FLAGS if flags is None else flags)
        self.environ_variable = environ_variable or config.WORKER_ENVIRON_VARIABLE

    def build(self, params: LaunchParams) -> ExecSpec:
        raise NotImplementedError

    def _env(self, params: LaunchParams) -> Dict[str, str]:
        if params.worker_environ:
            return {self.environ_variable: params.worker_environ}
        return {}


class PosixCommandBuilder(CommandBuilder):
    """
    `nohup <worker> <args> >> <log> > <worker log> 2>&1 & echo $!`

    Every argument goes through shlex.quote, so quotes or metacharacters in
    paths and JSON descriptors stay inside their argument.
    """

    def build(self, params: LaunchParams) -> ExecSpec:
        args = [
            self.executable, *self.flags,
            params.ini_path,
            params.panel_node_connection,
            params.test_node,
            params.submitter,
            params.client,
            str(params.session_id),
            params.working_dir,
            params.public_dir,
            params.media_url,
            str(params.max_exec_time),
            params.values,
        ]
        command = (
            "nohup " + " ".join(shlex.quote(arg) for arg in args)
            + f" >> {shlex.quote(params.log_path)}"
            + f" > {shlex.quote(params.worker_log_path)}"
            + " 2>&1 & echo $!"
        )
        return ExecSpec(command=command, env=self._env(params))


def escape_windows_arg(arg: str) -> str:
    """Escapes an argument placed inside double quotes of a `cmd /C` line."""
    return arg.replace('"', '\\"').replace("(", "^(").replace(")", "^)")


class WindowsCommandBuilder(CommandBuilder):
    """`start cmd /C "..."`, opening the worker in a detached console window."""

    def build(self, params: LaunchParams) -> ExecSpec:
        def q(arg: str) -> str:
            return f'"{escape_windows_arg(arg)}"'

        parts = [
            q(self.executable), *self.flags,
            q(params.ini_path),
            q(params.panel_node_connection),
            q(params.test_node),
            q(params.submitter),
            q(params.client),
            str(params.session_id),
            q(params.working_dir),
            q(params.public_dir),
            params.media_url,
            str(params.max_exec_time),
            q(params.values) if params.values else '"{}"',
            ">>", q(params.log_path),
            ">", q(params.worker_log_path),
            "2>&1",
        ]
        return ExecSpec(command='start cmd /C "' + " ".join(parts) + '"', env=self._env(params))


def get_command_builder(platform: str = None) -> CommandBuilder:
    """Returns the command builder for `platform` (an os.name value, default: current)."""
    if (platform or os.name) == "posix":
        return PosixCommandBuilder()
    return WindowsCommandBuilder()


#* --- Process Creation ---
def _get_popen_kwargs() -> Dict[str, Any]:
    """Returns platform-specific keyword arguments for subprocess.run."""
    if os.name == "posix":
        # Keep the worker out of the runner's process group
        return {"start_new_session": True}
    return {}

def _parse_background_pid(stdout: str) -> Optional[int]:
    lines = stdout.strip().splitlines()
    if not lines:
        return None
    try:
        return int(lines[-1].strip())
    except ValueError:
        return None

def run_standalone(spec: ExecSpec) -> Optional[int]:
    """
    Runs the launch command and waits for the launching shell to return.

    :param spec: The command to run.
    :return: PID of the backgrounded worker when the shell reported one.
    :raises LaunchError: If the shell cannot be started or exits with a non-zero status.
    """
    log.info(spec.command)
    env = dict(os.environ)
    if spec.env:
        log.info(f"setting worker environment: {spec.env}")
        env.update(spec.env)

    try:
        result = subprocess.run(
            spec.command, shell=True, env=env, stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, **_get_popen_kwargs()
        )
    except OSError as e:
        log.error(f"Failed to start worker: {e}")
        raise LaunchError(f"could not run launch command: {e}") from e

    if result.returncode != 0:
        log.error(f"Launch command exited with status {result.returncode}: {result.stderr.strip()}")
        raise LaunchError(f"launch command exited with status {result.returncode}")

    pid = _parse_background_pid(result.stdout)
    if pid is not None:
        if pid_exists(pid):
            log.info(f"Worker started with PID: {pid}")
        else:
            log.warning(f"Worker PID {pid} is no longer running right after launch.")
    return pid


#* --- Pooled Execution ---
def build_job_descriptor(params: LaunchParams) -> Dict[str, Any]:
    return {
        "workingDir": os.path.realpath(params.working_dir),
        "maxExecTime": params.max_exec_time,
        "testNode": json.loads(params.test_node),
        "client": json.loads(params.client),
        "submitter": json.loads(params.submitter),
        "connection": json.loads(params.panel_node_connection),
        "sessionId": params.session_id,
        "workerLogPath": params.worker_log_path,
    }

def write_job_descriptor(fifo_path: str, descriptor: Dict[str, Any]) -> None:
    """
    Writes one job descriptor line into the worker pool's named pipe.

    The pipe must already exist; it is never created here.

    :param fifo_path: Path of the named pipe.
    :param descriptor: The job descriptor.
    :raises LaunchError: If the pipe cannot be opened or the line is not written in full.
    """
    buffer = (json.dumps(descriptor) + "\n").encode("utf-8")
    try:
        fd = os.open(fifo_path, os.O_WRONLY)
    except OSError as e:
        log.error(f"open() failed for worker pool pipe '{fifo_path}': {e}")
        raise LaunchError(f"could not open worker pool pipe: {e}") from e

    try:
        sent = os.write(fd, buffer)
    except OSError as e:
        log.error(f"write() failed for worker pool pipe '{fifo_path}': {e}")
        raise LaunchError(f"could not write to worker pool pipe: {e}") from e
    finally:
        os.close(fd)

    if sent != len(buffer):
        log.error(f"write() failed, sent only {sent}/{len(buffer)}")
        raise LaunchError(f"short write to worker pool pipe: {sent}/{len(buffer)} bytes")


def launch_worker(params: LaunchParams) -> Optional[int]:
    """
    Starts the session's worker, either through the worker pool or as a standalone process.

    :param params: The worker parameters.
    :return: The worker PID if known.
    :raises LaunchError: If the worker could not be started.
    """
    if os.name == "posix" and config.SESSION_FORKING:
        log.info(f"Handing session {params.session_id} to the worker pool via {config.FORKER_FIFO_PATH}")
        write_job_descriptor(str(config.FORKER_FIFO_PATH), build_job_descriptor(params))
        return None

    spec = get_command_builder().build(params)
    return run_standalone(spec)
