"""
This module contains the default runtime settings for the session runner.
It defines the worker executable, timeouts, socket parameters, the pooled
execution pipe and logging options. Values can be overridden through the
environment (or a .env file) and, for whitelisted keys, through overrides.json.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
OVERRIDES_JSON_PATH = pathlib.Path(os.getenv("SESSION_RUNNER_OVERRIDES", str(BASE_DIR / "overrides.json")))

#* --- Worker Settings ---
WORKER_EXECUTABLE = os.getenv("WORKER_EXECUTABLE", "Rscript")
WORKER_FLAGS = os.getenv("WORKER_FLAGS", "--no-save --no-restore --quiet").split()
# Name of the environment variable that receives the --worker-environ file path
WORKER_ENVIRON_VARIABLE = os.getenv("WORKER_ENVIRON_VARIABLE", "R_ENVIRON")
MAX_EXECUTION_TIME = int(os.getenv("MAX_EXECUTION_TIME", "3"))  # seconds, passed to the worker
MAX_IDLE_TIME = int(os.getenv("MAX_IDLE_TIME", "3600"))  # seconds without client activity

#* --- Pooled Execution ---
# Hand jobs to a pre-forked worker pool instead of spawning (POSIX only)
SESSION_FORKING = os.getenv("SESSION_FORKING", "False").lower() in ('true', '1', 't')
FORKER_FIFO_PATH = pathlib.Path(os.getenv("FORKER_FIFO_PATH", "/usr/src/concerto/src/Concerto/TestBundle/Resources/R/forker.fifo"))

#* --- Socket Settings ---
LISTEN_HOST = os.getenv("LISTEN_HOST", "0.0.0.0")
POLL_INTERVAL = 0.1               # seconds between accept attempts
READ_BUFFER_SIZE = 8 * 1024 * 1024  # max bytes read from one worker-channel connection
PANEL_NODE_CONNECT_TIMEOUT = 5    # seconds
SOCKET_READ_TIMEOUT = 30          # seconds to wait for a message line after accept
# None: bounded by the remaining idle budget; 0: wait forever; >0: fixed ceiling
RELAY_ACCEPT_TIMEOUT = None
RELAY_MIN_ACCEPT_TIMEOUT = 10     # seconds, floor for the idle-budget bound

#* --- Logging ---
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOKI_ENABLED = os.getenv("LOKI_ENABLED", "False").lower() in ('true', '1', 't')
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")
LOKI_BATCH_SIZE = 20

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    # Worker
    "WORKER_EXECUTABLE", "WORKER_FLAGS", "WORKER_ENVIRON_VARIABLE",
    "MAX_EXECUTION_TIME", "MAX_IDLE_TIME",
    # Pooled execution
    "SESSION_FORKING", "FORKER_FIFO_PATH",
    # Sockets
    "LISTEN_HOST", "PANEL_NODE_CONNECT_TIMEOUT", "SOCKET_READ_TIMEOUT",
    "RELAY_ACCEPT_TIMEOUT", "RELAY_MIN_ACCEPT_TIMEOUT",
    # Logging
    "LOKI_ENABLED", "LOKI_URL", "LOKI_ORG_ID",
}
