import sys
import logging
from typing import Optional

from session_runner.config import effective_settings as config
from session_runner.log.handler import LokiHandler

# Pass as `extra=ESCALATE` to forward a record to the external logger.
ESCALATE = {"escalate": True}


class EscalationFilter(logging.Filter):
    """
    Lets through only records explicitly marked for escalation, so the
    external logger receives setup and launch failures and nothing else.
    """
    def filter(self, record):
        return getattr(record, "escalate", False)


class MainFormatter(logging.Formatter):
    """Formats records as `[timestamp] operation - message`."""

    def __init__(self) -> None:
        super().__init__(fmt='[%(asctime)s] %(funcName)s - %(message)s', datefmt=config.LOG_DATE_FORMAT)


def setup_logging(console_level: int = logging.INFO, session_id: Optional[str] = None) -> None:
    """
    Configures the root logger for the runner.
    This sets up a console handler and optionally a Loki handler,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param session_id: Session id attached to records shipped to Loki.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Loki Handler (conditional) ---
    if config.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(
                url=config.LOKI_URL,
                org_id=config.LOKI_ORG_ID,
                session_id=session_id,
                batch_size=config.LOKI_BATCH_SIZE,
            )
            loki_handler.setLevel(logging.ERROR)
            loki_handler.addFilter(EscalationFilter())
            loki_handler.setFormatter(MainFormatter())
            root_logger.addHandler(loki_handler)
            root_logger.debug(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
