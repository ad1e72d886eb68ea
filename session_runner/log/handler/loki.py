import sys
import socket
import logging
import requests
from collections import deque
from typing import Any, Deque, Dict, Optional


class LokiHandler(logging.Handler):
    """
    A logging handler that pushes records to a Grafana Loki instance in batches.

    The runner is single-threaded, so the buffer is flushed synchronously when
    it reaches `batch_size`, on `flush()` and when the handler is closed at
    interpreter shutdown.
    """
    def __init__(self, url: str, org_id: Optional[str] = None, session_id: Optional[str] = None, batch_size: int = 20):
        """
        Initializes the Loki handler.

        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID for Loki (e.g., 'X-Scope-OrgID').
        :param session_id: Optional session id added as a stream label.
        :param batch_size: Number of buffered records that triggers a push.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.session_id = session_id
        self.batch_size = batch_size
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.hostname = socket.gethostname() or 'unknown-host'

    def emit(self, record: logging.LogRecord) -> None:
        """
        Formats a log record and adds it to the internal buffer.
        If the buffer reaches the batch size, it triggers a flush.

        :param record: The log record to be processed.
        """
        try:
            labels = {
                "job": "session-runner",
                "level": record.levelname.lower(),
                "hostname": self.hostname,
                "logger": record.name,
            }
            if self.session_id:
                labels["session"] = str(self.session_id)

            self.log_buffer.append({
                "stream": labels,
                "values": [[str(int(record.created * 1e9)), self.format(record)]],
            })
            if len(self.log_buffer) >= self.batch_size:
                self.flush()
        except Exception:
            self.handleError(record)

    def flush(self) -> None:
        """Sends the buffered records to Loki."""
        if not self.log_buffer:
            return

        logs_to_send = list(self.log_buffer)
        self.log_buffer.clear()

        try:
            payload = {"streams": logs_to_send}
            headers = {'Content-Type': 'application/json'}
            if self.org_id:
                headers['X-Scope-OrgID'] = self.org_id

            response = requests.post(self.url, json=payload, headers=headers, timeout=5)
            # 204 No Content is the success status for Loki push
            if response.status_code != 204:
                print(f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}", file=sys.stderr)
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(logs_to_send)} logs to Loki: {e}", file=sys.stderr)

    def close(self) -> None:
        """Flushes any remaining records before closing."""
        self.flush()
        super().close()
