import time
from typing import Callable, Optional
from dataclasses import dataclass, field

from session_runner.protocol import PanelNodeRef


@dataclass
class SessionState:
    """
    Mutable state of the single session supervised by this process.

    Owned by the SessionSupervisor and handed to the MessageRouter by
    reference. Timestamps come from `clock` (monotonic seconds).
    """
    panel_node: PanelNodeRef
    session_id: str
    max_idle_time: float
    keep_alive_interval_time: float = 0
    keep_alive_tolerance_time: float = 0
    is_debug: bool = False
    log_path: str = ""
    worker_log_path: str = ""
    relay_accept_timeout: Optional[float] = None
    relay_min_accept_timeout: float = 10
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    last_client_time: float = 0.0
    last_keep_alive_time: float = 0.0
    is_serializing: bool = False
    worker_pid: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.worker_log_path and self.log_path:
            self.worker_log_path = f"{self.log_path}.r"
        self.reset_timers()

    def reset_timers(self) -> None:
        now = self.clock()
        self.last_client_time = now
        self.last_keep_alive_time = now

    def touch_client(self) -> None:
        """Records client activity; also counts as a keep-alive."""
        self.last_client_time = self.last_keep_alive_time = self.clock()

    def touch_keep_alive(self) -> None:
        self.last_keep_alive_time = self.clock()

    def mark_serializing(self) -> bool:
        """
        Flags the session as stopping.

        :return: True if this call set the flag, False if it was already set.
        """
        if self.is_serializing:
            return False
        self.is_serializing = True
        return True

    def idle_timed_out(self) -> bool:
        return not self.is_serializing and self.clock() - self.last_client_time > self.max_idle_time

    def keep_alive_timed_out(self) -> bool:
        if self.is_serializing or self.keep_alive_interval_time <= 0:
            return False
        limit = self.keep_alive_interval_time + self.keep_alive_tolerance_time
        return self.clock() - self.last_keep_alive_time > limit

    def relay_timeout(self) -> Optional[float]:
        """
        Returns how long a submitter relay may wait for the worker to connect.

        :return: Seconds to wait, or None to wait indefinitely.
        """
        if self.relay_accept_timeout is not None:
            return self.relay_accept_timeout if self.relay_accept_timeout > 0 else None
        remaining = self.max_idle_time - (self.clock() - self.last_client_time)
        return max(remaining, self.relay_min_accept_timeout)
