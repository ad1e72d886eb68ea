import socket
import logging
from typing import Optional

from session_runner.errors import ProtocolError, RelayError
from session_runner.protocol import Message, MessageCode, MessageSource, decode_message, encode_control
from session_runner.supervisor import relay
from session_runner.supervisor.state import SessionState
from session_runner.supervisor.tailer import DebugTailer

log = logging.getLogger(__name__)

# Worker messages that end the session once relayed, whether or not delivery succeeded
CONCLUSIVE_CODES = frozenset({
    MessageCode.UNRESUMABLE,
    MessageCode.ERROR,
    MessageCode.FINISHED,
    MessageCode.VIEW_FINAL_TEMPLATE,
    MessageCode.RESULTS,
})

# Worker messages relayed to the panel node while the session goes on
INTERIM_CODES = frozenset({MessageCode.VIEW_TEMPLATE, MessageCode.WORKER})


class MessageRouter:
    """
    Dispatches messages received on the worker channel by source and code.

    Every `route` call returns True when the session should end.
    """

    def __init__(self, state: SessionState, tailer: Optional[DebugTailer] = None) -> None:
        self.state = state
        self.tailer = tailer or DebugTailer(state.worker_log_path)

    def route(self, submitter_listener: socket.socket, raw_message: str) -> bool:
        """
        Interprets one message.

        :param submitter_listener: Listener used to hand messages to the worker.
        :param raw_message: The trimmed message text.
        :return: True if the poll loop must end.
        """
        log.debug(raw_message)
        try:
            message = decode_message(raw_message)
        except ProtocolError as e:
            log.warning(f"Ignoring message: {e}")
            return False

        if message.source == MessageSource.PROCESS:
            return self.interpret_process_message(message)
        if message.source == MessageSource.PANEL_NODE:
            return self.interpret_panel_node_message(submitter_listener, message)
        return False

    def interpret_panel_node_message(self, submitter_listener: socket.socket, message: Message) -> bool:
        if message.code == MessageCode.SUBMIT:
            self.state.panel_node = message.panel_node
            self.state.touch_client()
            return self._forward_to_process(submitter_listener, message.encode())

        if message.code == MessageCode.WORKER:
            self.state.panel_node = message.panel_node
            self.state.touch_keep_alive()
            return self._forward_to_process(submitter_listener, message.encode())

        if message.code == MessageCode.KEEPALIVE_CHECKIN:
            self.state.touch_keep_alive()
            return False

        if message.code == MessageCode.STOP:
            self.stop_process(submitter_listener)
            return True

        log.debug(f"No handler for panel node message code {message.code.name}")
        return False

    def interpret_process_message(self, message: Message) -> bool:
        if message.code in INTERIM_CODES:
            return not relay.respond_to_panel_node(self.state, message.encode(), self.tailer)

        if message.code in CONCLUSIVE_CODES:
            relay.respond_to_panel_node(self.state, message.encode(), self.tailer)
            return True

        if message.code == MessageCode.STOPPED:
            return True

        log.debug(f"No handler for worker message code {message.code.name}")
        return False

    def stop_process(self, submitter_listener: socket.socket) -> None:
        """
        Asks the worker to stop and serialize its session.

        The session is flagged as serializing first, so the stop is signalled
        at most once.
        """
        if not self.state.mark_serializing():
            log.debug("Stop already signalled, not sending it again.")
            return
        try:
            relay.respond_to_process(submitter_listener, encode_control(MessageCode.STOP), self.state.relay_timeout())
        except RelayError as e:
            log.error(f"Could not deliver stop to worker: {e}")

    def _forward_to_process(self, submitter_listener: socket.socket, message: str) -> bool:
        try:
            relay.respond_to_process(submitter_listener, message, self.state.relay_timeout())
        except RelayError as e:
            log.error(f"Could not deliver message to worker, ending session: {e}")
            return True
        return False
