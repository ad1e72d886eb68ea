"""
Wire protocol shared by the panel node, the worker and the runner.

Every message is one newline-terminated UTF-8 JSON object carrying an integer
`source` and an integer `code`; the remaining fields depend on the code.
"""

import json
from enum import IntEnum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from session_runner.errors import ProtocolError


class MessageSource(IntEnum):
    PANEL_NODE = 0
    PROCESS = 1
    TEST_NODE = 2


class MessageCode(IntEnum):
    ERROR = -1
    VIEW_TEMPLATE = 0
    FINISHED = 1
    SUBMIT = 2
    STOP = 3
    STOPPED = 4
    VIEW_FINAL_TEMPLATE = 5
    RESULTS = 7
    AUTHENTICATION_FAILED = 8
    STARTING = 9
    KEEPALIVE_CHECKIN = 10
    UNRESUMABLE = 11
    SESSION_LIMIT_REACHED = 12
    WORKER = 15


# Panel node messages that carry a fresh panelNode reference
ROUTING_CODES = frozenset({MessageCode.SUBMIT, MessageCode.WORKER})


@dataclass(frozen=True)
class PanelNodeRef:
    """Address the runner connects to when replying to the panel node."""
    host: str
    port: int

    @classmethod
    def from_descriptor(cls, descriptor: Any) -> "PanelNodeRef":
        """
        Builds a reference from a decoded panel node descriptor.

        The socket address is taken from `sock_host` when present, otherwise
        from `host`.

        :param descriptor: The decoded panelNode object.
        :return: The panel node reference.
        :raises ProtocolError: If the descriptor has no usable host or port.
        """
        if not isinstance(descriptor, dict):
            raise ProtocolError(f"panel node descriptor must be an object, got {type(descriptor).__name__}")
        host = descriptor.get("sock_host") or descriptor.get("host")
        port = descriptor.get("port")
        if not host or isinstance(port, bool):
            raise ProtocolError(f"panel node descriptor is missing host or port: {descriptor}")
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ProtocolError(f"panel node port is not a number: {port!r}") from None
        return cls(host=str(host), port=port)


@dataclass(frozen=True)
class Message:
    """
    A decoded envelope.

    `payload` is the whole decoded object and `raw` the original text, so a
    message can be relayed verbatim. `panel_node` is only set for panel node
    Submit/Worker messages.
    """
    source: MessageSource
    code: MessageCode
    payload: Dict[str, Any] = field(compare=False)
    raw: str = field(compare=False)
    panel_node: Optional[PanelNodeRef] = None

    def encode(self, **extra: Any) -> str:
        """Returns the wire form, re-serialized only when extra fields are added."""
        if not extra:
            return self.raw
        return json.dumps({**self.payload, **extra})


def _enum_member(enum_cls, value: Any, name: str):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"'{name}' must be an integer, got {value!r}")
    try:
        return enum_cls(value)
    except ValueError:
        raise ProtocolError(f"unknown {name} {value}") from None


def decode_message(raw: str) -> Message:
    """
    Decodes and validates one message.

    :param raw: The trimmed message text.
    :return: The decoded message.
    :raises ProtocolError: On invalid JSON, a non-object payload, an unknown
        source or code, or a routing message without a usable panelNode.
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"message is not valid JSON: {e}") from None
    if not isinstance(payload, dict):
        raise ProtocolError("message must be a JSON object")

    source = _enum_member(MessageSource, payload.get("source"), "source")
    code = _enum_member(MessageCode, payload.get("code"), "code")

    panel_node = None
    if source == MessageSource.PANEL_NODE and code in ROUTING_CODES:
        panel_node = PanelNodeRef.from_descriptor(payload.get("panelNode"))

    return Message(source=source, code=code, payload=payload, raw=raw, panel_node=panel_node)


def encode_control(code: MessageCode) -> str:
    """Builds a message originating from the runner itself (Stop, Error)."""
    return json.dumps({"source": int(MessageSource.TEST_NODE), "code": int(code)})
