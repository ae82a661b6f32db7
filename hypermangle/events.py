"""Control messages exchanged over the local control socket.

Every message is an immutable dataclass tagged with a ``MessageType``.
The set of variants is closed: a client and a server built from the same
deployment must agree on exactly these five messages.

Message Flow:
    Client -> Server: IdRequest, Args
    Server -> Client: IdResponse, Packet, CloseSocket
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Tuple
import json

from .errors import ProtocolError


MAX_PID = 0xFFFFFFFF


class MessageType(str, Enum):
    """Wire tags for each message variant."""

    ID_REQUEST = "id.request"
    ID_RESPONSE = "id.response"
    ARGS = "args"
    PACKET = "packet"
    CLOSE_SOCKET = "close"


@dataclass(frozen=True)
class ControlMessage:
    """Base class for all control messages."""

    type: MessageType = field(init=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        d: Dict[str, Any] = {"type": self.type.value}
        for f in fields(self):
            if f.name == "type":
                continue
            value = getattr(self, f.name)
            d[f.name] = list(value) if isinstance(value, tuple) else value
        return d

    def to_json(self) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass(frozen=True)
class IdRequest(ControlMessage):
    """Asks the listening process for its process id."""
    type: MessageType = field(default=MessageType.ID_REQUEST, init=False)


@dataclass(frozen=True)
class IdResponse(ControlMessage):
    """Answer to IdRequest."""
    pid: int = 0
    type: MessageType = field(default=MessageType.ID_RESPONSE, init=False)

    def __post_init__(self):
        if isinstance(self.pid, bool) or not isinstance(self.pid, int):
            raise ProtocolError(f"pid must be an integer, got {type(self.pid).__name__}")
        if not 0 <= self.pid <= MAX_PID:
            raise ProtocolError(f"pid out of range: {self.pid}")


@dataclass(frozen=True)
class Args(ControlMessage):
    """The caller's full argument vector, program name included."""
    args: Tuple[str, ...] = ()
    type: MessageType = field(default=MessageType.ARGS, init=False)

    def __post_init__(self):
        if not isinstance(self.args, (list, tuple)):
            raise ProtocolError("args must be a sequence of strings")
        args = tuple(self.args)
        for arg in args:
            if not isinstance(arg, str):
                raise ProtocolError(f"argument must be a string, got {type(arg).__name__}")
        # frozen dataclass: normalise lists to tuples so equality holds
        object.__setattr__(self, "args", args)


@dataclass(frozen=True)
class Packet(ControlMessage):
    """One chunk of streamed output."""
    text: str = ""
    type: MessageType = field(default=MessageType.PACKET, init=False)

    def __post_init__(self):
        if not isinstance(self.text, str):
            raise ProtocolError(f"packet text must be a string, got {type(self.text).__name__}")


@dataclass(frozen=True)
class CloseSocket(ControlMessage):
    """Terminal message: nothing more will be sent on this connection."""
    type: MessageType = field(default=MessageType.CLOSE_SOCKET, init=False)


_MESSAGE_CLASSES: Dict[str, type] = {
    MessageType.ID_REQUEST.value: IdRequest,
    MessageType.ID_RESPONSE.value: IdResponse,
    MessageType.ARGS.value: Args,
    MessageType.PACKET.value: Packet,
    MessageType.CLOSE_SOCKET.value: CloseSocket,
}


def serialize_message(message: ControlMessage) -> str:
    """Serialize a message to a JSON string."""
    return message.to_json()


def deserialize_message(json_str: str) -> ControlMessage:
    """Deserialize a JSON string to a message object.

    Unlike a forward-compatible event stream, the variant set here is closed:
    unknown tags, missing fields and unknown fields are all rejected.

    Args:
        json_str: JSON string representing a message.

    Returns:
        The deserialized message.

    Raises:
        ProtocolError: If the payload is not a valid control message.
    """
    try:
        data = json.loads(json_str)
    except ValueError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    except RecursionError as e:
        raise ProtocolError("Invalid JSON: nested too deeply") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}")

    message_type = data.pop("type", None)
    if message_type not in _MESSAGE_CLASSES:
        raise ProtocolError(f"Unknown message type: {message_type!r}")

    message_class = _MESSAGE_CLASSES[message_type]
    expected = {f.name for f in fields(message_class) if f.init}
    if set(data) != expected:
        raise ProtocolError(
            f"Malformed {message_type} message: expected fields {sorted(expected)}, "
            f"got {sorted(data)}"
        )

    return message_class(**data)
