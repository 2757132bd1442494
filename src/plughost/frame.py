"""Protocol messages exchanged between host and plugin

Every frame on the wire carries exactly one message. A message is a CBOR map
tagged with a ``_T`` key naming its type; the remaining keys are its fields.

## Message Types

Host to plugin:

- Hello (protocol_version): opens the handshake
- MetadataRequest: asks for the plugin descriptor
- PreviewRequest (path, mode): asks for a preview of one file

Plugin to host:

- HelloAck (protocol_version, ok): answers Hello
- MetadataResponse (descriptor): answers MetadataRequest
- PreviewResponse (components): answers PreviewRequest
- ErrorResponse (message): reports a failure for the current request

PreviewRequest.mode is "inline" (the preview pane) or "popup" (a full
viewer). The key is omitted for inline requests.

Messages carry no request identifier. Correlation relies on the host sending
at most one request per plugin before reading its reply.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from plughost.component import Component, components_from_list
from plughost.descriptor import PluginDescriptor


# Protocol version spoken by this host. Bumped on incompatible changes to the
# message shapes; negotiated in Hello/HelloAck.
PROTOCOL_VERSION = 1

SUPPORTED_PROTOCOL_VERSIONS = frozenset({PROTOCOL_VERSION})

# Key holding the message type inside every payload map
TAG_KEY = "_T"


class MessageType(str, Enum):
    """Message type discriminator"""
    HELLO = "Hello"
    HELLO_ACK = "HelloAck"
    METADATA_REQUEST = "MetadataRequest"
    METADATA_RESPONSE = "MetadataResponse"
    PREVIEW_REQUEST = "PreviewRequest"
    PREVIEW_RESPONSE = "PreviewResponse"
    ERROR_RESPONSE = "ErrorResponse"

    @classmethod
    def from_tag(cls, tag: Any) -> Optional["MessageType"]:
        """Convert a wire tag to MessageType, returns None if invalid"""
        try:
            return cls(tag)
        except ValueError:
            return None


class PreviewMode(str, Enum):
    """Where the host shows a preview"""
    INLINE = "inline"
    POPUP = "popup"

    @classmethod
    def from_value(cls, value: Any) -> Optional["PreviewMode"]:
        """Convert a wire value to PreviewMode, returns None if invalid"""
        try:
            return cls(value)
        except ValueError:
            return None


def _require(data: Dict[str, Any], key: str, expected: type) -> Any:
    value = data.get(key)
    # bool is a subclass of int; do not accept it where an int is expected
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise ValueError(f"field '{key}' must be {expected.__name__}")
    return value


class Message:
    """Base class for protocol messages"""

    message_type: ClassVar[MessageType]

    def fields(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        result = {TAG_KEY: self.message_type.value}
        result.update(self.fields())
        return result

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> "Message":
        return cls()


@dataclass
class Hello(Message):
    """Handshake opener (host side)"""
    protocol_version: int = PROTOCOL_VERSION

    message_type: ClassVar[MessageType] = MessageType.HELLO

    def fields(self) -> Dict[str, Any]:
        return {"protocol_version": self.protocol_version}

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> "Hello":
        return cls(protocol_version=_require(data, "protocol_version", int))


@dataclass
class HelloAck(Message):
    """Handshake answer (plugin side)

    ``ok`` is False when the plugin cannot speak the host's protocol version;
    ``protocol_version`` is then the version the plugin was built for.
    """
    protocol_version: int
    ok: bool

    message_type: ClassVar[MessageType] = MessageType.HELLO_ACK

    def fields(self) -> Dict[str, Any]:
        return {"protocol_version": self.protocol_version, "ok": self.ok}

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> "HelloAck":
        return cls(
            protocol_version=_require(data, "protocol_version", int),
            ok=_require(data, "ok", bool),
        )


@dataclass
class MetadataRequest(Message):
    """Ask the plugin for its descriptor"""

    message_type: ClassVar[MessageType] = MessageType.METADATA_REQUEST


@dataclass
class MetadataResponse(Message):
    """Plugin descriptor"""
    descriptor: PluginDescriptor

    message_type: ClassVar[MessageType] = MessageType.METADATA_RESPONSE

    def fields(self) -> Dict[str, Any]:
        return {"descriptor": self.descriptor.to_dict()}

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> "MetadataResponse":
        return cls(descriptor=PluginDescriptor.from_dict(data.get("descriptor")))


@dataclass
class PreviewRequest(Message):
    """Ask for a preview of the file at ``path``

    ``mode`` selects the inline pane or the popup viewer; plugins may render
    more detail for a popup.
    """
    path: str
    mode: PreviewMode = PreviewMode.INLINE

    message_type: ClassVar[MessageType] = MessageType.PREVIEW_REQUEST

    def fields(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"path": self.path}
        mode = PreviewMode(self.mode)
        if mode is not PreviewMode.INLINE:
            result["mode"] = mode.value
        return result

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> "PreviewRequest":
        mode = PreviewMode.from_value(data.get("mode", PreviewMode.INLINE.value))
        if mode is None:
            raise ValueError(f"unknown preview mode: {data.get('mode')!r}")
        return cls(path=_require(data, "path", str), mode=mode)


@dataclass
class PreviewResponse(Message):
    """Preview content for the last PreviewRequest"""
    components: List[Component] = field(default_factory=list)

    message_type: ClassVar[MessageType] = MessageType.PREVIEW_RESPONSE

    def fields(self) -> Dict[str, Any]:
        return {"components": [c.to_dict() for c in self.components]}

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> "PreviewResponse":
        return cls(components=components_from_list(data.get("components")))


@dataclass
class ErrorResponse(Message):
    """Failure reported by the plugin for the current request"""
    message: str

    message_type: ClassVar[MessageType] = MessageType.ERROR_RESPONSE

    def fields(self) -> Dict[str, Any]:
        return {"message": self.message}

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> "ErrorResponse":
        return cls(message=_require(data, "message", str))


MESSAGE_TYPES: Dict[MessageType, Type[Message]] = {
    MessageType.HELLO: Hello,
    MessageType.HELLO_ACK: HelloAck,
    MessageType.METADATA_REQUEST: MetadataRequest,
    MessageType.METADATA_RESPONSE: MetadataResponse,
    MessageType.PREVIEW_REQUEST: PreviewRequest,
    MessageType.PREVIEW_RESPONSE: PreviewResponse,
    MessageType.ERROR_RESPONSE: ErrorResponse,
}
