"""Plughost - out-of-process preview plugins over a framed CBOR protocol

Plugins are independent executables. The host spawns each one, talks to it
over length-prefixed CBOR messages on stdin/stdout, asks it for previews of
files that match its declared capabilities, and keeps the application
responsive when a plugin crashes, hangs or misbehaves.
"""

from plughost.errors import PlugHostError

from plughost.component import (
    Component,
    TextComponent,
    TitleComponent,
    ImagePath,
    ImageBytes,
    ImageSource,
    ImageComponent,
    TableComponent,
    UnknownComponent,
    component_from_dict,
    components_from_list,
)

from plughost.descriptor import (
    PREVIEW_CAPABILITY,
    DescriptorError,
    CapabilityError,
    PreviewCapability,
    Capabilities,
    PluginDescriptor,
    CompiledCapabilities,
    compile_capabilities,
    matches,
)

from plughost.frame import (
    PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    MessageType,
    PreviewMode,
    Message,
    Hello,
    HelloAck,
    MetadataRequest,
    MetadataResponse,
    PreviewRequest,
    PreviewResponse,
    ErrorResponse,
)

from plughost.io import (
    DEFAULT_MAX_FRAME,
    ProtocolError,
    EncodeError,
    DecodeError,
    FrameTooLargeError,
    UnexpectedEofError,
    encode,
    decode,
    encode_frame,
    read_message,
    write_message,
    FrameReader,
    FrameWriter,
)

from plughost.config import (
    HostConfig,
    RespawnPolicy,
)

from plughost.process import (
    PluginState,
    PluginProcess,
    SupervisorError,
    InvalidTransitionError,
    PluginExited,
    ReceiveTimeout,
)

from plughost.registry import (
    Registry,
    RegistryEntry,
    RegistryError,
    DuplicatePluginError,
    PluginNotFoundError,
)

from plughost.handshake import (
    HandshakeError,
    HandshakeTimeout,
    HandshakeRejected,
    perform_handshake,
)

from plughost.supervisor import (
    Supervisor,
    SpawnError,
    PluginDisabledError,
)

from plughost.router import CapabilityRouter

from plughost.dispatcher import (
    Dispatcher,
    DispatchError,
    PluginUnavailable,
    PluginReported,
    RequestTimeout,
    PluginCrashed,
    InvalidRequest,
    GenerationCounter,
    PreviewTicket,
)

from plughost.host import (
    PluginHost,
    FailedPlugin,
    PluginDirectoryError,
)

from plughost.plugin_runtime import (
    PluginHandler,
    PreviewError,
)

__all__ = [
    "PlugHostError",
    # Components
    "Component",
    "TextComponent",
    "TitleComponent",
    "ImagePath",
    "ImageBytes",
    "ImageSource",
    "ImageComponent",
    "TableComponent",
    "UnknownComponent",
    "component_from_dict",
    "components_from_list",
    # Descriptor
    "PREVIEW_CAPABILITY",
    "DescriptorError",
    "CapabilityError",
    "PreviewCapability",
    "Capabilities",
    "PluginDescriptor",
    "CompiledCapabilities",
    "compile_capabilities",
    "matches",
    # Messages
    "PROTOCOL_VERSION",
    "SUPPORTED_PROTOCOL_VERSIONS",
    "MessageType",
    "PreviewMode",
    "Message",
    "Hello",
    "HelloAck",
    "MetadataRequest",
    "MetadataResponse",
    "PreviewRequest",
    "PreviewResponse",
    "ErrorResponse",
    # Frame I/O
    "DEFAULT_MAX_FRAME",
    "ProtocolError",
    "EncodeError",
    "DecodeError",
    "FrameTooLargeError",
    "UnexpectedEofError",
    "encode",
    "decode",
    "encode_frame",
    "read_message",
    "write_message",
    "FrameReader",
    "FrameWriter",
    # Config
    "HostConfig",
    "RespawnPolicy",
    # Process
    "PluginState",
    "PluginProcess",
    "SupervisorError",
    "InvalidTransitionError",
    "PluginExited",
    "ReceiveTimeout",
    # Registry
    "Registry",
    "RegistryEntry",
    "RegistryError",
    "DuplicatePluginError",
    "PluginNotFoundError",
    # Handshake
    "HandshakeError",
    "HandshakeTimeout",
    "HandshakeRejected",
    "perform_handshake",
    # Supervisor
    "Supervisor",
    "SpawnError",
    "PluginDisabledError",
    # Router
    "CapabilityRouter",
    # Dispatcher
    "Dispatcher",
    "DispatchError",
    "PluginUnavailable",
    "PluginReported",
    "RequestTimeout",
    "PluginCrashed",
    "InvalidRequest",
    "GenerationCounter",
    "PreviewTicket",
    # Host
    "PluginHost",
    "FailedPlugin",
    "PluginDirectoryError",
    # Plugin runtime
    "PluginHandler",
    "PreviewError",
]
