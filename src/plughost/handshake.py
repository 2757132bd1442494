"""Startup handshake with a freshly spawned plugin

```
host                               plugin
 │ ── Hello{protocol_version} ──────▶ │
 │ ◀──── HelloAck{protocol_version,ok}│
 │ ── MetadataRequest ──────────────▶ │
 │ ◀──── MetadataResponse{descriptor} │
```

The whole exchange is bounded by one timeout. Any failure marks the process
CRASHED (which kills it) and raises; success leaves it READY.
"""

import logging
import time
from typing import Tuple

from plughost.config import DEFAULT_HANDSHAKE_TIMEOUT
from plughost.descriptor import CapabilityError, CompiledCapabilities, PluginDescriptor, compile_capabilities
from plughost.errors import PlugHostError
from plughost.frame import (
    PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    ErrorResponse,
    Hello,
    HelloAck,
    Message,
    MetadataRequest,
    MetadataResponse,
)
from plughost.io import ProtocolError, describe
from plughost.process import PluginExited, PluginProcess, PluginState, ReceiveTimeout

logger = logging.getLogger(__name__)


class HandshakeError(PlugHostError):
    """Handshake failed"""
    pass


class HandshakeTimeout(HandshakeError):
    """Plugin did not answer within the handshake bound"""
    pass


class HandshakeRejected(HandshakeError):
    """Plugin declined the protocol version or answered with the wrong message"""
    pass


def _exchange(process: PluginProcess, request: Message, deadline: float) -> Message:
    try:
        process.send(request)
    except PluginExited as e:
        raise HandshakeError(f"plugin closed stdin during handshake: {e.message}")

    remaining = max(0.0, deadline - time.monotonic())
    try:
        reply = process.receive(timeout=remaining)
    except ReceiveTimeout:
        raise HandshakeTimeout(f"no reply to {describe(request)} within handshake timeout")
    except PluginExited as e:
        raise HandshakeError(f"plugin exited during handshake: {e.message}")
    except ProtocolError as e:
        raise HandshakeError(f"protocol error during handshake: {e.message}")

    if isinstance(reply, ErrorResponse):
        raise HandshakeRejected(f"plugin reported error: {reply.message}")
    return reply


def perform_handshake(
    process: PluginProcess,
    timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
) -> Tuple[PluginDescriptor, CompiledCapabilities]:
    """Run Hello/HelloAck and the metadata exchange, then compile capabilities

    The process must be in HANDSHAKING. On success it is READY.

    Raises:
        HandshakeTimeout: If the plugin does not answer in time
        HandshakeRejected: If the plugin declines or answers out of protocol
        HandshakeError: If the plugin exits or sends a malformed frame
        CapabilityError: If a declared pattern does not compile
    """
    deadline = time.monotonic() + timeout
    try:
        ack = _exchange(process, Hello(protocol_version=PROTOCOL_VERSION), deadline)
        if not isinstance(ack, HelloAck):
            raise HandshakeRejected(f"expected HelloAck, got {describe(ack)}")
        if not ack.ok:
            raise HandshakeRejected(
                f"plugin declined protocol version {PROTOCOL_VERSION} "
                f"(plugin built for version {ack.protocol_version})"
            )
        if ack.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise HandshakeRejected(f"unsupported protocol version {ack.protocol_version}")

        reply = _exchange(process, MetadataRequest(), deadline)
        if not isinstance(reply, MetadataResponse):
            raise HandshakeRejected(f"expected MetadataResponse, got {describe(reply)}")

        descriptor = reply.descriptor
        compiled = compile_capabilities(descriptor.capabilities)
    except (HandshakeError, CapabilityError) as e:
        process.crash(str(e))
        raise

    process.transition(PluginState.READY)
    logger.debug(
        "Handshake with %s complete: %s v%s, capabilities %s",
        process.label,
        descriptor.name,
        descriptor.version,
        descriptor.capabilities.kinds(),
    )
    return descriptor, compiled
