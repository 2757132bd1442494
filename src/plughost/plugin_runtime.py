"""Plugin Runtime - stdin/stdout loop for plugin executables

A plugin subclasses PluginHandler, describes itself in ``metadata()`` and
renders files in ``on_preview()``. The runtime handles all protocol
mechanics:

- Hello/HelloAck version negotiation
- MetadataRequest → MetadataResponse with the plugin descriptor
- PreviewRequest → PreviewResponse, or ErrorResponse if the handler fails.
  Popup requests go to ``on_preview_popup()``, which defaults to ``on_preview()``
- Exit on stdin EOF

stdout carries frames only. Diagnostics go to stderr, which the host
discards.

# Invocation Modes

- **No CLI arguments**: protocol mode on stdin/stdout
- **--help / -h**: print name, version, description and preview pattern

# Example

```python
from plughost import PluginHandler, PluginDescriptor, Capabilities, PreviewCapability, TextComponent

class Notes(PluginHandler):
    def metadata(self):
        return PluginDescriptor(
            name="notes",
            version="1.0.0",
            description="Plain text notes",
            capabilities=Capabilities(preview=PreviewCapability(r"\\.txt$")),
        )

    def on_preview(self, path):
        with open(path) as f:
            return [TextComponent(f.read(4096))]

if __name__ == "__main__":
    Notes().run()
```
"""

import sys
from abc import ABC, abstractmethod
from typing import BinaryIO, List, Optional

from plughost.component import Component
from plughost.descriptor import PluginDescriptor
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
    PreviewMode,
    PreviewRequest,
    PreviewResponse,
)
from plughost.io import DEFAULT_MAX_FRAME, DecodeError, FrameReader, FrameWriter, ProtocolError, describe


class PreviewError(PlugHostError):
    """Raised by handlers to report a preview failure to the host"""
    pass


class PluginHandler(ABC):
    """Base class for plugin executables

    Subclasses implement ``metadata()`` and ``on_preview()``; ``run()`` does
    the rest. Requests are handled one at a time, in arrival order.
    """

    max_frame: int = DEFAULT_MAX_FRAME

    @abstractmethod
    def metadata(self) -> PluginDescriptor:
        """Descriptor sent to the host during the handshake"""
        ...

    @abstractmethod
    def on_preview(self, path: str) -> List[Component]:
        """Render ``path`` into preview components

        Raise PreviewError (or any exception) to send an ErrorResponse.
        """
        ...

    def on_preview_popup(self, path: str) -> List[Component]:
        """Render ``path`` for the popup viewer; defaults to ``on_preview()``"""
        return self.on_preview(path)

    def on_hello(self, protocol_version: int) -> HelloAck:
        """Accept the host's protocol version if this runtime speaks it"""
        ok = protocol_version in SUPPORTED_PROTOCOL_VERSIONS
        if not ok:
            print(
                f"[PluginRuntime] Host protocol version {protocol_version} is not supported",
                file=sys.stderr,
            )
        return HelloAck(protocol_version=PROTOCOL_VERSION, ok=ok)

    def handle(self, message: Message) -> Message:
        """Produce the reply for one host message"""
        if isinstance(message, Hello):
            return self.on_hello(message.protocol_version)

        if isinstance(message, MetadataRequest):
            return MetadataResponse(descriptor=self.metadata())

        if isinstance(message, PreviewRequest):
            try:
                if message.mode == PreviewMode.POPUP:
                    components = self.on_preview_popup(message.path)
                else:
                    components = self.on_preview(message.path)
            except PreviewError as e:
                return ErrorResponse(message=e.message)
            except Exception as e:
                print(f"[PluginRuntime] Preview of {message.path} failed: {e}", file=sys.stderr)
                return ErrorResponse(message=f"{type(e).__name__}: {e}")
            return PreviewResponse(components=list(components))

        return ErrorResponse(message=f"unexpected command {describe(message)}")

    def serve(self, reader: BinaryIO, writer: BinaryIO) -> None:
        """Answer host messages until stdin closes"""
        frame_reader = FrameReader(reader, self.max_frame)
        frame_writer = FrameWriter(writer, self.max_frame)

        while True:
            try:
                message = frame_reader.read()
            except DecodeError as e:
                # The frame boundary is intact, only the payload is bad
                print(f"[PluginRuntime] Invalid command: {e}", file=sys.stderr)
                reply: Message = ErrorResponse(message=f"invalid command: {e.message}")
            except ProtocolError as e:
                print(f"[PluginRuntime] Read error: {e}", file=sys.stderr)
                return
            else:
                if message is None:
                    return
                reply = self.handle(message)

            try:
                frame_writer.write(reply)
            except ProtocolError as e:
                print(f"[PluginRuntime] Failed to encode reply: {e}", file=sys.stderr)
                frame_writer.write(ErrorResponse(message=f"failed to encode reply: {e.message}"))
            except OSError as e:
                print(f"[PluginRuntime] Failed to write reply: {e}", file=sys.stderr)
                return

    def print_help(self) -> None:
        """Print the plugin description"""
        descriptor = self.metadata()
        print(f"{descriptor.name} v{descriptor.version}")
        print(descriptor.description)
        if descriptor.homepage:
            print(descriptor.homepage)
        print()
        print("CAPABILITIES:")
        preview = descriptor.capabilities.preview
        if preview is not None:
            print(f"    preview    files matching {preview.file_pattern}")
        for kind in sorted(descriptor.capabilities.extra):
            print(f"    {kind}")
        print()
        print("This program is a plugin. It speaks the plugin protocol on stdin/stdout")
        print("when started without arguments.")

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Entry point for the plugin executable

        Returns the process exit status.
        """
        args = sys.argv[1:] if argv is None else argv

        if args in (["--help"], ["-h"]):
            self.print_help()
            return 0

        if args:
            print(f"[PluginRuntime] Unexpected arguments: {' '.join(args)}", file=sys.stderr)
            print("[PluginRuntime] Run with --help for usage.", file=sys.stderr)
            return 2

        self.serve(sys.stdin.buffer, sys.stdout.buffer)
        return 0
