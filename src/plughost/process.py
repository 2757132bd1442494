"""Plugin process handle and lifecycle state machine

A PluginProcess owns one plugin's stdio pipes. A reader thread decodes frames
from the plugin's stdout into an inbox queue; ``receive()`` waits on that queue
with a timeout, so a hung plugin never blocks anything but the caller that is
waiting for its reply.

States:

```
STARTING → HANDSHAKING → READY ⇄ BUSY
    └──────────┴───────────┴──────┴──→ CRASHED ──→ TERMINATED
    └──────────┴───────────┴──────┴──────────────→ TERMINATED
```

TERMINATED is final. A crashed plugin is respawned as a new PluginProcess.
"""

import logging
import queue
import subprocess
import threading
from enum import Enum
from typing import BinaryIO, Optional, Union

from plughost.errors import PlugHostError
from plughost.frame import Message
from plughost.io import DEFAULT_MAX_FRAME, FrameReader, FrameWriter, ProtocolError

logger = logging.getLogger(__name__)


class PluginState(Enum):
    """Lifecycle state of one plugin process"""
    STARTING = "starting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    BUSY = "busy"
    CRASHED = "crashed"
    TERMINATED = "terminated"


_TRANSITIONS = {
    PluginState.STARTING: {PluginState.HANDSHAKING, PluginState.CRASHED, PluginState.TERMINATED},
    PluginState.HANDSHAKING: {PluginState.READY, PluginState.CRASHED, PluginState.TERMINATED},
    PluginState.READY: {PluginState.BUSY, PluginState.CRASHED, PluginState.TERMINATED},
    PluginState.BUSY: {PluginState.READY, PluginState.CRASHED, PluginState.TERMINATED},
    PluginState.CRASHED: {PluginState.TERMINATED},
    PluginState.TERMINATED: set(),
}


class SupervisorError(PlugHostError):
    """Base error for process supervision"""
    pass


class InvalidTransitionError(SupervisorError):
    """State change not allowed by the lifecycle"""

    def __init__(self, current: PluginState, requested: PluginState):
        super().__init__(f"invalid transition {current.value} → {requested.value}")
        self.current = current
        self.requested = requested


class PluginExited(SupervisorError):
    """Plugin process exited or closed its pipes"""

    def __init__(self, message: str = "Plugin process exited unexpectedly"):
        super().__init__(message)


class ReceiveTimeout(SupervisorError):
    """No frame arrived within the timeout"""

    def __init__(self, timeout: Optional[float]):
        super().__init__(f"no reply within {timeout}s")
        self.timeout = timeout


InboxItem = Union[Message, Exception]


class PluginProcess:
    """Supervisor-owned handle for one plugin process and its pipes

    ``process`` is None for plugins attached over pre-connected streams.
    """

    def __init__(
        self,
        label: str,
        reader: BinaryIO,
        writer: BinaryIO,
        process: Optional[subprocess.Popen] = None,
        max_frame: int = DEFAULT_MAX_FRAME,
    ):
        self.label = label
        self.process = process
        self._stdout = reader
        self._stdin = writer
        self._frame_reader = FrameReader(reader, max_frame)
        self._frame_writer = FrameWriter(writer, max_frame)
        self._inbox: "queue.Queue[InboxItem]" = queue.Queue()
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._state = PluginState.STARTING
        self._reader_thread: Optional[threading.Thread] = None
        self.exit_reason: Optional[str] = None

    def __repr__(self) -> str:
        return f"PluginProcess({self.label!r}, state={self._state.value}, pid={self.pid})"

    @property
    def state(self) -> PluginState:
        with self._lock:
            return self._state

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.poll()

    # -----------------------------------------------------------------
    # State machine
    # -----------------------------------------------------------------

    def _transition_locked(self, new_state: PluginState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(self._state, new_state)
        logger.debug("Plugin %s: %s → %s", self.label, self._state.value, new_state.value)
        self._state = new_state

    def transition(self, new_state: PluginState) -> None:
        """Move to ``new_state``

        Raises:
            InvalidTransitionError: If the lifecycle does not allow it
        """
        with self._lock:
            self._transition_locked(new_state)

    def try_transition(self, expected: PluginState, new_state: PluginState) -> bool:
        """Move to ``new_state`` only if currently in ``expected``

        Returns False, without raising, when the current state differs.
        """
        with self._lock:
            if self._state is not expected:
                return False
            self._transition_locked(new_state)
            return True

    # -----------------------------------------------------------------
    # I/O
    # -----------------------------------------------------------------

    def start(self) -> None:
        """Start the reader thread"""
        if self._reader_thread is not None:
            return
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            name=f"plughost-reader-{self.label}",
            daemon=True,
        )
        self._reader_thread.start()

    def _reader_loop(self) -> None:
        """Reader thread - decodes frames into the inbox until EOF or error"""
        try:
            while True:
                try:
                    message = self._frame_reader.read()
                except ProtocolError as e:
                    logger.debug("Plugin %s sent a malformed frame: %s", self.label, e)
                    self._inbox.put(e)
                    return
                except (OSError, ValueError) as e:
                    # ValueError: stream closed underneath us during teardown
                    self._inbox.put(PluginExited(f"read from plugin failed: {e}"))
                    return

                if message is None:
                    self._inbox.put(PluginExited())
                    return

                self._inbox.put(message)
        finally:
            self._closed.set()

    def send(self, message: Message) -> None:
        """Write one message to the plugin's stdin

        Raises:
            PluginExited: If the pipe is closed
            ProtocolError: If the message cannot be framed
        """
        with self._write_lock:
            try:
                self._frame_writer.write(message)
            except (OSError, ValueError) as e:
                raise PluginExited(f"write to plugin failed: {e}")

    def receive(self, timeout: Optional[float]) -> Message:
        """Wait for the next message from the plugin

        Raises:
            ReceiveTimeout: If nothing arrives within ``timeout`` seconds
            PluginExited: If the plugin closed its stdout
            ProtocolError: If the plugin sent a malformed frame
        """
        try:
            item = self._inbox.get(timeout=timeout)
        except queue.Empty:
            raise ReceiveTimeout(timeout)

        if isinstance(item, Exception):
            # Keep the failure visible to any later receive
            self._inbox.put(item)
            raise item
        return item

    def has_unread(self) -> bool:
        """True if the plugin produced output nobody asked for yet"""
        return not self._inbox.empty()

    def is_alive(self) -> bool:
        if self._closed.is_set():
            return False
        return self.process is None or self.process.poll() is None

    # -----------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------

    def crash(self, reason: str) -> bool:
        """Mark the plugin CRASHED and kill it

        Returns False if the plugin was already crashed or terminated.
        """
        with self._lock:
            if self._state in (PluginState.CRASHED, PluginState.TERMINATED):
                return False
            self._transition_locked(PluginState.CRASHED)
            self.exit_reason = reason
        self._kill()
        return True

    def terminate(self) -> None:
        """Deliberate shutdown: kill whatever is left and mark TERMINATED"""
        with self._lock:
            if self._state is not PluginState.TERMINATED:
                self._transition_locked(PluginState.TERMINATED)
        self._kill()

    def begin_shutdown(self) -> None:
        """Ask the plugin to exit: close its stdin and send SIGTERM"""
        self._close_stdin()
        if self.process is not None and self.process.poll() is None:
            self.process.terminate()

    def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for exit; True if it exited"""
        if self.process is None:
            return self._closed.wait(timeout)
        try:
            self.process.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            return False

    def _kill(self, wait: float = 1.0) -> None:
        if self.process is not None:
            if self.process.poll() is None:
                self.process.kill()
            try:
                self.process.wait(timeout=wait)
            except subprocess.TimeoutExpired:
                logger.warning("Plugin %s (pid %s) did not exit after kill", self.label, self.pid)

        self._close_stdin()

        # Attached streams are owned by whoever attached them; closing a
        # reader another thread is blocked on can deadlock.
        if self.process is not None and self._reader_thread is not None:
            self._reader_thread.join(timeout=wait)
            if not self._reader_thread.is_alive():
                self._stdout.close()

    def _close_stdin(self) -> None:
        with self._write_lock:
            try:
                self._stdin.close()
            except OSError as e:
                logger.debug("Closing stdin of plugin %s: %s", self.label, e)
