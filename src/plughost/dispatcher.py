"""Request Dispatcher - send a preview request and correlate its reply

The protocol has no request identifiers. A reply is matched to its request
only because a plugin never has more than one request outstanding: the
dispatcher moves the plugin READY → BUSY before writing, and a second caller
that finds it BUSY fails immediately with PluginUnavailable.

``request_preview`` blocks until the reply, so interactive callers use
``submit_preview``, which runs it on a worker thread and hands back a
PreviewTicket. Each ticket carries a generation number; once a newer preview
has been submitted the older ticket is stale and its callback is not run.
The plugin cannot be told to abandon work in progress, so cancellation only
ever means ignoring the late result.

Usage:
```python
ticket = dispatcher.submit_preview("demo", "/home/me/notes.txt", callback=show)

def show(ticket):
    try:
        components = ticket.future.result()
    except DispatchError:
        components = None   # no preview from plugin
```
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from plughost.component import Component
from plughost.config import HostConfig
from plughost.errors import PlugHostError
from plughost.frame import ErrorResponse, PreviewMode, PreviewRequest, PreviewResponse
from plughost.io import EncodeError, FrameTooLargeError, ProtocolError, describe
from plughost.process import PluginExited, PluginState, ReceiveTimeout
from plughost.registry import Registry
from plughost.router import CapabilityRouter
from plughost.supervisor import Supervisor

logger = logging.getLogger(__name__)


class DispatchError(PlugHostError):
    """Base error for preview requests"""

    def __init__(self, plugin_name: str, message: str):
        super().__init__(message)
        self.plugin_name = plugin_name


class PluginUnavailable(DispatchError):
    """Plugin is unknown or not READY (busy, crashed, still starting)"""

    def __init__(self, plugin_name: str, state: Optional[PluginState] = None):
        detail = "not registered" if state is None else f"in state {state.value}"
        super().__init__(plugin_name, f"plugin '{plugin_name}' is unavailable ({detail})")
        self.state = state


class PluginReported(DispatchError):
    """Plugin answered with an ErrorResponse; the plugin stays usable"""

    def __init__(self, plugin_name: str, reported: str):
        super().__init__(plugin_name, f"plugin '{plugin_name}' reported: {reported}")
        self.reported = reported


class RequestTimeout(DispatchError):
    """Plugin did not answer in time and was killed"""

    def __init__(self, plugin_name: str, timeout: float):
        super().__init__(plugin_name, f"plugin '{plugin_name}' did not answer within {timeout}s")
        self.timeout = timeout


class PluginCrashed(DispatchError):
    """Plugin exited, closed its pipes or broke the protocol mid-request"""
    pass


class InvalidRequest(DispatchError):
    """The request could not be framed (e.g. a path that is not valid UTF-8)

    Nothing reached the plugin; it stays READY.
    """

    def __init__(self, plugin_name: str, path: str, reason: str):
        super().__init__(plugin_name, f"cannot send preview request for {path!r}: {reason}")
        self.path = path
        self.reason = reason


class GenerationCounter:
    """Monotonically increasing generation number shared by preview tickets"""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def advance(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def current(self) -> int:
        with self._lock:
            return self._value

    def is_current(self, generation: int) -> bool:
        return generation == self.current


class PreviewTicket:
    """Handle for one submitted preview request"""

    def __init__(
        self,
        plugin_name: str,
        path: str,
        generation: int,
        counter: GenerationCounter,
        mode: PreviewMode = PreviewMode.INLINE,
    ):
        self.plugin_name = plugin_name
        self.path = path
        self.mode = mode
        self.generation = generation
        self._counter = counter
        self.future: "Future[List[Component]]" = Future()

    def is_stale(self) -> bool:
        """True once a newer preview has been submitted or pending ones cancelled"""
        return not self._counter.is_current(self.generation)

    def result(self, timeout: Optional[float] = None) -> List[Component]:
        """Block for the components; raises the DispatchError on failure"""
        return self.future.result(timeout=timeout)

    def __repr__(self) -> str:
        return f"PreviewTicket({self.plugin_name!r}, {self.path!r}, generation={self.generation})"


class Dispatcher:
    """Issues preview requests to registered plugins

    Args:
        registry: Registry of live plugins (read only here)
        supervisor: Receives crash reports
        config: Supplies the default request timeout and worker count
        router: Used by ``preview()`` to pick a plugin for a path
    """

    def __init__(
        self,
        registry: Registry,
        supervisor: Supervisor,
        config: Optional[HostConfig] = None,
        router: Optional[CapabilityRouter] = None,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.config = config if config is not None else supervisor.config
        self.router = router if router is not None else CapabilityRouter(registry)
        self.generations = GenerationCounter()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def request_preview(
        self,
        plugin_name: str,
        path: str,
        timeout: Optional[float] = None,
        mode: PreviewMode = PreviewMode.INLINE,
    ) -> List[Component]:
        """Request a preview and wait for it

        Blocks up to ``timeout`` seconds (default: ``config.request_timeout``).
        Never call this from a rendering thread; use ``submit_preview``.

        Raises:
            PluginUnavailable: If the plugin is unknown or not READY
            InvalidRequest: If the request cannot be framed (plugin stays READY)
            PluginReported: If the plugin answered with an error
            RequestTimeout: If the plugin did not answer in time (it is killed)
            PluginCrashed: If the plugin died or broke the protocol
        """
        if timeout is None:
            timeout = self.config.request_timeout
        request = PreviewRequest(path=path, mode=PreviewMode(mode))

        entry = self.registry.get(plugin_name)
        if entry is None:
            raise PluginUnavailable(plugin_name)

        process = entry.process
        if not process.try_transition(PluginState.READY, PluginState.BUSY):
            raise PluginUnavailable(plugin_name, process.state)

        if process.has_unread():
            reason = "plugin wrote output while idle"
            self.supervisor.mark_crashed(plugin_name, reason, process)
            raise PluginCrashed(plugin_name, f"plugin '{plugin_name}' crashed: {reason}")

        logger.debug("Sending %s preview request for %s to plugin '%s'", request.mode.value, path, plugin_name)
        try:
            process.send(request)
        except (EncodeError, FrameTooLargeError) as e:
            # Framing failed before any byte was written
            process.try_transition(PluginState.BUSY, PluginState.READY)
            logger.warning("Preview request for %r not sent to plugin '%s': %s", path, plugin_name, e.message)
            raise InvalidRequest(plugin_name, path, e.message)
        except PluginExited as e:
            self.supervisor.mark_crashed(plugin_name, e.message, process)
            raise PluginCrashed(plugin_name, f"plugin '{plugin_name}' crashed: {e.message}")

        try:
            reply = process.receive(timeout=timeout)
        except ReceiveTimeout:
            self.supervisor.mark_crashed(plugin_name, f"no reply within {timeout}s", process)
            raise RequestTimeout(plugin_name, timeout)
        except (PluginExited, ProtocolError) as e:
            self.supervisor.mark_crashed(plugin_name, e.message, process)
            raise PluginCrashed(plugin_name, f"plugin '{plugin_name}' crashed: {e.message}")

        if isinstance(reply, PreviewResponse):
            process.try_transition(PluginState.BUSY, PluginState.READY)
            self.supervisor.record_success(plugin_name)
            logger.debug("Plugin '%s' returned %d components", plugin_name, len(reply.components))
            return reply.components

        if isinstance(reply, ErrorResponse):
            process.try_transition(PluginState.BUSY, PluginState.READY)
            logger.warning("Plugin '%s' reported an error for %s: %s", plugin_name, path, reply.message)
            raise PluginReported(plugin_name, reply.message)

        reason = f"unexpected {describe(reply)} in reply to PreviewRequest"
        self.supervisor.mark_crashed(plugin_name, reason, process)
        raise PluginCrashed(plugin_name, f"plugin '{plugin_name}' crashed: {reason}")

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.max_workers,
                    thread_name_prefix="plughost-dispatch",
                )
            return self._executor

    def submit_preview(
        self,
        plugin_name: str,
        path: str,
        timeout: Optional[float] = None,
        callback: Optional[Callable[[PreviewTicket], None]] = None,
        mode: PreviewMode = PreviewMode.INLINE,
    ) -> PreviewTicket:
        """Run ``request_preview`` on a worker thread

        Submitting makes every earlier ticket stale. ``callback(ticket)`` is
        called from the worker when the request resolves, unless the ticket
        is stale by then. The ticket's future always resolves, with the
        components or with the exception the request raised.
        """
        mode = PreviewMode(mode)
        ticket = PreviewTicket(plugin_name, path, self.generations.advance(), self.generations, mode)

        def run() -> None:
            if not ticket.future.set_running_or_notify_cancel():
                return
            try:
                components = self.request_preview(plugin_name, path, timeout, mode)
            except DispatchError as e:
                ticket.future.set_exception(e)
            except Exception as e:
                logger.exception("Preview request for %s to plugin '%s' failed", path, plugin_name)
                ticket.future.set_exception(e)
            else:
                ticket.future.set_result(components)

            if ticket.is_stale():
                logger.debug("Dropping stale preview result for %s (generation %d)", path, ticket.generation)
                return
            if callback is None:
                return
            try:
                callback(ticket)
            except Exception:
                logger.exception("Preview callback for %s raised", path)

        self._get_executor().submit(run)
        return ticket

    def preview(
        self,
        path: str,
        timeout: Optional[float] = None,
        callback: Optional[Callable[[PreviewTicket], None]] = None,
        mode: PreviewMode = PreviewMode.INLINE,
    ) -> Optional[PreviewTicket]:
        """Route ``path`` to the first matching plugin and submit a preview

        Returns None when no plugin can preview the file.
        """
        plugin_name = self.router.select_first(path)
        if plugin_name is None:
            return None
        return self.submit_preview(plugin_name, path, timeout=timeout, callback=callback, mode=mode)

    def cancel_pending(self) -> None:
        """Make every outstanding ticket stale (e.g. the user navigated away)"""
        self.generations.advance()

    def close(self) -> None:
        """Stop the worker pool without waiting for in-flight requests"""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
