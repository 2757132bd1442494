"""Process Supervisor - spawn, crash accounting, respawn and teardown

The Supervisor is the only component that starts or stops plugin processes
and the only one that mutates the Registry:

- ``launch(path)`` spawns a plugin executable, runs the handshake and
  registers it
- ``attach(reader, writer)`` does the same for pre-connected streams
- ``mark_crashed(name, ...)`` records a crash reported by the dispatcher and
  schedules a respawn with exponential backoff
- ``maintain()`` retires plugins that died while idle and performs due
  respawns; after the respawn limit a plugin is disabled for the session
- ``unload(name)`` and ``shutdown()`` terminate plugins deliberately

Usage:
```python
from plughost.registry import Registry
from plughost.supervisor import Supervisor

registry = Registry()
supervisor = Supervisor(registry)
entry = supervisor.launch("/path/to/plugin")
...
supervisor.shutdown()
```
"""

import logging
import os
import subprocess
import threading
import time
from typing import BinaryIO, Callable, Dict, List, Optional

from plughost.config import HostConfig
from plughost.descriptor import CapabilityError
from plughost.handshake import HandshakeError, perform_handshake
from plughost.process import PluginProcess, PluginState, SupervisorError
from plughost.registry import Registry, RegistryEntry, RegistryError

logger = logging.getLogger(__name__)


class SpawnError(SupervisorError):
    """Plugin executable could not be started"""

    def __init__(self, path: str, reason: str):
        super().__init__(f"failed to start plugin {path}: {reason}")
        self.path = path
        self.reason = reason


class PluginDisabledError(SupervisorError):
    """Plugin is disabled by configuration or after too many crashes"""
    pass


class Supervisor:
    """Owns every plugin process and the registry mutations

    Args:
        registry: Registry to publish ready plugins into
        config: Host configuration (timeouts, respawn policy, disabled names)
        clock: Monotonic clock used for respawn scheduling
    """

    def __init__(
        self,
        registry: Registry,
        config: Optional[HostConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.config = config if config is not None else HostConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._maintain_lock = threading.Lock()
        self._disabled: Dict[str, str] = {}
        self._disabled_paths: Dict[str, str] = {}
        self._attached = 0

    @property
    def policy(self):
        return self.config.respawn

    # -----------------------------------------------------------------
    # Start-up
    # -----------------------------------------------------------------

    def spawn(self, path: str) -> PluginProcess:
        """Start a plugin executable and move it to HANDSHAKING

        Raises:
            SpawnError: If the executable cannot be started or exits at once
        """
        try:
            proc = subprocess.Popen(
                [path],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise SpawnError(path, str(e))

        process = PluginProcess(
            label=path,
            reader=proc.stdout,
            writer=proc.stdin,
            process=proc,
            max_frame=self.config.max_frame,
        )
        process.start()

        if proc.poll() is not None:
            process.crash(f"exited during startup with status {proc.returncode}")
            raise SpawnError(path, f"process exited during startup with status {proc.returncode}")

        process.transition(PluginState.HANDSHAKING)
        logger.debug("Spawned plugin %s (pid %s)", path, proc.pid)
        return process

    def launch(self, path: str) -> RegistryEntry:
        """Spawn, handshake and register one plugin executable

        Raises:
            PluginDisabledError: If the plugin is disabled
            SpawnError: If the process cannot be started
            HandshakeError: If the handshake fails or times out
            CapabilityError: If a declared pattern is invalid
            DuplicatePluginError: If the reported name is already registered
        """
        filename = os.path.basename(path)
        if self.config.is_disabled(filename):
            raise PluginDisabledError(f"plugin {filename} is disabled by configuration")
        with self._lock:
            reason = self._disabled_paths.get(path)
        if reason is not None:
            raise PluginDisabledError(f"plugin {path} is disabled for this session: {reason}")

        started = time.monotonic()
        process = self.spawn(path)
        return self._establish(process, path, started)

    def attach(self, reader: BinaryIO, writer: BinaryIO, label: Optional[str] = None) -> RegistryEntry:
        """Handshake with and register a plugin on pre-connected streams

        Attached plugins have no executable, so they are never respawned.

        Args:
            reader: Plugin's stdout stream (host reads from this)
            writer: Plugin's stdin stream (host writes to this)
            label: Name used in log lines until the descriptor is known
        """
        with self._lock:
            if label is None:
                label = f"attached-{self._attached}"
            self._attached += 1

        started = time.monotonic()
        process = PluginProcess(label=label, reader=reader, writer=writer, max_frame=self.config.max_frame)
        process.start()
        process.transition(PluginState.HANDSHAKING)
        return self._establish(process, None, started)

    def _establish(self, process: PluginProcess, path: Optional[str], started: float) -> RegistryEntry:
        descriptor, compiled = perform_handshake(process, self.config.handshake_timeout)

        if self.config.is_disabled(descriptor.name):
            process.terminate()
            raise PluginDisabledError(f"plugin '{descriptor.name}' is disabled by configuration")

        entry = RegistryEntry(
            descriptor=descriptor,
            compiled=compiled,
            process=process,
            path=path,
            load_time=time.monotonic() - started,
        )
        try:
            self.registry.insert(entry)
        except RegistryError:
            process.terminate()
            raise

        logger.info(
            "Plugin '%s' v%s loaded in %.3fs from %s",
            descriptor.name,
            descriptor.version,
            entry.load_time,
            process.label,
        )
        return entry

    # -----------------------------------------------------------------
    # Crash handling
    # -----------------------------------------------------------------

    def mark_crashed(self, name: str, reason: str, process: Optional[PluginProcess] = None) -> bool:
        """Record a crash of the named plugin: kill it and schedule a respawn

        ``process`` guards against stale reports: if the registry already
        holds a different process under ``name`` the report is ignored.

        Returns True if this call performed the transition to CRASHED.
        """
        entry = self.registry.get(name)
        if entry is None:
            return False
        if process is not None and entry.process is not process:
            return False
        if not entry.process.crash(reason):
            return False

        logger.error("Plugin '%s' crashed: %s", name, reason)
        self._record_crash(entry, reason)
        return True

    def _record_crash(self, entry: RegistryEntry, reason: str) -> None:
        with self._lock:
            entry.crashes += 1
            exhausted = self.policy.exhausted(entry.crashes)
            if exhausted or entry.path is None:
                entry.next_respawn_at = None
            else:
                delay = self.policy.delay(entry.crashes)
                entry.next_respawn_at = self._clock() + delay
                logger.info(
                    "Plugin '%s' will be respawned in %.2fs (crash %d, %d respawns allowed)",
                    entry.name,
                    delay,
                    entry.crashes,
                    self.policy.max_respawns,
                )

        if exhausted:
            self._disable(entry, reason)

    def _disable(self, entry: RegistryEntry, reason: str) -> None:
        self.registry.discard(entry)
        entry.process.terminate()
        with self._lock:
            self._disabled[entry.name] = reason
            if entry.path is not None:
                self._disabled_paths[entry.path] = reason
        logger.error(
            "Plugin '%s' disabled after %d consecutive crashes: %s",
            entry.name,
            entry.crashes,
            reason,
        )

    def record_success(self, name: str) -> None:
        """Reset the consecutive crash counter after a healthy exchange"""
        entry = self.registry.get(name)
        if entry is None:
            return
        with self._lock:
            entry.crashes = 0

    def is_disabled(self, name: str) -> bool:
        with self._lock:
            return name in self._disabled

    def disabled(self) -> Dict[str, str]:
        """Plugins disabled for this session, name → last crash reason"""
        with self._lock:
            return dict(self._disabled)

    # -----------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------

    def maintain(self) -> List[str]:
        """Retire plugins that died while idle and respawn those that are due

        Returns the names of plugins successfully respawned.
        """
        with self._maintain_lock:
            for entry in self.registry.snapshot():
                if entry.process.state is PluginState.READY and not entry.process.is_alive():
                    self.mark_crashed(entry.name, "plugin exited while idle", entry.process)

            now = self._clock()
            respawned = []
            for entry in self.registry.snapshot():
                if entry.process.state is not PluginState.CRASHED:
                    continue
                if entry.path is None or entry.next_respawn_at is None:
                    continue
                if now < entry.next_respawn_at:
                    continue
                new_entry = self._respawn(entry)
                if new_entry is not None:
                    respawned.append(new_entry.name)
            return respawned

    def _respawn(self, entry: RegistryEntry) -> Optional[RegistryEntry]:
        with self._lock:
            entry.next_respawn_at = None

        logger.info(
            "Respawning plugin '%s' from %s (respawn %d of %d)",
            entry.name,
            entry.path,
            entry.crashes,
            self.policy.max_respawns,
        )

        started = time.monotonic()
        process = None
        try:
            process = self.spawn(entry.path)
            descriptor, compiled = perform_handshake(process, self.config.handshake_timeout)
            if self.config.is_disabled(descriptor.name):
                process.terminate()
                self.registry.discard(entry)
                entry.process.terminate()
                logger.warning(
                    "Respawned plugin from %s reports name '%s', which is disabled by configuration; unloaded",
                    entry.path,
                    descriptor.name,
                )
                return None
            new_entry = RegistryEntry(
                descriptor=descriptor,
                compiled=compiled,
                process=process,
                path=entry.path,
                load_time=time.monotonic() - started,
                crashes=entry.crashes,
            )
            self.registry.replace(entry.name, new_entry)
        except (SupervisorError, HandshakeError, CapabilityError, RegistryError) as e:
            if process is not None:
                process.crash(str(e))
            logger.warning("Respawn of plugin '%s' failed: %s", entry.name, e)
            self._record_crash(entry, str(e))
            return None

        entry.process.terminate()
        if new_entry.descriptor.version != entry.descriptor.version:
            logger.info(
                "Plugin '%s' respawned with version %s (was %s)",
                new_entry.name,
                new_entry.descriptor.version,
                entry.descriptor.version,
            )
        return new_entry

    # -----------------------------------------------------------------
    # Deliberate teardown
    # -----------------------------------------------------------------

    def unload(self, name: str, grace: Optional[float] = None) -> None:
        """Terminate one plugin and remove it from the registry

        Raises:
            PluginNotFoundError: If no plugin is registered under ``name``
        """
        entry = self.registry.remove(name)
        entry.process.begin_shutdown()
        entry.process.wait(self.config.shutdown_grace if grace is None else grace)
        entry.process.terminate()
        logger.info("Plugin '%s' unloaded", name)

    def shutdown(self, grace: Optional[float] = None) -> None:
        """Terminate every plugin: close stdin and SIGTERM all, wait, then kill"""
        if grace is None:
            grace = self.config.shutdown_grace

        entries = [entry for entry in self.registry.snapshot() if self.registry.discard(entry)]

        for entry in entries:
            entry.process.begin_shutdown()

        deadline = time.monotonic() + grace
        for entry in entries:
            if not entry.process.wait(max(0.0, deadline - time.monotonic())):
                logger.warning("Plugin '%s' did not exit within %.1fs, killing", entry.name, grace)

        for entry in entries:
            entry.process.terminate()

        logger.info("Plugin supervisor shutdown complete (%d plugins stopped)", len(entries))
