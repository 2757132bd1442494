"""Plugin host - discovery, loading and lifetime of all plugins

PluginHost wires the registry, supervisor, router and dispatcher together
and is what an application embeds:

```python
from plughost import HostConfig, PluginHost

with PluginHost(HostConfig(plugin_dir="~/.config/myapp/plugins")) as host:
    host.load_plugins()
    host.start_maintenance()
    ticket = host.preview("/home/me/notes.txt", callback=render)
```

A plugin that fails to start, handshake or register is recorded in
``host.failed`` and skipped; it never prevents other plugins from loading.
"""

import logging
import os
import stat
import threading
from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, List, Optional

from plughost.config import HostConfig
from plughost.descriptor import CapabilityError
from plughost.dispatcher import Dispatcher, PreviewTicket
from plughost.frame import PreviewMode
from plughost.errors import PlugHostError
from plughost.handshake import HandshakeError
from plughost.process import SupervisorError
from plughost.registry import Registry, RegistryEntry, RegistryError
from plughost.router import CapabilityRouter
from plughost.supervisor import Supervisor

logger = logging.getLogger(__name__)


DEFAULT_MAINTENANCE_INTERVAL = 0.25


class PluginDirectoryError(PlugHostError):
    """Plugin directory exists but cannot be read"""

    def __init__(self, path: str, reason: str):
        super().__init__(f"cannot read plugin directory {path}: {reason}")
        self.path = path


@dataclass
class FailedPlugin:
    """A plugin executable that could not be loaded"""
    path: str
    error: str


class PluginHost:
    """Discovers plugin executables and owns every component of the host

    Args:
        config: Host configuration (defaults to ``HostConfig()``)
    """

    def __init__(self, config: Optional[HostConfig] = None):
        self.config = config if config is not None else HostConfig()
        self.registry = Registry()
        self.supervisor = Supervisor(self.registry, self.config)
        self.router = CapabilityRouter(self.registry)
        self.dispatcher = Dispatcher(self.registry, self.supervisor, self.config, self.router)
        self._failed: Dict[str, FailedPlugin] = {}
        self._failed_lock = threading.Lock()
        self._maintenance_thread: Optional[threading.Thread] = None
        self._maintenance_stop = threading.Event()

    def __enter__(self) -> "PluginHost":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    @property
    def failed(self) -> List[FailedPlugin]:
        """Plugins that failed to load, in the order they failed"""
        with self._failed_lock:
            return list(self._failed.values())

    def plugins(self) -> List[RegistryEntry]:
        """Registered plugins in registration order"""
        return self.registry.snapshot()

    # -----------------------------------------------------------------
    # Discovery and loading
    # -----------------------------------------------------------------

    def discover(self) -> List[str]:
        """Paths of plugin executables in the plugin directory, sorted by filename

        Only regular executable files whose name starts with
        ``config.name_prefix`` are returned.

        Raises:
            PluginDirectoryError: If the directory exists but cannot be listed
        """
        plugin_dir = os.path.expanduser(str(self.config.plugin_dir))
        if not os.path.isdir(plugin_dir):
            logger.debug("Plugin directory %s does not exist, no plugins to load", plugin_dir)
            return []

        try:
            names = sorted(os.listdir(plugin_dir))
        except OSError as e:
            raise PluginDirectoryError(plugin_dir, str(e))

        paths = []
        for name in names:
            if not name.startswith(self.config.name_prefix):
                continue
            path = os.path.join(plugin_dir, name)
            try:
                mode = os.stat(path).st_mode
            except OSError as e:
                logger.debug("Skipping %s: %s", path, e)
                continue
            if not stat.S_ISREG(mode) or not os.access(path, os.X_OK):
                continue
            paths.append(path)
        return paths

    def load_plugins(self) -> List[RegistryEntry]:
        """Discover and load every plugin executable

        Returns the entries that loaded. Failures are logged and recorded in
        ``failed``.
        """
        if not self.config.enabled:
            logger.info("Plugin system disabled by configuration")
            return []

        paths = self.discover()
        logger.info("Found %d plugin executables in %s", len(paths), self.config.plugin_dir)

        loaded = []
        for path in paths:
            entry = self.load_plugin(path)
            if entry is not None:
                loaded.append(entry)

        logger.info("Loaded %d of %d plugins", len(loaded), len(paths))
        return loaded

    def load_plugin(self, path: str) -> Optional[RegistryEntry]:
        """Load one plugin executable; None if it failed (see ``failed``)"""
        try:
            entry = self.supervisor.launch(path)
        except (SupervisorError, HandshakeError, CapabilityError, RegistryError) as e:
            logger.warning("Failed to load plugin %s: %s", path, e)
            with self._failed_lock:
                self._failed[path] = FailedPlugin(path=path, error=str(e))
            return None

        with self._failed_lock:
            self._failed.pop(path, None)
        return entry

    def attach(self, reader: BinaryIO, writer: BinaryIO, label: Optional[str] = None) -> RegistryEntry:
        """Register a plugin already connected over a pair of streams"""
        return self.supervisor.attach(reader, writer, label)

    # -----------------------------------------------------------------
    # Previews
    # -----------------------------------------------------------------

    def plugins_for(self, path: str) -> List[str]:
        """Names of ready plugins that can preview ``path``"""
        return self.router.select(path)

    def preview(
        self,
        path: str,
        timeout: Optional[float] = None,
        callback: Optional[Callable[[PreviewTicket], None]] = None,
        mode: PreviewMode = PreviewMode.INLINE,
    ) -> Optional[PreviewTicket]:
        """Request a preview of ``path`` from the first matching plugin

        Returns None when no plugin matches; the caller falls back to its
        built-in preview.
        """
        return self.dispatcher.preview(path, timeout=timeout, callback=callback, mode=mode)

    def cancel_pending(self) -> None:
        self.dispatcher.cancel_pending()

    # -----------------------------------------------------------------
    # Lifetime
    # -----------------------------------------------------------------

    def unload(self, name: str) -> None:
        self.supervisor.unload(name)

    def start_maintenance(self, interval: float = DEFAULT_MAINTENANCE_INTERVAL) -> None:
        """Run ``Supervisor.maintain()`` every ``interval`` seconds on a background thread"""
        if self._maintenance_thread is not None:
            return
        self._maintenance_stop.clear()

        def loop() -> None:
            while not self._maintenance_stop.wait(interval):
                try:
                    self.supervisor.maintain()
                except PlugHostError as e:
                    logger.error("Plugin maintenance failed: %s", e)

        self._maintenance_thread = threading.Thread(target=loop, name="plughost-maintenance", daemon=True)
        self._maintenance_thread.start()

    def stop_maintenance(self) -> None:
        thread, self._maintenance_thread = self._maintenance_thread, None
        if thread is None:
            return
        self._maintenance_stop.set()
        thread.join()

    def shutdown(self) -> None:
        """Stop maintenance and dispatch, then terminate every plugin"""
        self.stop_maintenance()
        self.dispatcher.cancel_pending()
        self.dispatcher.close()
        self.supervisor.shutdown()
