"""Registry of live plugins

The registry maps a plugin name to its descriptor, compiled capabilities and
supervisor-owned process. It is shared by the dispatch path and the
supervisor's maintenance path, so every operation holds the lock only for the
map access itself and never across plugin I/O.

Only the supervisor mutates the registry: one insert per successful handshake,
one remove per teardown.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional

from plughost.descriptor import CompiledCapabilities, PluginDescriptor
from plughost.errors import PlugHostError

if TYPE_CHECKING:
    from plughost.process import PluginProcess


class RegistryError(PlugHostError):
    """Base exception for registry errors"""
    pass


class DuplicatePluginError(RegistryError):
    """A plugin with the same name is already registered"""

    def __init__(self, name: str):
        super().__init__(f"plugin '{name}' is already registered")
        self.name = name


class PluginNotFoundError(RegistryError):
    """No plugin registered under this name"""

    def __init__(self, name: str):
        super().__init__(f"plugin '{name}' not found")
        self.name = name


@dataclass
class RegistryEntry:
    """One registered plugin

    ``crashes`` counts consecutive crashes and survives respawns;
    ``next_respawn_at`` is the supervisor clock time after which a crashed
    entry may be respawned (None when no respawn is scheduled).
    """
    descriptor: PluginDescriptor
    compiled: CompiledCapabilities
    process: "PluginProcess"
    path: Optional[str] = None
    load_time: float = 0.0
    crashes: int = 0
    next_respawn_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.descriptor.name


class Registry:
    """Thread-safe, insertion-ordered name → RegistryEntry map"""

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = OrderedDict()
        self._lock = threading.Lock()

    def insert(self, entry: RegistryEntry) -> None:
        """Register a plugin after a successful handshake

        Raises:
            DuplicatePluginError: If the name is taken
        """
        with self._lock:
            if entry.name in self._entries:
                raise DuplicatePluginError(entry.name)
            self._entries[entry.name] = entry

    def replace(self, old_name: str, entry: RegistryEntry) -> None:
        """Swap in the entry of a respawned plugin

        The new entry keeps the old registration slot when the name is
        unchanged; a respawned binary reporting a different name moves to the
        end of the order.

        Raises:
            PluginNotFoundError: If ``old_name`` is not registered
            DuplicatePluginError: If the new name belongs to another plugin
        """
        with self._lock:
            if old_name not in self._entries:
                raise PluginNotFoundError(old_name)
            if entry.name != old_name:
                if entry.name in self._entries:
                    raise DuplicatePluginError(entry.name)
                del self._entries[old_name]
            self._entries[entry.name] = entry

    def remove(self, name: str) -> RegistryEntry:
        """Remove and return an entry

        Raises:
            PluginNotFoundError: If ``name`` is not registered
        """
        with self._lock:
            entry = self._entries.pop(name, None)
        if entry is None:
            raise PluginNotFoundError(name)
        return entry

    def discard(self, entry: RegistryEntry) -> bool:
        """Remove ``entry`` only if it is still the one registered under its name"""
        with self._lock:
            if self._entries.get(entry.name) is not entry:
                return False
            del self._entries[entry.name]
            return True

    def get(self, name: str) -> Optional[RegistryEntry]:
        with self._lock:
            return self._entries.get(name)

    def snapshot(self) -> List[RegistryEntry]:
        """All entries in registration order, copied out of the lock"""
        with self._lock:
            return list(self._entries.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
