"""Capability Router - pick the plugins that can preview a file"""

from typing import List, Optional

from plughost.descriptor import matches
from plughost.process import PluginState
from plughost.registry import Registry


class CapabilityRouter:
    """Matches a path against the preview patterns of READY plugins

    Works on a registry snapshot, so routing never waits on plugin I/O.
    """

    def __init__(self, registry: Registry):
        self.registry = registry

    def select(self, path: str) -> List[str]:
        """Names of READY plugins whose preview pattern matches ``path``

        Results are in registration order. An empty list means no plugin
        preview is available; it is not an error.
        """
        return [
            entry.name
            for entry in self.registry.snapshot()
            if entry.process.state is PluginState.READY and matches(entry.compiled, path)
        ]

    def select_first(self, path: str) -> Optional[str]:
        """First matching plugin name, or None"""
        candidates = self.select(path)
        return candidates[0] if candidates else None
