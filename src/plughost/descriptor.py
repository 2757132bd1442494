"""Plugin descriptor and capability model

A plugin describes itself once, during the handshake, with a descriptor:

```
{
  "name": "demo",
  "version": "1.0.0",
  "description": "Demo preview plugin",
  "homepage": "https://example.com",        (optional)
  "capabilities": {
    "preview": {"file_pattern": "\\.txt$"}
  }
}
```

The descriptor is immutable once registered. Capability patterns are compiled
before a plugin is registered; one invalid pattern rejects the whole plugin.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern

from plughost.errors import PlugHostError


PREVIEW_CAPABILITY = "preview"


class DescriptorError(PlugHostError):
    """Descriptor map is missing a field or has a field of the wrong type"""
    pass


class CapabilityError(PlugHostError):
    """A declared capability cannot be compiled"""

    def __init__(self, kind: str, pattern: str, reason: str):
        super().__init__(f"invalid {kind} pattern {pattern!r}: {reason}")
        self.kind = kind
        self.pattern = pattern
        self.reason = reason


@dataclass(frozen=True)
class PreviewCapability:
    """Ability to preview files whose name matches ``file_pattern``"""
    file_pattern: str

    def to_dict(self) -> Dict[str, Any]:
        return {"file_pattern": self.file_pattern}

    @classmethod
    def from_dict(cls, data: Any) -> "PreviewCapability":
        if not isinstance(data, dict):
            raise DescriptorError("preview capability must be a map")
        pattern = data.get("file_pattern")
        if not isinstance(pattern, str):
            raise DescriptorError("preview capability missing string 'file_pattern'")
        return cls(file_pattern=pattern)


@dataclass(frozen=True)
class Capabilities:
    """Capabilities declared by a plugin, keyed by kind

    ``extra`` keeps capability kinds this host does not know about. They are
    carried along but never used for routing.
    """
    preview: Optional[PreviewCapability] = None
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)

    def kinds(self) -> List[str]:
        """Names of all declared capability kinds"""
        kinds = [PREVIEW_CAPABILITY] if self.preview is not None else []
        kinds.extend(self.extra.keys())
        return kinds

    def is_empty(self) -> bool:
        return self.preview is None and not self.extra

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        if self.preview is not None:
            result[PREVIEW_CAPABILITY] = self.preview.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "Capabilities":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise DescriptorError("capabilities must be a map")

        preview = None
        extra = {}
        for kind, record in data.items():
            if record is None:
                continue
            if kind == PREVIEW_CAPABILITY:
                preview = PreviewCapability.from_dict(record)
            else:
                extra[str(kind)] = record
        return cls(preview=preview, extra=extra)


@dataclass(frozen=True)
class PluginDescriptor:
    """Identity and capabilities a plugin reports during the handshake"""
    name: str
    version: str
    description: str
    homepage: Optional[str] = None
    capabilities: Capabilities = field(default_factory=Capabilities)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to CBOR-serializable dict"""
        result = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "capabilities": self.capabilities.to_dict(),
        }

        if self.homepage is not None:
            result["homepage"] = self.homepage

        return result

    @classmethod
    def from_dict(cls, data: Any) -> "PluginDescriptor":
        """Parse from dict

        Raises:
            DescriptorError: If a required field is missing or mistyped
        """
        if not isinstance(data, dict):
            raise DescriptorError("descriptor must be a map")

        for key in ("name", "version", "description"):
            if not isinstance(data.get(key), str):
                raise DescriptorError(f"descriptor missing string '{key}'")

        if not data["name"]:
            raise DescriptorError("descriptor name must not be empty")

        homepage = data.get("homepage")
        if homepage is not None and not isinstance(homepage, str):
            raise DescriptorError("descriptor 'homepage' must be a string")

        return cls(
            name=data["name"],
            version=data["version"],
            description=data["description"],
            homepage=homepage,
            capabilities=Capabilities.from_dict(data.get("capabilities")),
        )


@dataclass(frozen=True)
class CompiledCapabilities:
    """Capabilities with every pattern compiled, ready for routing"""
    preview: Optional[Pattern] = None

    def can_preview(self) -> bool:
        return self.preview is not None


def compile_capabilities(capabilities: Capabilities) -> CompiledCapabilities:
    """Compile every declared pattern

    Fails closed: an invalid pattern raises rather than dropping the
    capability, so the plugin is never registered with a partial set.

    Raises:
        CapabilityError: If any pattern does not compile
    """
    preview = None
    if capabilities.preview is not None:
        pattern = capabilities.preview.file_pattern
        try:
            preview = re.compile(pattern)
        except re.error as e:
            raise CapabilityError(PREVIEW_CAPABILITY, pattern, str(e))
    return CompiledCapabilities(preview=preview)


def matches(compiled: CompiledCapabilities, path: str) -> bool:
    """Test the preview pattern against the final component of ``path``

    Matching is case-sensitive and unanchored, so ``\\.txt$`` matches
    ``notes.txt`` and ``/home/me/notes.txt`` but not ``notes.TXT``.
    """
    if compiled.preview is None:
        return False
    filename = os.path.basename(path)
    return compiled.preview.search(filename) is not None
