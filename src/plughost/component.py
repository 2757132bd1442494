"""Preview components returned by plugins

A preview is a list of components. Each component is a CBOR map tagged with
a ``type`` key:

```
{"type": "Text", "text": "hello world"}
{"type": "Title", "text": "Demo"}
{"type": "Image", "source": {"type": "Path", "value": "/tmp/a.png"}, "interactive": false}
{"type": "Table", "headers": ["k", "v"], "rows": [["a", "1"]]}
```

The set of component kinds grows over time. A kind this host does not know
decodes as ``UnknownComponent`` so that one new component never causes the
whole preview to be rejected.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union


COMPONENT_TAG_KEY = "type"


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"component field '{key}' must be a string")
    return value


class Component:
    """Base class for all preview components"""

    kind: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class TextComponent(Component):
    """Plain text block"""
    text: str

    kind: ClassVar[str] = "Text"

    def to_dict(self) -> Dict[str, Any]:
        return {COMPONENT_TAG_KEY: self.kind, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextComponent":
        return cls(text=_require_str(data, "text"))


@dataclass
class TitleComponent(Component):
    """Heading shown above the rest of the preview"""
    text: str

    kind: ClassVar[str] = "Title"

    def to_dict(self) -> Dict[str, Any]:
        return {COMPONENT_TAG_KEY: self.kind, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TitleComponent":
        return cls(text=_require_str(data, "text"))


@dataclass
class ImagePath:
    """Image loaded by the renderer from a local path"""
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "Path", "value": self.path}


@dataclass
class ImageBytes:
    """Inline image data

    Args:
        format: Image format name (e.g. "Png")
        data: Encoded image bytes, must conform to ``format``
        uid: Unique identifier the renderer can cache the image under
    """
    format: str
    data: bytes
    uid: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "Bytes",
            "value": {"format": self.format, "data": self.data, "uid": self.uid},
        }


ImageSource = Union[ImagePath, ImageBytes]


def image_source_from_dict(data: Any) -> ImageSource:
    """Parse an image source map"""
    if not isinstance(data, dict):
        raise ValueError("image source must be a map")
    source_type = data.get("type")
    value = data.get("value")
    if source_type == "Path":
        if not isinstance(value, str):
            raise ValueError("image path must be a string")
        return ImagePath(path=value)
    if source_type == "Bytes":
        if not isinstance(value, dict):
            raise ValueError("image bytes value must be a map")
        raw = value.get("data")
        if not isinstance(raw, (bytes, bytearray)):
            raise ValueError("image data must be a byte string")
        return ImageBytes(
            format=_require_str(value, "format"),
            data=bytes(raw),
            uid=_require_str(value, "uid"),
        )
    raise ValueError(f"unknown image source type: {source_type!r}")


@dataclass
class ImageComponent(Component):
    """Image, optionally zoomable/pannable by the user"""
    source: ImageSource
    interactive: bool = False

    kind: ClassVar[str] = "Image"

    @classmethod
    def from_source(cls, source: ImageSource) -> "ImageComponent":
        return cls(source=source, interactive=False)

    @classmethod
    def from_source_interactive(cls, source: ImageSource) -> "ImageComponent":
        return cls(source=source, interactive=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            COMPONENT_TAG_KEY: self.kind,
            "source": self.source.to_dict(),
            "interactive": self.interactive,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageComponent":
        interactive = data.get("interactive", False)
        if not isinstance(interactive, bool):
            raise ValueError("component field 'interactive' must be a bool")
        return cls(source=image_source_from_dict(data.get("source")), interactive=interactive)


@dataclass
class TableComponent(Component):
    """Table of string cells with optional header row"""
    rows: List[List[str]]
    headers: Optional[List[str]] = None

    kind: ClassVar[str] = "Table"

    def to_dict(self) -> Dict[str, Any]:
        return {
            COMPONENT_TAG_KEY: self.kind,
            "headers": self.headers,
            "rows": self.rows,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableComponent":
        headers = data.get("headers")
        if headers is not None and not _is_str_list(headers):
            raise ValueError("table headers must be a list of strings")
        rows = data.get("rows")
        if not isinstance(rows, list) or not all(_is_str_list(row) for row in rows):
            raise ValueError("table rows must be a list of string lists")
        return cls(rows=[list(row) for row in rows], headers=list(headers) if headers is not None else None)


@dataclass
class UnknownComponent(Component):
    """Placeholder for a component kind this host does not understand

    The received fields are kept so the renderer can show something like
    "unsupported content" and so the component can be re-encoded unchanged.
    """
    unknown_kind: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.fields)
        result[COMPONENT_TAG_KEY] = self.unknown_kind
        return result


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


_COMPONENT_TYPES = {
    TextComponent.kind: TextComponent,
    TitleComponent.kind: TitleComponent,
    ImageComponent.kind: ImageComponent,
    TableComponent.kind: TableComponent,
}


def component_from_dict(data: Any) -> Component:
    """Parse one component map

    Raises:
        ValueError: If ``data`` is not a map, or a known kind has bad fields
    """
    if not isinstance(data, dict):
        raise ValueError("component must be a map")
    kind = data.get(COMPONENT_TAG_KEY)
    component_cls = _COMPONENT_TYPES.get(kind) if isinstance(kind, str) else None
    if component_cls is None:
        fields = {k: v for k, v in data.items() if k != COMPONENT_TAG_KEY}
        return UnknownComponent(unknown_kind=str(kind) if kind is not None else "", fields=fields)
    return component_cls.from_dict(data)


def components_from_list(data: Any) -> List[Component]:
    """Parse a list of component maps"""
    if not isinstance(data, list):
        raise ValueError("components must be a list")
    return [component_from_dict(item) for item in data]
