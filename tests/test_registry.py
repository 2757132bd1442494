"""Tests for the plugin registry and capability router

Tests use # TEST###: comments for cross-tracking in TEST_CATALOG.md.
"""

import io
import threading

import pytest

from plughost.descriptor import Capabilities, PluginDescriptor, PreviewCapability, compile_capabilities
from plughost.process import PluginProcess, PluginState
from plughost.registry import DuplicatePluginError, PluginNotFoundError, Registry, RegistryEntry
from plughost.router import CapabilityRouter


def make_entry(name, pattern=None, state=PluginState.READY, path=None):
    """Registry entry backed by an idle in-memory process in ``state``"""
    preview = PreviewCapability(pattern) if pattern is not None else None
    descriptor = PluginDescriptor(
        name=name,
        version="1.0.0",
        description=f"{name} plugin",
        capabilities=Capabilities(preview=preview),
    )
    process = PluginProcess(label=name, reader=io.BytesIO(), writer=io.BytesIO())
    process.transition(PluginState.HANDSHAKING)
    if state is not PluginState.HANDSHAKING:
        process.transition(PluginState.READY)
    if state is PluginState.BUSY:
        process.transition(PluginState.BUSY)
    elif state is PluginState.CRASHED:
        process.crash("test crash")
    return RegistryEntry(
        descriptor=descriptor,
        compiled=compile_capabilities(descriptor.capabilities),
        process=process,
        path=path,
    )


# TEST401: Inserted entries are returned in registration order
def test_401_insert_and_order():
    registry = Registry()
    for name in ["b", "a", "c"]:
        registry.insert(make_entry(name))
    assert registry.names() == ["b", "a", "c"]
    assert [e.name for e in registry.snapshot()] == ["b", "a", "c"]
    assert "a" in registry
    assert len(registry) == 3


# TEST402: A second plugin reporting the same name is rejected
def test_402_duplicate_name_rejected():
    registry = Registry()
    first = make_entry("demo")
    registry.insert(first)
    with pytest.raises(DuplicatePluginError):
        registry.insert(make_entry("demo"))
    assert registry.get("demo") is first


# TEST403: remove returns the entry and fails for unknown names
def test_403_remove():
    registry = Registry()
    entry = make_entry("demo")
    registry.insert(entry)
    assert registry.remove("demo") is entry
    assert registry.get("demo") is None
    with pytest.raises(PluginNotFoundError):
        registry.remove("demo")


# TEST404: discard removes only the exact entry still registered
def test_404_discard_is_identity_checked():
    registry = Registry()
    old = make_entry("demo")
    registry.insert(old)
    new = make_entry("demo")
    registry.replace("demo", new)

    assert registry.discard(old) is False
    assert registry.get("demo") is new
    assert registry.discard(new) is True
    assert len(registry) == 0


# TEST405: replace keeps the slot for the same name and moves a renamed plugin to the end
def test_405_replace():
    registry = Registry()
    for name in ["a", "b", "c"]:
        registry.insert(make_entry(name))

    registry.replace("a", make_entry("a"))
    assert registry.names() == ["a", "b", "c"]

    registry.replace("a", make_entry("a2"))
    assert registry.names() == ["b", "c", "a2"]

    with pytest.raises(DuplicatePluginError):
        registry.replace("b", make_entry("c"))
    with pytest.raises(PluginNotFoundError):
        registry.replace("missing", make_entry("x"))


# TEST406: Concurrent inserts of distinct names all land
def test_406_concurrent_inserts():
    registry = Registry()
    entries = [make_entry(f"p{i}") for i in range(50)]
    threads = [threading.Thread(target=registry.insert, args=(e,)) for e in entries]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(registry.names()) == sorted(e.name for e in entries)


# TEST407: Router returns only plugins whose pattern matches the file name
def test_407_router_selects_matching_plugin():
    registry = Registry()
    registry.insert(make_entry("text", r"\.txt$"))
    registry.insert(make_entry("markdown", r"\.md$"))
    router = CapabilityRouter(registry)

    assert router.select("/docs/readme.md") == ["markdown"]
    assert router.select("/docs/readme.txt") == ["text"]
    assert router.select("/docs/report.pdf") == []
    assert router.select_first("/docs/report.pdf") is None


# TEST408: Several matching plugins are returned in registration order
def test_408_router_registration_order():
    registry = Registry()
    registry.insert(make_entry("second", r"\.txt$"))
    registry.insert(make_entry("any", r"."))
    registry.insert(make_entry("first", r"notes"))
    router = CapabilityRouter(registry)

    assert router.select("notes.txt") == ["second", "any", "first"]
    assert router.select_first("notes.txt") == "second"


# TEST409: Plugins that are not READY or have no preview capability are never selected
def test_409_router_skips_unavailable():
    registry = Registry()
    registry.insert(make_entry("busy", r"\.txt$", state=PluginState.BUSY))
    registry.insert(make_entry("crashed", r"\.txt$", state=PluginState.CRASHED))
    registry.insert(make_entry("no-preview", None))
    registry.insert(make_entry("ready", r"\.txt$"))
    router = CapabilityRouter(registry)

    assert router.select("a.txt") == ["ready"]
