"""Tests for PluginHost - discovery, loading, failure bookkeeping

Tests use # TEST###: comments for cross-tracking in TEST_CATALOG.md.
Uses real plugin executables written into a temporary plugin directory.
"""

import os
import time

import pytest

from conftest import HANDSHAKE_TIMEOUT
from plughost.component import TextComponent
from plughost.config import HostConfig, RespawnPolicy
from plughost.dispatcher import PluginCrashed
from plughost.host import PluginDirectoryError, PluginHost
from plughost.process import PluginState


def make_host(plugin_dir, **kwargs):
    kwargs.setdefault("handshake_timeout", HANDSHAKE_TIMEOUT)
    return PluginHost(HostConfig(plugin_dir=plugin_dir, **kwargs))


# TEST1001: Discovery returns executable regular files with the name prefix, sorted
def test_1001_discover_prefix_filter(plugin_dir, make_plugin):
    make_plugin("kiorg_plugin_b")
    make_plugin("kiorg_plugin_a")
    make_plugin("other_tool")
    (plugin_dir / "kiorg_plugin_notes.txt").write_text("not executable")
    (plugin_dir / "kiorg_plugin_dir").mkdir()

    host = make_host(plugin_dir, name_prefix="kiorg_plugin_")
    assert host.discover() == [
        str(plugin_dir / "kiorg_plugin_a"),
        str(plugin_dir / "kiorg_plugin_b"),
    ]

    host = make_host(plugin_dir, name_prefix="")
    assert [os.path.basename(p) for p in host.discover()] == ["kiorg_plugin_a", "kiorg_plugin_b", "other_tool"]


# TEST1002: A missing plugin directory yields no plugins
def test_1002_missing_directory(tmp_path):
    host = make_host(tmp_path / "nowhere")
    assert host.discover() == []
    assert host.load_plugins() == []
    assert host.failed == []


# TEST1003: An unreadable plugin directory is reported
@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root can read any directory")
def test_1003_unreadable_directory(plugin_dir):
    plugin_dir.chmod(0)
    try:
        with pytest.raises(PluginDirectoryError):
            make_host(plugin_dir).discover()
    finally:
        plugin_dir.chmod(0o755)


# TEST1004: One broken plugin is recorded as failed and the others still load
def test_1004_failed_plugin_isolated(plugin_dir, make_plugin):
    make_plugin("a_broken", name="broken", startup="sys.exit(1)")
    make_plugin("b_text", name="text", pattern=r"\.txt$")

    with make_host(plugin_dir) as host:
        loaded = host.load_plugins()

        assert [entry.name for entry in loaded] == ["text"]
        assert [entry.name for entry in host.plugins()] == ["text"]
        assert [f.path for f in host.failed] == [str(plugin_dir / "a_broken")]
        assert host.failed[0].error

        ticket = host.preview("/home/me/notes.txt")
        assert ticket.result(timeout=10)[1] == TextComponent("Hello from notes.txt")


# TEST1005: A later successful load of a failed path clears its failure
def test_1005_failure_cleared_on_success(plugin_dir, make_plugin):
    path = make_plugin("flaky", name="flaky", startup="sys.exit(1)")
    with make_host(plugin_dir) as host:
        assert host.load_plugin(path) is None
        assert len(host.failed) == 1

        make_plugin("flaky", name="flaky")
        assert host.load_plugin(path) is not None
        assert host.failed == []


# TEST1006: Disabling the plugin system loads nothing
def test_1006_disabled_system(plugin_dir, make_plugin):
    make_plugin("a_plugin", name="a")
    with make_host(plugin_dir, enabled=False) as host:
        assert host.load_plugins() == []
        assert host.plugins() == []


# TEST1007: A plugin disabled by name is recorded as failed, not loaded
def test_1007_disabled_plugin(plugin_dir, make_plugin):
    make_plugin("a_plugin", name="a")
    make_plugin("b_plugin", name="b")
    with make_host(plugin_dir, disabled=["b"]) as host:
        host.load_plugins()
        assert [entry.name for entry in host.plugins()] == ["a"]
        assert [os.path.basename(f.path) for f in host.failed] == ["b_plugin"]


# TEST1008: Files nobody previews fall back to the caller with None
def test_1008_no_matching_plugin(plugin_dir, make_plugin):
    make_plugin("md_plugin", name="md", pattern=r"\.md$")
    with make_host(plugin_dir) as host:
        host.load_plugins()
        assert host.plugins_for("a.md") == ["md"]
        assert host.plugins_for("a.pdf") == []
        assert host.preview("a.pdf") is None


# TEST1009: The maintenance thread respawns a crashed plugin in the background
def test_1009_maintenance_respawns(plugin_dir, make_plugin):
    make_plugin("crasher", name="crasher", preview='if path == "crash.txt":\n    os._exit(3)\nreturn []')
    with make_host(plugin_dir, respawn=RespawnPolicy(base_delay=0.0)) as host:
        host.load_plugins()
        first = host.registry.get("crasher")
        host.start_maintenance(interval=0.05)

        ticket = host.preview("crash.txt")
        with pytest.raises(PluginCrashed):
            ticket.result(timeout=10)

        deadline = time.monotonic() + 15
        while host.registry.get("crasher") is first and time.monotonic() < deadline:
            time.sleep(0.05)

        second = host.registry.get("crasher")
        assert second is not first
        assert second.process.state is PluginState.READY
        host.stop_maintenance()


# TEST1010: Shutdown terminates every loaded plugin and empties the registry
def test_1010_shutdown(plugin_dir, make_plugin):
    make_plugin("a_plugin", name="a")
    host = make_host(plugin_dir)
    host.load_plugins()
    entry = host.registry.get("a")

    host.shutdown()

    assert host.plugins() == []
    assert entry.process.state is PluginState.TERMINATED
    assert entry.process.returncode is not None


# TEST1011: unload removes one plugin by name
def test_1011_unload(plugin_dir, make_plugin):
    make_plugin("a_plugin", name="a")
    make_plugin("b_plugin", name="b")
    with make_host(plugin_dir) as host:
        host.load_plugins()
        host.unload("a")
        assert [entry.name for entry in host.plugins()] == ["b"]
