"""Shared fixtures for plughost tests

Plugins are simulated two ways:

- In-process plugins run on a thread behind a pair of OS pipes and are
  registered with ``Supervisor.attach``. Pipes give the same EOF behavior as
  a child's stdio.
- Real plugin executables are small scripts built on plughost.plugin_runtime
  with a ``sys.executable`` shebang, for spawn, crash, timeout and respawn
  behavior.

Pipe lifecycle rules:
- The plugin thread closes only its own ends, after its loop returns
- The host closes the write end it was given when it tears the plugin down
- The host-side read end is closed by the fixture after the plugin thread exits
"""

import os
import stat
import sys
import textwrap
import threading
from pathlib import Path

import pytest

from plughost.component import TextComponent, TitleComponent
from plughost.descriptor import Capabilities, PluginDescriptor, PreviewCapability
from plughost.plugin_runtime import PluginHandler


SRC_DIR = Path(__file__).resolve().parent.parent / "src"

# Generous bound for spawning a Python interpreter and importing plughost
HANDSHAKE_TIMEOUT = 10.0


@pytest.fixture(autouse=True)
def plugin_pythonpath(monkeypatch):
    """Let spawned plugin scripts import plughost from the source tree"""
    existing = os.environ.get("PYTHONPATH")
    value = str(SRC_DIR) if not existing else str(SRC_DIR) + os.pathsep + existing
    monkeypatch.setenv("PYTHONPATH", value)


class DemoPlugin(PluginHandler):
    """In-process plugin; ``preview(path)`` overrides the default components"""

    def __init__(self, name="demo", pattern=r"\.txt$", version="1.0.0", preview=None):
        self.name = name
        self.pattern = pattern
        self.version = version
        self.preview = preview

    def metadata(self):
        preview = PreviewCapability(self.pattern) if self.pattern is not None else None
        return PluginDescriptor(
            name=self.name,
            version=self.version,
            description="Demo plugin",
            capabilities=Capabilities(preview=preview),
        )

    def on_preview(self, path):
        if self.preview is not None:
            return self.preview(path)
        return [TitleComponent("Demo"), TextComponent("Hello from " + os.path.basename(path))]


class PipePlugin:
    """A plugin running on a thread, connected to the host by two pipes

    ``target(reader, writer)`` is the plugin body: a PluginHandler's ``serve``
    or a hand-written frame exchange.
    """

    def __init__(self, target):
        # Channel 1: plugin writes → host reads
        host_read_fd, plugin_write_fd = os.pipe()
        # Channel 2: host writes → plugin reads
        plugin_read_fd, host_write_fd = os.pipe()

        self.host_reader = os.fdopen(host_read_fd, "rb")
        self.host_writer = os.fdopen(host_write_fd, "wb")
        self.plugin_reader = os.fdopen(plugin_read_fd, "rb")
        self.plugin_writer = os.fdopen(plugin_write_fd, "wb")
        self.error = None

        self.thread = threading.Thread(target=self._run, args=(target,), daemon=True)
        self.thread.start()

    def _run(self, target):
        try:
            target(self.plugin_reader, self.plugin_writer)
        except Exception as e:
            self.error = e
        finally:
            for stream in (self.plugin_writer, self.plugin_reader):
                try:
                    stream.close()
                except OSError:
                    pass

    def close(self):
        """Close the host ends (if the host did not) and wait for the plugin thread"""
        try:
            self.host_writer.close()
        except OSError:
            pass
        self.thread.join(timeout=5)
        self.host_reader.close()


@pytest.fixture
def pipe_plugin():
    """Factory: start an in-process plugin, returns its PipePlugin"""
    plugins = []

    def start(target):
        plugin = PipePlugin(target)
        plugins.append(plugin)
        return plugin

    yield start

    for plugin in plugins:
        plugin.close()


PLUGIN_TEMPLATE = '''#!{python}
import os
import sys
import time

from plughost import (
    Capabilities,
    PluginDescriptor,
    PluginHandler,
    PreviewCapability,
    PreviewError,
    TextComponent,
    TitleComponent,
)

{startup}


class TestPlugin(PluginHandler):
    def metadata(self):
        return PluginDescriptor(
            name={name!r},
            version={version!r},
            description="Test plugin",
            capabilities=Capabilities(preview=PreviewCapability({pattern!r})),
        )

    def on_preview(self, path):
{preview}


if __name__ == "__main__":
    sys.exit(TestPlugin().run())
'''

DEFAULT_PREVIEW = 'return [TitleComponent("Test"), TextComponent("Hello from " + os.path.basename(path))]'


def write_plugin_script(
    path,
    name="test",
    version="1.0.0",
    pattern=r"\.txt$",
    preview=DEFAULT_PREVIEW,
    startup="",
):
    """Write an executable plugin script and return its path as a string"""
    source = PLUGIN_TEMPLATE.format(
        python=sys.executable,
        name=name,
        version=version,
        pattern=pattern,
        preview=textwrap.indent(textwrap.dedent(preview).strip(), " " * 8),
        startup=textwrap.dedent(startup).strip(),
    )
    path = Path(path)
    path.write_text(source)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def spawn_counter(counter_path):
    """Startup snippet that appends one line to ``counter_path`` per spawn"""
    return f'with open({str(counter_path)!r}, "a") as counter:\n    counter.write("spawn\\n")'


def read_spawn_count(counter_path):
    try:
        with open(counter_path) as f:
            return len(f.readlines())
    except FileNotFoundError:
        return 0


@pytest.fixture
def plugin_dir(tmp_path):
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def make_plugin(plugin_dir):
    """Factory: write a plugin executable into ``plugin_dir``"""

    def make(filename, **kwargs):
        return write_plugin_script(plugin_dir / filename, **kwargs)

    return make
