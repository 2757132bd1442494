"""Host configuration

Supports configuration via:
1. Constructor arguments and ``with_*`` builder methods (highest priority)
2. Environment variables (PLUGHOST_*)
3. Default values
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, Optional

from plughost.io import DEFAULT_MAX_FRAME


DEFAULT_PLUGIN_DIR = Path.home() / ".config" / "plughost" / "plugins"
DEFAULT_HANDSHAKE_TIMEOUT = 2.0
DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_SHUTDOWN_GRACE = 2.0
DEFAULT_MAX_WORKERS = 4

_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RespawnPolicy:
    """Bounded, exponentially backed-off respawn of crashed plugins

    A plugin gets ``max_respawns`` respawns. The crash after that disables it
    for the rest of the session.
    """
    max_respawns: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0

    def delay(self, crashes: int) -> float:
        """Seconds to wait before the respawn that follows crash number ``crashes``"""
        if crashes <= 0:
            return 0.0
        return min(self.base_delay * (self.multiplier ** (crashes - 1)), self.max_delay)

    def exhausted(self, crashes: int) -> bool:
        return crashes > self.max_respawns


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


class HostConfig:
    """Configuration for the plugin host

    Environment variables: PLUGHOST_PLUGIN_DIR, PLUGHOST_NAME_PREFIX,
    PLUGHOST_HANDSHAKE_TIMEOUT, PLUGHOST_REQUEST_TIMEOUT, PLUGHOST_MAX_FRAME,
    PLUGHOST_MAX_RESPAWNS, PLUGHOST_DISABLED (comma separated names),
    PLUGHOST_ENABLED.
    """

    def __init__(
        self,
        plugin_dir: Optional[os.PathLike] = None,
        name_prefix: Optional[str] = None,
        handshake_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        max_frame: Optional[int] = None,
        respawn: Optional[RespawnPolicy] = None,
        disabled: Optional[Iterable[str]] = None,
        enabled: Optional[bool] = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        if plugin_dir is None:
            plugin_dir = os.getenv("PLUGHOST_PLUGIN_DIR") or DEFAULT_PLUGIN_DIR

        if name_prefix is None:
            name_prefix = os.getenv("PLUGHOST_NAME_PREFIX", "")

        if handshake_timeout is None:
            handshake_timeout = _env_float("PLUGHOST_HANDSHAKE_TIMEOUT", DEFAULT_HANDSHAKE_TIMEOUT)

        if request_timeout is None:
            request_timeout = _env_float("PLUGHOST_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)

        if max_frame is None:
            max_frame = _env_int("PLUGHOST_MAX_FRAME", DEFAULT_MAX_FRAME)

        if respawn is None:
            respawn = RespawnPolicy(max_respawns=_env_int("PLUGHOST_MAX_RESPAWNS", RespawnPolicy.max_respawns))

        if disabled is None:
            disabled = [n.strip() for n in os.getenv("PLUGHOST_DISABLED", "").split(",") if n.strip()]

        if enabled is None:
            enabled = os.getenv("PLUGHOST_ENABLED", "1").strip().lower() not in _FALSE_VALUES

        if max_frame <= 0:
            raise ValueError("max_frame must be positive")

        self.plugin_dir = Path(plugin_dir)
        self.name_prefix = name_prefix
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.max_frame = max_frame
        self.respawn = respawn
        self.disabled: FrozenSet[str] = frozenset(disabled)
        self.enabled = enabled
        self.shutdown_grace = shutdown_grace
        self.max_workers = max_workers

    def with_plugin_dir(self, plugin_dir: os.PathLike) -> "HostConfig":
        """Set the directory scanned for plugin executables"""
        self.plugin_dir = Path(plugin_dir)
        return self

    def with_name_prefix(self, prefix: str) -> "HostConfig":
        """Only consider executables whose filename starts with ``prefix``"""
        self.name_prefix = prefix
        return self

    def with_handshake_timeout(self, seconds: float) -> "HostConfig":
        self.handshake_timeout = seconds
        return self

    def with_request_timeout(self, seconds: float) -> "HostConfig":
        self.request_timeout = seconds
        return self

    def with_respawn_policy(self, policy: RespawnPolicy) -> "HostConfig":
        self.respawn = policy
        return self

    def with_disabled(self, names: Iterable[str]) -> "HostConfig":
        """Disable plugins by descriptor name or executable filename"""
        self.disabled = frozenset(names)
        return self

    def is_disabled(self, name: str) -> bool:
        return name in self.disabled
