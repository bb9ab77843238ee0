"""Channel provider lookup for configured backends."""

from __future__ import annotations

from nofx.adapters.base import (
    DEFAULT_COMMANDS,
    ChannelProvider,
    InMemoryChannelProvider,
    SubprocessChannelProvider,
)
from nofx.config.schema import BackendConfig
from nofx.errors import ConfigurationError


def get_channel_provider(backend: BackendConfig) -> ChannelProvider:
    name = backend.name.lower()
    if name == "memory":
        return InMemoryChannelProvider()
    if name in DEFAULT_COMMANDS or backend.command:
        return SubprocessChannelProvider(backend)
    raise ConfigurationError(f"Unsupported backend: {backend.name}")
