"""Worker-channel interfaces and implementations.

A channel is an opaque sink for prompt text plus a single "closed" event.
The subprocess provider runs one long-lived assistant process per agent
and feeds prompts through its stdin.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from nofx.config.schema import BackendConfig
from nofx.errors import ChannelError, ProvisioningError
from nofx.protocol.models import AgentSpec, utc_now_iso

logger = logging.getLogger(__name__)

ClosedCallback = Callable[["ChannelHandle"], Any]

DEFAULT_COMMANDS: dict[str, list[str]] = {
    "claude": ["claude"],
    "codex": ["codex"],
    "aider": ["aider", "--no-pretty", "--yes-always"],
    "shell": ["/bin/sh"],
}


@dataclass(slots=True)
class ChannelHandle:
    channel_id: str
    agent_id: str
    backend: str
    created_at: str = field(default_factory=utc_now_iso)
    closed: bool = False
    disposed: bool = False
    process: asyncio.subprocess.Process | None = None
    output_tail: deque[str] = field(default_factory=lambda: deque(maxlen=200))
    prompts_sent: int = 0


class ChannelProvider(Protocol):
    async def create_channel(self, agent_id: str, spec: AgentSpec) -> ChannelHandle: ...

    async def send_prompt(self, handle: ChannelHandle, text: str) -> None: ...

    def on_channel_closed(self, callback: ClosedCallback) -> None: ...

    async def dispose_channel(self, handle: ChannelHandle) -> None: ...


class _ClosedNotifier:
    """Shared callback bookkeeping for providers."""

    def __init__(self) -> None:
        self._closed_callbacks: list[ClosedCallback] = []

    def on_channel_closed(self, callback: ClosedCallback) -> None:
        self._closed_callbacks.append(callback)

    def _notify_closed(self, handle: ChannelHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        if handle.disposed:
            return
        logger.info("Channel %s for agent %s closed", handle.channel_id, handle.agent_id)
        for cb in list(self._closed_callbacks):
            try:
                cb(handle)
            except Exception as exc:
                logger.warning("Channel-closed callback failed for %s: %s", handle.agent_id, exc)


class SubprocessChannelProvider(_ClosedNotifier):
    """One assistant process per agent, prompts written line-wise to stdin."""

    def __init__(self, backend: BackendConfig | None = None) -> None:
        super().__init__()
        self._backend = backend or BackendConfig()
        self._ids = itertools.count(1)
        self._watchers: dict[str, asyncio.Task[None]] = {}

    def build_command(self) -> list[str]:
        cfg = self._backend
        if cfg.command:
            return list(cfg.command)
        if cfg.name not in DEFAULT_COMMANDS:
            raise ProvisioningError(f"Unsupported backend: {cfg.name!r}", retryable=False)
        cmd = list(DEFAULT_COMMANDS[cfg.name])
        if cfg.model and cfg.name in ("claude", "codex", "aider"):
            cmd.extend(["--model", cfg.model])
        return cmd

    async def create_channel(self, agent_id: str, spec: AgentSpec) -> ChannelHandle:
        cmd = self.build_command()
        env = dict(self._backend.env) if self._backend.env else None
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._backend.cwd,
                env=env,
            )
        except FileNotFoundError as exc:
            raise ProvisioningError(f"{cmd[0]} not found on PATH", retryable=False) from exc
        except OSError as exc:
            raise ProvisioningError(f"Cannot start {cmd[0]}: {exc}") from exc

        handle = ChannelHandle(
            channel_id=f"{self._backend.name}-{next(self._ids)}",
            agent_id=agent_id,
            backend=self._backend.name,
            process=process,
        )
        self._watchers[handle.channel_id] = asyncio.create_task(self._watch(handle))
        logger.info("Started %s for agent %s (pid %s, %s)", cmd[0], agent_id, process.pid, spec.name)
        return handle

    async def send_prompt(self, handle: ChannelHandle, text: str) -> None:
        process = handle.process
        if handle.closed or process is None or process.stdin is None or process.returncode is not None:
            raise ChannelError(f"Channel {handle.channel_id} is closed", channel_id=handle.channel_id)
        payload = text.strip() + "\n"
        try:
            process.stdin.write(payload.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ChannelError(
                f"Channel {handle.channel_id} rejected write: {exc}", channel_id=handle.channel_id,
            ) from exc
        handle.prompts_sent += 1

    async def dispose_channel(self, handle: ChannelHandle) -> None:
        handle.disposed = True
        process = handle.process
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except TimeoutError:
                process.kill()
                await process.wait()
        watcher = self._watchers.pop(handle.channel_id, None)
        if watcher is not None and not watcher.done():
            watcher.cancel()
        handle.closed = True

    async def _watch(self, handle: ChannelHandle) -> None:
        process = handle.process
        if process is None:
            return
        if process.stdout is not None:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                handle.output_tail.append(line.decode("utf-8", errors="replace").rstrip("\n"))
        code = await process.wait()
        logger.debug("Process for %s exited with %s", handle.agent_id, code)
        self._watchers.pop(handle.channel_id, None)
        self._notify_closed(handle)


class InMemoryChannelProvider(_ClosedNotifier):
    """Channel provider with no external process; prompts are recorded.

    ``fail_next`` makes the next N ``create_channel`` calls raise a
    retryable :class:`ProvisioningError`.
    """

    def __init__(self, *, fail_next: int = 0) -> None:
        super().__init__()
        self.fail_next = fail_next
        self.create_calls = 0
        self.prompts: dict[str, list[str]] = {}
        self.handles: dict[str, ChannelHandle] = {}
        self._ids = itertools.count(1)

    async def create_channel(self, agent_id: str, spec: AgentSpec) -> ChannelHandle:
        self.create_calls += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ProvisioningError(f"Channel for {spec.name} unavailable")
        handle = ChannelHandle(channel_id=f"memory-{next(self._ids)}", agent_id=agent_id, backend="memory")
        self.handles[agent_id] = handle
        self.prompts[agent_id] = []
        return handle

    async def send_prompt(self, handle: ChannelHandle, text: str) -> None:
        if handle.closed:
            raise ChannelError(f"Channel {handle.channel_id} is closed", channel_id=handle.channel_id)
        self.prompts.setdefault(handle.agent_id, []).append(text)
        handle.prompts_sent += 1

    async def dispose_channel(self, handle: ChannelHandle) -> None:
        handle.disposed = True
        handle.closed = True
        self.handles.pop(handle.agent_id, None)

    def close(self, agent_id: str) -> None:
        """Simulate the worker process going away."""
        handle = self.handles.get(agent_id)
        if handle is not None:
            self._notify_closed(handle)
