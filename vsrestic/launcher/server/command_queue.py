"""
Rate-limited command relay for the game server console.

Commands from the backup manager and from stdin go through one FIFO so
the server never receives two commands closer together than min_delay.

Invariants:
    - Commands are delivered in submission order
    - Consecutive deliveries are at least min_delay_seconds apart
    - stop() delivers everything already queued before returning
    - send_command() never raises; failures go to on_error
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_MIN_COMMAND_DELAY_SECONDS = 0.1
DEFAULT_MAX_PENDING = 100


class CommandSender(Protocol):
    def send_command(self, cmd: str) -> None: ...


class CommandQueue:
    """Queues console commands and sends them with a minimum spacing.

    Drop-in replacement for the server wherever a ServerCommander is
    expected.

    Example:
        >>> queue = CommandQueue(sender=server)
        >>> queue.start()
        >>> queue.send_command("/genbackup")
        >>> await queue.stop()
    """

    def __init__(
        self,
        sender: CommandSender,
        min_delay_seconds: float = DEFAULT_MIN_COMMAND_DELAY_SECONDS,
        max_pending: int = DEFAULT_MAX_PENDING,
        on_error: Callable[[str, Exception | None], None] | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            sender: Underlying command sender (usually the GameServer)
            min_delay_seconds: Minimum time between two sends
            max_pending: Buffer size; commands beyond it are dropped
            on_error: Called with (cmd, error) on send failure, or
                (cmd, None) when a command is dropped because the buffer is full
        """
        self.sender = sender
        self.min_delay_seconds = (
            min_delay_seconds if min_delay_seconds > 0 else DEFAULT_MIN_COMMAND_DELAY_SECONDS
        )
        self.max_pending = max_pending
        self.on_error = on_error

        self._queue: asyncio.Queue[str | None] | None = None
        self._task: asyncio.Task | None = None
        self._started = False
        self._last_sent = 0.0

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Start processing. Must be called from a running event loop."""
        if self._started:
            return

        self._queue = asyncio.Queue(maxsize=self.max_pending)
        self._started = True
        self._task = asyncio.get_running_loop().create_task(self._process_loop())

    async def stop(self) -> None:
        """Stop accepting commands and wait for pending ones to be sent."""
        if not self._started:
            return
        self._started = False

        assert self._queue is not None
        await self._queue.put(None)
        if self._task is not None:
            await self._task
            self._task = None

    def submit(self, cmd: str) -> None:
        """Queue a command. Silently ignored if the queue is not running."""
        if not self._started or self._queue is None:
            return

        try:
            self._queue.put_nowait(cmd)
        except asyncio.QueueFull:
            logger.warning("Command queue full, dropping command", extra={"command": cmd})
            if self.on_error is not None:
                self.on_error(cmd, None)

    def send_command(self, cmd: str) -> None:
        self.submit(cmd)

    async def _process_loop(self) -> None:
        assert self._queue is not None
        while True:
            cmd = await self._queue.get()
            if cmd is None:
                return
            await self._send_with_delay(cmd)

    async def _send_with_delay(self, cmd: str) -> None:
        elapsed = time.monotonic() - self._last_sent
        if elapsed < self.min_delay_seconds:
            await asyncio.sleep(self.min_delay_seconds - elapsed)

        error: Exception | None = None
        try:
            self.sender.send_command(cmd)
        except Exception as e:
            error = e
        self._last_sent = time.monotonic()

        if error is not None:
            logger.warning(f"Failed to send command {cmd!r}: {error}")
            if self.on_error is not None:
                self.on_error(cmd, error)
