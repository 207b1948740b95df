"""
Dedicated server supervision.

- GameServer: runs the server process and watches its console output
- CommandQueue: rate-limited FIFO in front of GameServer.send_command
"""

from .command_queue import CommandQueue
from .process import (
    BACKUP_COMPLETE_PATTERN,
    BOOT_PATTERN,
    GameServer,
    PatternTimeoutError,
    ServerError,
    ServerNotRunningError,
)

__all__ = [
    "CommandQueue",
    "GameServer",
    "BOOT_PATTERN",
    "BACKUP_COMPLETE_PATTERN",
    "ServerError",
    "ServerNotRunningError",
    "PatternTimeoutError",
]
