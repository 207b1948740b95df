"""
Collaborator protocols and error types for the backup cycle.

The backup manager only needs four narrow capabilities from the rest of
the launcher. Each is a Protocol so tests can pass plain fakes and the
launcher can pass the rate-limited CommandQueue in place of the server.

Invariants:
    - Gate-skip errors (BackupSkipped) are expected control flow and are
      never reported as failures
    - Every other BackupError marks the cycle as failed

How to change safely:
    - Protocol changes require updating GameServer, CommandQueue and
      PlayerChecker together
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class BackupError(Exception):
    """Base exception for backup cycle failures."""

    pass


class BackupSkipped(BackupError):
    """A pre-condition was not met; retry on the next tick."""

    pass


class ServerNotBootedError(BackupSkipped):
    """Backup attempted before the server finished booting."""

    def __init__(self, message: str = "server has not fully booted yet") -> None:
        super().__init__(message)


class NoPlayersOnlineError(BackupSkipped):
    """Backup skipped because nobody is (or recently was) online."""

    def __init__(self, message: str = "no players online, backup skipped") -> None:
        super().__init__(message)


class BackupTimeoutError(BackupError):
    """The backup file or completion signal never appeared in time."""

    pass


class StagingError(BackupError):
    """Converting or staging the backup failed on I/O."""

    pass


class ResticError(BackupError):
    """restic exited unsuccessfully."""

    def __init__(self, message: str, exit_code: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


@runtime_checkable
class ServerCommander(Protocol):
    """Anything that can deliver a console command to the server."""

    def send_command(self, cmd: str) -> None:
        """Send a command. Raises on delivery failure."""
        ...


@runtime_checkable
class BootChecker(Protocol):
    def has_booted(self) -> bool: ...


@runtime_checkable
class BackupCompletionWaiter(Protocol):
    """Waits for "[Server Notification] Backup complete!" in server output."""

    async def wait_for_backup_complete(self) -> None:
        """Return once the completion line is seen.

        The caller bounds the wait with a timeout or cancellation.
        """
        ...


@runtime_checkable
class PlayerGate(Protocol):
    def should_backup(self) -> bool:
        """True while players are online, and once more after the last leaves."""
        ...
