"""
restic subprocess wrapper.

restic is treated as an opaque tool invoked with four subcommands:
    restic cat config          - probe; exit 10 means "no repository"
    restic init                - create the repository
    restic backup <dir>        - snapshot the staging directory
    restic forget <opts> --prune

Repository location and password come from RESTIC_REPOSITORY and
RESTIC_PASSWORD in the process environment; restic reads them itself.

Invariants:
    - init only runs after cat config exits with REPO_NOT_INITIALIZED_EXIT
    - Any other non-zero exit is a ResticError
    - A cancelled call kills its subprocess before re-raising

How to change safely:
    - Exit code 10 for a missing repository requires restic >= 0.17.0
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .base import ResticError

logger = logging.getLogger(__name__)

REPO_NOT_INITIALIZED_EXIT = 10

# (name, *args) -> (exit_code, combined_output)
CommandRunner = Callable[..., Awaitable[tuple[int, str]]]


async def run_command(name: str, *args: str) -> tuple[int, str]:
    """Run a command, returning its exit code and combined stdout/stderr.

    Raises:
        OSError: If the executable cannot be started
    """
    proc = await asyncio.create_subprocess_exec(
        name,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        output, _ = await proc.communicate()
    except asyncio.CancelledError:
        _kill(proc)
        await proc.wait()
        raise
    return proc.returncode if proc.returncode is not None else -1, output.decode(
        "utf-8", errors="replace"
    )


async def run_command_streaming(name: str, *args: str) -> int:
    """Run a command with output passed straight through to our stdout/stderr."""
    proc = await asyncio.create_subprocess_exec(name, *args)
    try:
        return await proc.wait()
    except asyncio.CancelledError:
        _kill(proc)
        await proc.wait()
        raise


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class ResticClient:
    """Runs restic for the backup manager.

    Attributes:
        binary: restic executable name or path
        command_runner: Optional replacement for run_command (tests)

    Example:
        >>> client = ResticClient()
        >>> await client.backup("/backupcache/staging")
        >>> await client.forget_prune("--keep-daily 7 --keep-weekly 4")
    """

    def __init__(self, binary: str = "restic", command_runner: CommandRunner | None = None) -> None:
        self.binary = binary
        self.command_runner = command_runner

    async def _run_captured(self, *args: str) -> tuple[int, str]:
        runner = self.command_runner or run_command
        try:
            return await runner(self.binary, *args)
        except OSError as e:
            raise ResticError(f"failed to run {self.binary} {' '.join(args)}: {e}") from e

    async def ensure_repo_initialized(self) -> None:
        """Initialize the repository if `restic cat config` reports it missing.

        Raises:
            ResticError: If the probe fails for any other reason, or init fails
        """
        exit_code, output = await self._run_captured("cat", "config")

        if exit_code == 0:
            return

        if exit_code == REPO_NOT_INITIALIZED_EXIT:
            logger.info("restic repository not initialized, running restic init")
            init_code, init_output = await self._run_captured("init")
            if init_code != 0:
                raise ResticError(
                    f"restic init failed with exit code {init_code}",
                    exit_code=init_code,
                    output=init_output,
                )
            logger.info("restic repository initialized")
            return

        raise ResticError(
            f"restic cat config failed with exit code {exit_code}\nOutput: {output}",
            exit_code=exit_code,
            output=output,
        )

    async def backup(self, staging_dir: str) -> None:
        """Initialize if needed, then snapshot staging_dir."""
        await self.ensure_repo_initialized()

        if self.command_runner is not None:
            exit_code, _ = await self._run_captured("backup", staging_dir)
        else:
            exit_code = await self._run_streaming("backup", staging_dir)

        if exit_code != 0:
            raise ResticError(f"restic backup failed with exit code {exit_code}", exit_code=exit_code)

    async def forget_prune(self, retention: str) -> None:
        """Apply a retention policy, e.g. "--keep-daily 7 --keep-weekly 4"."""
        args = ["forget", *retention.split(), "--prune"]
        logger.info("Running restic forget", extra={"retention": retention})

        if self.command_runner is not None:
            exit_code, _ = await self._run_captured(*args)
        else:
            exit_code = await self._run_streaming(*args)

        if exit_code != 0:
            raise ResticError(
                f"restic forget --prune failed with exit code {exit_code}", exit_code=exit_code
            )

    async def _run_streaming(self, *args: str) -> int:
        try:
            return await run_command_streaming(self.binary, *args)
        except OSError as e:
            raise ResticError(f"failed to run {self.binary} {' '.join(args)}: {e}") from e
