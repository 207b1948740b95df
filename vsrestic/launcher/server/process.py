"""
Vintage Story dedicated server supervisor.

Runs the server as a child process, reads its console output line by
line and exposes the small surface the launcher needs:
- send_command() writes to the server's stdin
- has_booted() flips once "Dedicated Server now running" is seen
- wait_for_pattern() / wait_for_backup_complete() await specific lines

Invariants:
    - on_boot fires at most once per process
    - Every output line reaches on_output before pattern waiters
    - Pending waiters fail with ServerNotRunningError when the process exits

How to change safely:
    - BOOT_PATTERN and BACKUP_COMPLETE_PATTERN are matched verbatim
      against server output; re-check them on server upgrades
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Callable

logger = logging.getLogger(__name__)

BOOT_PATTERN = "Dedicated Server now running"
BACKUP_COMPLETE_PATTERN = "[Server Notification] Backup complete!"
STOP_COMMAND = "/stop"

DOTNET_BINARY = "/usr/bin/dotnet"
SERVER_DLL = "VintageStoryServer.dll"

MAX_LINE_BYTES = 1024 * 1024


class ServerError(Exception):
    """Base exception for server supervision."""

    pass


class ServerNotRunningError(ServerError):
    """The server process is not running."""

    pass


class PatternTimeoutError(ServerError):
    """Timed out waiting for an output pattern."""

    pass


_Waiter = tuple[Callable[[str], bool], "asyncio.Future[str]"]


class GameServer:
    """Supervises the dedicated server process.

    Attributes:
        working_dir: Directory holding the server binaries
        executable: Server executable; None runs SERVER_DLL from working_dir
            under DOTNET_BINARY
        args: Extra command line arguments

    Example:
        >>> server = GameServer("/serverbinaries", args=["--dataPath", "/gamedata"])
        >>> await server.start()
        >>> await server.wait_for_pattern(BOOT_PATTERN, timeout=120)
        >>> server.send_command("/genbackup")
    """

    def __init__(
        self,
        working_dir: str,
        executable: str | None = None,
        args: list[str] | None = None,
        on_output: Callable[[str], None] | None = None,
        on_boot: Callable[[], None] | None = None,
    ) -> None:
        self.working_dir = working_dir
        self.executable = executable
        self.args = list(args or [])
        self.on_output = on_output
        self.on_boot = on_boot

        self._process: asyncio.subprocess.Process | None = None
        self._reader_tasks: list[asyncio.Task] = []
        self._exit_task: asyncio.Task | None = None
        self._waiters: list[_Waiter] = []
        self._booted = False
        self._exited = asyncio.Event()

    def command(self) -> list[str]:
        """Full argv used to launch the server."""
        if self.executable:
            return [self.executable, *self.args]
        return [DOTNET_BINARY, os.path.join(self.working_dir, SERVER_DLL), *self.args]

    async def start(self) -> None:
        """Launch the process. Returns once it is running, not once booted.

        Raises:
            ServerError: Already started or failed to launch
        """
        if self._process is not None:
            raise ServerError("server already started")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command(),
                cwd=self.working_dir,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=MAX_LINE_BYTES,
            )
        except OSError as e:
            raise ServerError(f"failed to start server: {e}") from e

        logger.info("Server process started", extra={"pid": self._process.pid})

        assert self._process.stdout is not None and self._process.stderr is not None
        self._reader_tasks = [
            asyncio.create_task(self._read_output(self._process.stdout)),
            asyncio.create_task(self._read_output(self._process.stderr)),
        ]
        self._exit_task = asyncio.create_task(self._wait_for_exit())

    async def _read_output(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than MAX_LINE_BYTES; drop what was buffered
                logger.warning("Dropping oversized server output line")
                continue
            if not raw:
                return
            self.handle_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def handle_line(self, line: str) -> None:
        """Process one line of server output."""
        if not self._booted and BOOT_PATTERN in line:
            self._booted = True
            logger.info("Server has booted")
            if self.on_boot is not None:
                self.on_boot()

        if self.on_output is not None:
            self.on_output(line)

        for predicate, future in list(self._waiters):
            if not future.done() and predicate(line):
                future.set_result(line)

    async def _wait_for_exit(self) -> None:
        assert self._process is not None
        await self._process.wait()
        await asyncio.gather(*self._reader_tasks, return_exceptions=True)

        logger.info("Server process exited", extra={"returncode": self._process.returncode})
        self._exited.set()
        for _predicate, future in self._waiters:
            if not future.done():
                future.set_exception(ServerNotRunningError("server exited"))

    @property
    def running(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    def has_booted(self) -> bool:
        return self._booted

    def send_command(self, cmd: str) -> None:
        """Write a console command to the server.

        Raises:
            ServerNotRunningError: If the process is not running
        """
        if not self.running or self._process is None or self._process.stdin is None:
            raise ServerNotRunningError("server is not running")
        if self._process.stdin.is_closing():
            raise ServerNotRunningError("server stdin is closed")

        self._process.stdin.write(f"{cmd}\n".encode())

    async def _wait_for(self, predicate: Callable[[str], bool], timeout: float | None) -> str:
        if not self.running:
            raise ServerNotRunningError("server is not running")

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        waiter: _Waiter = (predicate, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise PatternTimeoutError("timed out waiting for pattern")
        finally:
            self._waiters.remove(waiter)

    async def wait_for_pattern(self, pattern: str | re.Pattern[str], timeout: float | None = None) -> str:
        """Wait for an output line matching a regular expression.

        Returns:
            The matching line

        Raises:
            PatternTimeoutError: No match within timeout
            ServerNotRunningError: The server exited first
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        return await self._wait_for(lambda line: regex.search(line) is not None, timeout)

    async def wait_for_backup_complete(self) -> None:
        """Wait for a line ending with "[Server Notification] Backup complete!"."""
        await self._wait_for(lambda line: line.endswith(BACKUP_COMPLETE_PATTERN), None)

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        if self._process is None:
            raise ServerNotRunningError("server was never started")
        await self._exited.wait()
        return self._process.returncode if self._process.returncode is not None else -1

    async def stop(self, timeout: float = 30.0) -> None:
        """Ask the server to stop, killing it if it does not exit in time."""
        if not self.running:
            return

        logger.info("Stopping server", extra={"timeout_seconds": timeout})
        try:
            self.send_command(STOP_COMMAND)
        except ServerNotRunningError:
            return

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Server did not stop in time, killing it")
            self.kill()
            await self._exited.wait()

    def kill(self) -> None:
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
