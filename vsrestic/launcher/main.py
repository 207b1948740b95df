"""
vsrestic launcher - Main entry point.

Runs the Vintage Story dedicated server with all components:
- GameServer (the server process, console passthrough)
- PlayerChecker (join/leave tracking, only with BACKUP_PAUSE_WHEN_NO_PLAYERS)
- CommandQueue (rate-limited console commands from stdin and backups)
- BackupManager (periodic /genbackup -> vcdbtree -> restic)

Usage:
    vsrestic-launcher
    python -m vsrestic.launcher.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The boot-time backup skips the player gate
    - Every console command goes through the CommandQueue
    - SIGINT/SIGTERM send /stop and kill the server after the shutdown timeout

How to change safely:
    - Wire new components before server.start() so they see every output line
    - Test the shutdown sequence with a server that ignores /stop
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading

import json_log_formatter

from .backup import BackupManager, PlayerChecker, ResticClient
from .config import LauncherConfig
from .server import CommandQueue, GameServer

logger = logging.getLogger(__name__)


def setup_logging(config: LauncherConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Launcher configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Server console output goes to stdout; logs go to stderr
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    logging.getLogger("asyncio").setLevel(logging.WARNING)


class Launcher:
    """Launcher orchestrator.

    Attributes:
        config: Launcher configuration
        server: Dedicated server supervisor
        command_queue: Rate-limited command relay in front of the server
        player_checker: Player tracker (None unless pausing is enabled)
        backup_manager: Backup scheduler (None when backups are disabled)
        exit_code: Server exit code once it has exited

    Example:
        >>> launcher = Launcher()
        >>> await launcher.start()  # Runs until the server exits or shutdown
        >>> await launcher.stop()
    """

    def __init__(self, config: LauncherConfig | None = None, forward_stdin: bool = True) -> None:
        self.config = config or LauncherConfig.from_env()
        self.forward_stdin = forward_stdin
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.server: GameServer | None = None
        self.command_queue: CommandQueue | None = None
        self.player_checker: PlayerChecker | None = None
        self.backup_manager: BackupManager | None = None
        self.exit_code: int | None = None

        self._tasks: list[asyncio.Task] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    def build(self) -> None:
        """Create and wire components without starting anything."""
        backup = self.config.backup
        paths = self.config.paths

        if backup.enabled and backup.pause_when_no_players:
            self.player_checker = PlayerChecker()

        self.server = GameServer(
            working_dir=paths.server_binaries_dir,
            args=["--dataPath", paths.gamedata_dir],
            on_output=self._on_output,
            on_boot=self._on_boot,
        )

        self.command_queue = CommandQueue(
            sender=self.server,
            min_delay_seconds=self.config.server.min_command_delay_ms / 1000,
            on_error=self._on_command_error,
        )

        if backup.enabled:
            assert backup.interval_seconds is not None
            self.backup_manager = BackupManager(
                server=self.command_queue,
                interval_seconds=backup.interval_seconds,
                gamedata_dir=paths.gamedata_dir,
                staging_dir=paths.staging_dir,
                boot_checker=self.server,
                player_gate=self.player_checker,
                pause_when_no_players=backup.pause_when_no_players,
                completion_waiter=self.server,
                backup_timeout_seconds=backup.timeout_seconds,
                prune_retention=backup.prune_retention,
                restic=ResticClient(binary=self.config.restic.binary),
                on_backup_start=lambda: logger.info("Starting backup"),
            )
        else:
            logger.warning("BACKUP_INTERVAL not set. Periodic backups are disabled.")

    def _on_output(self, line: str) -> None:
        sys.stdout.write(line + "\n")
        sys.stdout.flush()
        if self.player_checker is not None:
            self.player_checker.handle_output(line)

    def _on_boot(self) -> None:
        if self.backup_manager is None:
            return
        logger.info("Triggering immediate backup on server boot")
        task = asyncio.get_running_loop().create_task(
            self.backup_manager.run_backup_now(skip_player_check=True)
        )
        self._tasks.append(task)

    def _on_command_error(self, cmd: str, error: Exception | None) -> None:
        if error is not None:
            logger.warning(f"Failed to send command {cmd!r}: {error}")

    def _read_stdin(self) -> None:
        """Forward stdin lines to the command queue (runs in a daemon thread)."""
        assert self._loop is not None and self.command_queue is not None
        try:
            for raw in sys.stdin:
                line = raw.rstrip("\r\n")
                if line:
                    self._loop.call_soon_threadsafe(self.command_queue.submit, line)
        except (OSError, ValueError) as e:
            logger.warning(f"Error reading stdin: {e}")
            return
        except RuntimeError:
            # Event loop closed during shutdown
            return
        logger.debug("stdin closed, no longer forwarding commands")

    async def start(self) -> None:
        """Start all components and run until the server exits or shutdown."""
        if self._running:
            logger.warning("Launcher already running")
            return

        logger.info("Starting vsrestic launcher")
        self.config.log_config()
        self._loop = asyncio.get_running_loop()

        if self.server is None:
            self.build()
        assert self.server is not None and self.command_queue is not None

        try:
            await self.server.start()
            self._running = True

            self.command_queue.start()

            if self.backup_manager is not None:
                self._tasks.append(asyncio.create_task(self.backup_manager.start()))
                logger.info("Backup manager started")

            if self.forward_stdin:
                threading.Thread(target=self._read_stdin, name="stdin-forwarder", daemon=True).start()

            server_exit = asyncio.create_task(self.server.wait())
            shutdown = asyncio.create_task(self._shutdown_event.wait())
            await asyncio.wait({server_exit, shutdown}, return_when=asyncio.FIRST_COMPLETED)
            shutdown.cancel()

            if server_exit.done():
                self.exit_code = server_exit.result()
                if self.exit_code == 0:
                    logger.info("Server exited cleanly")
                else:
                    logger.error(f"Server exited with code {self.exit_code}")
            else:
                server_exit.cancel()

        except Exception as e:
            logger.error(f"Launcher startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop all components gracefully."""
        if not self._running:
            return

        logger.info("Stopping vsrestic launcher")

        if self.backup_manager is not None:
            await self.backup_manager.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.command_queue is not None:
            await self.command_queue.stop()

        if self.server is not None:
            await self.server.stop(timeout=self.config.server.shutdown_timeout_seconds)
            if self.exit_code is None:
                self.exit_code = self.server.returncode

        self._running = False
        logger.info("vsrestic launcher stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()


def main() -> None:
    """Main entry point."""
    try:
        config = LauncherConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    launcher = Launcher(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        launcher.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_status = 0
    try:
        loop.run_until_complete(launcher.start())
    except KeyboardInterrupt:
        pass
    except Exception:
        exit_status = 1
    finally:
        loop.run_until_complete(launcher.stop())
        loop.close()

    # A clean shutdown after a signal is a success even if the server was killed
    if launcher.exit_code not in (None, 0) and not launcher.shutdown_requested:
        exit_status = 1
    sys.exit(exit_status)


if __name__ == "__main__":
    main()
