"""
Periodic backup manager for the Vintage Story server.

One backup cycle runs these stages strictly in order:

    BOOT_GATE -> PLAYER_GATE -> TRIGGER -> AWAIT_FILE -> CONVERT -> STAGE
              -> SNAPSHOT -> PRUNE -> DONE

1. Skip if the server has not booted yet
2. Skip if pausing is enabled and nobody is (or just was) online
3. Send /genbackup and remember when
4. Wait for the completion message, then poll Backups/ for a newer
   .vcdbs file that no other process holds a lock on
5. Split it into the persistent staging tree with split_with_cache and
   delete the original
6. Mirror Logs/, Playerdata/, Mods/ and the two config files
7. restic backup the staging directory (initializing the repo if needed)
8. restic forget --prune when a retention policy is configured

Staging layout:
    <staging>/Logs/ Playerdata/ Mods/
    <staging>/serverconfig.json servermagicnumbers.json
    <staging>/Saves/<save name>/   (vcdbtree)

Invariants:
    - The staging directory is persistent; unchanged files keep their mtime
    - A cycle stops at the first error; there is no rollback. The next
      successful cycle converges because caching is keyed on content
    - Gate-skips are reported as SKIPPED, never as failures
    - The periodic loop survives any single cycle failure
    - run_backup_now() may overlap a periodic cycle; this is logged, not
      prevented

How to change safely:
    - Keep restic and the splitter behind the runner hooks so tests can
      drive the full cycle without subprocesses
    - Do not shorten the lock probe; the server writes the file in place
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..vcdbtree import SplitResult, VcdbtreeError, split_with_cache, sync_dir, sync_file
from .base import (
    BackupCompletionWaiter,
    BackupError,
    BackupSkipped,
    BackupTimeoutError,
    BootChecker,
    NoPlayersOnlineError,
    PlayerGate,
    ResticError,
    ServerCommander,
    ServerNotBootedError,
    StagingError,
)
from .restic import ResticClient

logger = logging.getLogger(__name__)

GENBACKUP_COMMAND = "/genbackup"
SAVE_EXTENSION = ".vcdbs"
DEFAULT_SAVE_FILE_NAME = "default.vcdbs"
DEFAULT_BACKUP_TIMEOUT_SECONDS = 5 * 60
DEFAULT_POLL_INTERVAL_SECONDS = 0.5

SYNCED_DIRS = ("Logs", "Playerdata", "Mods")
SYNCED_FILES = ("serverconfig.json", "servermagicnumbers.json")

ResticRunner = Callable[[str], Awaitable[None]]
PruneRunner = Callable[[str], Awaitable[None]]
Splitter = Callable[[str, str], SplitResult]


class CycleStage(str, Enum):
    """Where the current backup cycle is."""

    IDLE = "idle"
    BOOT_GATE = "boot_gate"
    PLAYER_GATE = "player_gate"
    TRIGGER = "trigger"
    AWAIT_FILE = "await_file"
    CONVERT = "convert"
    STAGE = "stage"
    SNAPSHOT = "snapshot"
    PRUNE = "prune"
    DONE = "done"


class CycleStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class BackupResult:
    """Outcome of one backup cycle.

    Attributes:
        status: completed, skipped (gate) or failed
        duration_seconds: Wall time of the cycle
        error: The gate-skip or failure, None on success
        stage: Last stage reached
        split: vcdbtree counts when the convert stage ran
    """

    status: CycleStatus
    duration_seconds: float
    error: Exception | None = None
    stage: CycleStage = CycleStage.IDLE
    split: SplitResult | None = None

    @property
    def success(self) -> bool:
        return self.status == CycleStatus.COMPLETED


class WorldConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    save_file_location: str | None = Field(default=None, alias="SaveFileLocation")


class ServerConfigFile(BaseModel):
    """The part of serverconfig.json the backup manager reads."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    world_config: WorldConfig = Field(default_factory=WorldConfig, alias="WorldConfig")

    @field_validator("world_config", mode="before")
    @classmethod
    def _null_world_config(cls, value: Any) -> Any:
        # "WorldConfig": null behaves like a missing section
        return {} if value is None else value


def is_file_unlocked(path: str | os.PathLike[str]) -> bool:
    """Probe whether another process holds a lock on path.

    Takes a non-blocking exclusive flock and releases it immediately.
    Missing or unreadable files count as locked.
    """
    try:
        f = open(path, "rb")
    except OSError:
        return False

    with f:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            return False
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        return True


class BackupManager:
    """Runs backup cycles on a fixed interval.

    Attributes:
        server: Receives the /genbackup command (usually a CommandQueue)
        interval_seconds: Time between periodic cycles
        gamedata_dir: Server data path (holds Backups/, Logs/, ...)
        staging_dir: Persistent directory handed to restic

    Example:
        >>> manager = BackupManager(server=queue, interval_seconds=3600)
        >>> task = asyncio.create_task(manager.start())  # Runs until stopped
        >>> result = await manager.run_backup_now(skip_player_check=True)
    """

    def __init__(
        self,
        server: ServerCommander,
        interval_seconds: float,
        gamedata_dir: str = "/gamedata",
        staging_dir: str = "/backupcache/staging",
        boot_checker: BootChecker | None = None,
        player_gate: PlayerGate | None = None,
        pause_when_no_players: bool = False,
        completion_waiter: BackupCompletionWaiter | None = None,
        backup_timeout_seconds: float = DEFAULT_BACKUP_TIMEOUT_SECONDS,
        prune_retention: str | None = None,
        restic: ResticClient | None = None,
        restic_runner: ResticRunner | None = None,
        prune_runner: PruneRunner | None = None,
        splitter: Splitter | None = None,
        on_backup_start: Callable[[], None] | None = None,
        on_backup_complete: Callable[[BackupResult], None] | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the backup manager.

        Args:
            server: Command sink for /genbackup
            interval_seconds: Time between periodic cycles
            gamedata_dir: Server data directory
            staging_dir: Persistent staging directory
            boot_checker: Skips cycles until the server has booted
            player_gate: Decides whether a cycle is warranted
            pause_when_no_players: Enables the player gate
            completion_waiter: Awaited before polling for the backup file
            backup_timeout_seconds: Bound on waiting for the backup file
            prune_retention: restic forget options, e.g. "--keep-daily 7"
            restic: restic client (a default one is created if omitted)
            restic_runner: Replaces `restic backup` (tests)
            prune_runner: Replaces `restic forget --prune` (tests)
            splitter: Replaces split_with_cache (tests)
            on_backup_start: Called when a cycle starts
            on_backup_complete: Called with every cycle's BackupResult
            poll_interval_seconds: Backups/ polling interval
        """
        self.server = server
        self.interval_seconds = interval_seconds
        self.gamedata_dir = gamedata_dir
        self.staging_dir = staging_dir
        self.boot_checker = boot_checker
        self.player_gate = player_gate
        self.pause_when_no_players = pause_when_no_players
        self.completion_waiter = completion_waiter
        self.backup_timeout_seconds = backup_timeout_seconds or DEFAULT_BACKUP_TIMEOUT_SECONDS
        self.prune_retention = prune_retention
        self.restic = restic or ResticClient()
        self.restic_runner = restic_runner
        self.prune_runner = prune_runner
        self.splitter = splitter
        self.on_backup_start = on_backup_start
        self.on_backup_complete = on_backup_complete
        self.poll_interval_seconds = poll_interval_seconds

        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._stage = CycleStage.IDLE
        self._active_cycles = 0
        self._counts = {status: 0 for status in CycleStatus}
        self._last_result: BackupResult | None = None

    async def start(self) -> None:
        """Run the periodic loop until stop() is called or the task is cancelled.

        Raises:
            ValueError: If already running or misconfigured
        """
        if self._running:
            raise ValueError("backup manager already started")
        if self.interval_seconds <= 0:
            raise ValueError("backup interval must be positive")
        if self.server is None:
            raise ValueError("server is required")

        self._running = True
        self._stop_event = asyncio.Event()
        logger.info(
            "Starting backup manager",
            extra={"interval_seconds": self.interval_seconds, "staging_dir": self.staging_dir},
        )

        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.run_backup()
        except asyncio.CancelledError:
            logger.info("Backup manager cancelled")
            raise
        finally:
            self._running = False
            logger.info("Backup manager stopped")

    async def stop(self) -> None:
        """Stop the periodic loop after the current cycle returns."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("Stopping backup manager")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stage(self) -> CycleStage:
        return self._stage

    async def run_backup_now(self, skip_player_check: bool = False) -> BackupResult:
        """Run one cycle immediately, outside the periodic schedule.

        Used for the boot-time backup (with skip_player_check=True). This
        can overlap a periodic cycle; both then write the staging tree.
        """
        return await self.run_backup(skip_player_check=skip_player_check)

    async def run_backup(self, skip_player_check: bool = False) -> BackupResult:
        """Run one cycle and report it through on_backup_complete.

        Never raises except for cancellation.
        """
        if self._active_cycles > 0:
            logger.warning("Backup cycle started while another cycle is still running")
        self._active_cycles += 1

        start = time.monotonic()
        split: SplitResult | None = None
        try:
            self._notify("on_backup_start", self.on_backup_start)
            split = await self.perform_backup(skip_player_check=skip_player_check)
            result = BackupResult(
                status=CycleStatus.COMPLETED,
                duration_seconds=time.monotonic() - start,
                stage=self._stage,
                split=split,
            )
            logger.info(
                "Backup completed",
                extra={
                    "duration_seconds": round(result.duration_seconds, 3),
                    "written": split.written if split else None,
                    "skipped": split.skipped if split else None,
                    "removed": split.removed if split else None,
                },
            )
        except BackupSkipped as e:
            result = BackupResult(
                status=CycleStatus.SKIPPED,
                duration_seconds=time.monotonic() - start,
                error=e,
                stage=self._stage,
            )
            logger.info(f"Backup skipped: {e}")
        except Exception as e:
            result = BackupResult(
                status=CycleStatus.FAILED,
                duration_seconds=time.monotonic() - start,
                error=e,
                stage=self._stage,
            )
            logger.error(
                f"Backup failed during {self._stage.value} after "
                f"{result.duration_seconds:.1f}s: {e}",
                exc_info=not isinstance(e, BackupError),
            )
        finally:
            self._active_cycles -= 1
            if self._active_cycles == 0:
                self._stage = CycleStage.IDLE

        self._counts[result.status] += 1
        self._last_result = result
        self._notify("on_backup_complete", self.on_backup_complete, result)
        return result

    def _notify(self, name: str, callback: Callable[..., None] | None, *args: Any) -> None:
        """Invoke a reporting hook; a failing hook is logged and never ends the loop."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"{name} callback failed: {e}", exc_info=True)

    async def perform_backup(self, skip_player_check: bool = False) -> SplitResult | None:
        """Execute the full cycle, raising on the first gate-skip or failure.

        Args:
            skip_player_check: Bypass the player gate (boot-time backups)

        Returns:
            vcdbtree counts from the convert stage

        Raises:
            ServerNotBootedError, NoPlayersOnlineError: Gate-skips
            BackupTimeoutError: The backup file never appeared
            StagingError: Conversion or staging I/O failed
            ResticError: restic failed
        """
        self._stage = CycleStage.BOOT_GATE
        if self.boot_checker is not None and not self.boot_checker.has_booted():
            raise ServerNotBootedError()

        self._stage = CycleStage.PLAYER_GATE
        if not skip_player_check and self.pause_when_no_players and self.player_gate is not None:
            if not self.player_gate.should_backup():
                raise NoPlayersOnlineError()

        try:
            save_file_name = self.get_save_file_name()
        except (OSError, ValueError) as e:
            raise StagingError(f"failed to get save file name: {e}") from e

        self._stage = CycleStage.TRIGGER
        triggered_at = time.time()
        try:
            self.server.send_command(GENBACKUP_COMMAND)
        except Exception as e:
            raise BackupError(f"failed to send genbackup command: {e}") from e

        self._stage = CycleStage.AWAIT_FILE
        try:
            backup_file = await asyncio.wait_for(
                self.wait_for_backup_file(triggered_at),
                timeout=self.backup_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise BackupTimeoutError(
                f"timed out after {self.backup_timeout_seconds:g}s waiting for backup file"
            )

        loop = asyncio.get_running_loop()

        self._stage = CycleStage.CONVERT
        split = await loop.run_in_executor(None, self._convert, backup_file, save_file_name)

        self._stage = CycleStage.STAGE
        await loop.run_in_executor(None, self._stage_aux_files)

        self._stage = CycleStage.SNAPSHOT
        await self._run_restic()

        self._stage = CycleStage.PRUNE
        await self._run_restic_prune()

        self._stage = CycleStage.DONE
        return split

    def get_save_file_name(self) -> str:
        """Read WorldConfig.SaveFileLocation from serverconfig.json.

        Returns:
            The save file's basename, or "default.vcdbs" if unset

        Raises:
            OSError: serverconfig.json cannot be read
            ValueError: serverconfig.json is not valid JSON
        """
        config_path = Path(self.gamedata_dir) / "serverconfig.json"
        raw = config_path.read_text(encoding="utf-8-sig")

        try:
            config = ServerConfigFile.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"failed to parse serverconfig.json: {e}") from e

        location = config.world_config.save_file_location
        if not location:
            return DEFAULT_SAVE_FILE_NAME
        return os.path.basename(location.replace("\\", "/"))

    async def wait_for_backup_file(self, after: float) -> str:
        """Wait for a .vcdbs file in Backups/ newer than `after` and unlocked.

        The caller bounds this with a timeout; cancellation is honored on
        every poll.
        """
        if self.completion_waiter is not None:
            await self.completion_waiter.wait_for_backup_complete()

        backups_dir = os.path.join(self.gamedata_dir, "Backups")
        try:
            os.makedirs(backups_dir, exist_ok=True)
        except OSError as e:
            raise StagingError(f"failed to create backups directory: {e}") from e

        while True:
            await asyncio.sleep(self.poll_interval_seconds)

            candidate = self._find_backup_file(backups_dir, after)
            if candidate is not None:
                return candidate

    def _find_backup_file(self, backups_dir: str, after: float) -> str | None:
        try:
            with os.scandir(backups_dir) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError:
            return None

        for entry in entries:
            if not entry.name.endswith(SAVE_EXTENSION):
                continue
            try:
                if not entry.is_file() or entry.stat().st_mtime <= after:
                    continue
            except OSError:
                continue

            # Still being written if the server holds a lock on it
            if is_file_unlocked(entry.path):
                return entry.path
        return None

    def _convert(self, backup_file: str, save_file_name: str) -> SplitResult:
        """Split the backup into Saves/<name>/ and remove the original file."""
        save_base_name = save_file_name.removesuffix(SAVE_EXTENSION)
        saves_dir = os.path.join(self.staging_dir, "Saves", save_base_name)

        logger.info(
            "Splitting backup into vcdbtree",
            extra={"backup_file": backup_file, "saves_dir": saves_dir},
        )
        try:
            os.makedirs(saves_dir, exist_ok=True)
            splitter = self.splitter or split_with_cache
            split = splitter(backup_file, saves_dir)
        except (OSError, VcdbtreeError) as e:
            raise StagingError(f"failed to split backup to vcdbtree: {e}") from e

        try:
            os.remove(backup_file)
        except OSError as e:
            raise StagingError(f"failed to remove original backup file: {e}") from e

        return split

    def _stage_aux_files(self) -> None:
        """Mirror Logs/, Playerdata/, Mods/ and the loose config files."""
        try:
            os.makedirs(self.staging_dir, exist_ok=True)
        except OSError as e:
            raise StagingError(f"failed to create staging directory: {e}") from e

        for name in SYNCED_DIRS:
            src = os.path.join(self.gamedata_dir, name)
            dst = os.path.join(self.staging_dir, name)
            if not os.path.isdir(src):
                continue
            try:
                result = sync_dir(src, dst)
            except OSError as e:
                raise StagingError(f"failed to sync {name}: {e}") from e
            logger.debug(
                f"Synced {name}",
                extra={"written": result.written, "skipped": result.skipped, "removed": result.removed},
            )

        for name in SYNCED_FILES:
            try:
                sync_file(os.path.join(self.gamedata_dir, name), os.path.join(self.staging_dir, name))
            except OSError as e:
                raise StagingError(f"failed to sync {name}: {e}") from e

    async def _run_restic(self) -> None:
        if self.restic_runner is not None:
            await self.restic_runner(self.staging_dir)
            return

        if not os.environ.get("RESTIC_REPOSITORY"):
            raise ResticError("RESTIC_REPOSITORY environment variable is not set")

        await self.restic.backup(self.staging_dir)

    async def _run_restic_prune(self) -> None:
        if not self.prune_retention:
            return

        if self.prune_runner is not None:
            await self.prune_runner(self.prune_retention)
            return

        await self.restic.forget_prune(self.prune_retention)

    @property
    def stats(self) -> dict[str, Any]:
        """Get backup manager statistics."""
        last = self._last_result
        return {
            "running": self._running,
            "stage": self._stage.value,
            "completed": self._counts[CycleStatus.COMPLETED],
            "skipped": self._counts[CycleStatus.SKIPPED],
            "failed": self._counts[CycleStatus.FAILED],
            "last_status": last.status.value if last else None,
            "last_duration_seconds": last.duration_seconds if last else None,
        }
