"""
Backup module for the launcher.

This module handles:
- The backup cycle (genbackup -> vcdbtree staging -> restic)
- Periodic scheduling and the boot-time backup
- Player presence gating
- restic repository init, snapshot and retention

Invariants:
    - Only one periodic cycle runs at a time (the loop re-arms after
      each cycle returns)
    - Gate-skips are expected and never counted as failures
"""

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
from .duration import parse_duration
from .manager import BackupManager, BackupResult, CycleStage, CycleStatus, is_file_unlocked
from .player_checker import PlayerChecker
from .restic import REPO_NOT_INITIALIZED_EXIT, ResticClient

__all__ = [
    "BackupManager",
    "BackupResult",
    "CycleStage",
    "CycleStatus",
    "is_file_unlocked",
    "PlayerChecker",
    "ResticClient",
    "REPO_NOT_INITIALIZED_EXIT",
    "parse_duration",
    "BackupError",
    "BackupSkipped",
    "BackupTimeoutError",
    "NoPlayersOnlineError",
    "ServerNotBootedError",
    "StagingError",
    "ResticError",
    "ServerCommander",
    "BootChecker",
    "BackupCompletionWaiter",
    "PlayerGate",
]
