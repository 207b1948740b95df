"""
Player presence tracking from server output.

The dedicated server logs joins and leaves as:
    [Server Event] <name> joins.
    [Server Event] <name> left.

Player names may contain spaces and punctuation, so only the marker and
the line ending are matched.

Invariants:
    - Lines containing "[Server Chat]" never change the count, so players
      cannot fake events by typing them in chat
    - Only lines with exactly one "[Server Event]" marker are considered
    - The player count never goes negative
    - should_backup() returns True once more after the last player leaves
      (the "final backup"), then False until someone joins again

How to change safely:
    - Re-check the chat injection tests when touching the patterns
"""

from __future__ import annotations

import logging
import re
import threading

logger = logging.getLogger(__name__)

PLAYER_JOIN_PATTERN = re.compile(r"\[Server Event\].*joins\.$")
PLAYER_LEAVE_PATTERN = re.compile(r"\[Server Event\].*left\.$")

SERVER_EVENT_MARKER = "[Server Event]"
SERVER_CHAT_PREFIX = "[Server Chat]"


class PlayerChecker:
    """Counts online players and decides whether a backup is warranted.

    Feed every server output line to handle_output(); call should_backup()
    once per backup attempt.

    Example:
        >>> checker = PlayerChecker()
        >>> checker.handle_output("[Server Event] Tyron joins.")
        >>> checker.should_backup()
        True
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._player_count = 0
        self._players_online_at_last_check = False

    def handle_output(self, line: str) -> None:
        """Update the player count from one line of server output."""
        if SERVER_CHAT_PREFIX in line:
            return

        if line.count(SERVER_EVENT_MARKER) != 1:
            return

        with self._lock:
            if PLAYER_JOIN_PATTERN.search(line):
                self._player_count += 1
                logger.debug("Player joined", extra={"player_count": self._player_count})
                return

            if PLAYER_LEAVE_PATTERN.search(line):
                self._player_count = max(0, self._player_count - 1)
                logger.debug("Player left", extra={"player_count": self._player_count})

    def players_online(self) -> bool:
        with self._lock:
            return self._player_count > 0

    @property
    def player_count(self) -> int:
        with self._lock:
            return self._player_count

    def should_backup(self) -> bool:
        """Decide whether this backup attempt should run.

        Updates the "online at last check" state, so call it once per attempt.
        """
        with self._lock:
            online_now = self._player_count > 0
            online_before = self._players_online_at_last_check
            self._players_online_at_last_check = online_now

            if online_now:
                return True
            return online_before
