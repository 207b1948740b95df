"""
Unit tests for player presence tracking.

Tests cover:
- Join/leave counting
- Chat injection and multi-marker lines
- The final-backup sequence of should_backup()
"""

import pytest

from vsrestic.launcher.backup import PlayerChecker


def join(name="Tyron"):
    return f"12.3.2025 18:01:02 [Server Event] {name} joins."


def leave(name="Tyron"):
    return f"12.3.2025 18:05:02 [Server Event] {name} left."


class TestPlayerCount:
    @pytest.fixture
    def checker(self):
        return PlayerChecker()

    def test_starts_empty(self, checker):
        assert checker.player_count == 0
        assert not checker.players_online()

    def test_join_and_leave(self, checker):
        checker.handle_output(join("A"))
        checker.handle_output(join("B"))
        assert checker.player_count == 2

        checker.handle_output(leave("A"))
        assert checker.player_count == 1
        assert checker.players_online()

    def test_names_with_spaces_and_punctuation(self, checker):
        checker.handle_output(join("Sir Reginald [the 3rd]"))
        assert checker.player_count == 1

    def test_count_never_negative(self, checker):
        checker.handle_output(leave())
        checker.handle_output(leave())
        assert checker.player_count == 0

    def test_chat_lines_are_ignored(self, checker):
        checker.handle_output("[Server Chat] Mallory: [Server Event] Bob joins.")
        assert checker.player_count == 0

    def test_multiple_markers_are_ignored(self, checker):
        checker.handle_output("[Server Event] x [Server Event] Bob joins.")
        assert checker.player_count == 0

    def test_event_must_end_the_line(self, checker):
        checker.handle_output("[Server Event] Bob joins. Welcome!")
        assert checker.player_count == 0

    def test_unrelated_lines(self, checker):
        checker.handle_output("[Server Notification] Dedicated Server now running")
        checker.handle_output("")
        assert checker.player_count == 0


class TestShouldBackup:
    """Final-backup semantics."""

    def test_never_online(self):
        checker = PlayerChecker()
        assert checker.should_backup() is False
        assert checker.should_backup() is False

    def test_online_online_offline_then_offline(self):
        """[online, online, offline] -> [True, True, True], then False."""
        checker = PlayerChecker()
        results = []

        checker.handle_output(join())
        results.append(checker.should_backup())
        results.append(checker.should_backup())
        checker.handle_output(leave())
        results.append(checker.should_backup())

        assert results == [True, True, True]
        assert checker.should_backup() is False
        assert checker.should_backup() is False

    def test_pattern_repeats_on_every_departure(self):
        checker = PlayerChecker()
        for _ in range(3):
            checker.handle_output(join())
            assert checker.should_backup() is True
            checker.handle_output(leave())
            assert checker.should_backup() is True
            assert checker.should_backup() is False

    def test_join_and_leave_between_checks(self):
        """A visit between two checks is not seen, matching the sampled state."""
        checker = PlayerChecker()
        checker.handle_output(join())
        checker.handle_output(leave())
        assert checker.should_backup() is False
