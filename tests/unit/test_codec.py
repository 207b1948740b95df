"""
Unit tests for vcdbtree split and combine.

Tests cover:
- Tree layout produced by split
- Round trip through combine
- Deterministic combine output
- Malformed trees and missing inputs
- Player uid sanitization
"""

import os

import pytest

from vsrestic.launcher.vcdbtree import (
    MalformedTreeError,
    VcdbtreeError,
    combine,
    sanitize_player_uid,
    split,
    unsanitize_player_uid,
)
from vsrestic.launcher.vcdbtree.layout import walk_files_sorted

TABLES = {
    "chunks": "chunk",
    "mapchunks": "mapchunk",
    "mapregions": "mapregion",
    "gamedata": "gamedata",
    "playerdata": "playerdata",
}


def count_files(root):
    if not os.path.isdir(root):
        return 0
    return sum(1 for _ in walk_files_sorted(root))


class TestSplit:
    """Tests for split()."""

    def test_file_counts_per_table(self, sample_savegame, tmp_path):
        """One .bin file per non-null row, under the right root."""
        out = tmp_path / "tree"

        written = split(sample_savegame, out)

        assert written == 11
        assert count_files(out / "chunks") == 4
        assert count_files(out / "mapchunks") == 2
        assert count_files(out / "mapregions") == 1
        assert count_files(out / "gamedata") == 1
        assert count_files(out / "playerdata") == 3

    def test_reference_chunk_location(self, sample_savegame, tmp_path):
        out = tmp_path / "tree"
        split(sample_savegame, out)

        leaf = out / "chunks" / "597" / "-52196" / "00000012abff341c.bin"
        assert leaf.read_bytes() == b"chunk-a"

    def test_flat_table_names(self, sample_savegame, tmp_path):
        out = tmp_path / "tree"
        split(sample_savegame, out)

        assert (out / "gamedata" / "1.bin").read_bytes() == b"game"
        assert (out / "playerdata" / "ab-cd_ef.bin").read_bytes() == b"player-1"
        assert (out / "playerdata" / "QUJDREVGR0g.bin").exists()

    def test_all_leaves_end_in_bin(self, sample_savegame, tmp_path):
        out = tmp_path / "tree"
        split(sample_savegame, out)

        assert all(path.endswith(".bin") for path in walk_files_sorted(out))

    def test_null_rows_are_skipped(self, savegame_factory, tmp_path):
        """Rows with NULL data and playerdata with an empty uid get no file."""
        db = savegame_factory(
            chunks=[(1, None), (2, b"x")],
            gamedata=[(1, None)],
            playerdata=[("", b"orphan"), ("QUJD", None)],
        )
        out = tmp_path / "tree"

        assert split(db, out) == 1
        assert count_files(out) == 1

    def test_empty_flat_roots_exist(self, savegame_factory, tmp_path):
        db = savegame_factory()
        out = tmp_path / "tree"

        split(db, out)

        assert (out / "gamedata").is_dir()
        assert (out / "playerdata").is_dir()

    def test_missing_database(self, tmp_path):
        with pytest.raises(VcdbtreeError):
            split(tmp_path / "missing.vcdbs", tmp_path / "tree")

    def test_source_is_not_modified(self, sample_savegame, tmp_path):
        before = open(sample_savegame, "rb").read()

        split(sample_savegame, tmp_path / "tree")

        assert open(sample_savegame, "rb").read() == before


class TestCombine:
    """Tests for combine()."""

    def test_round_trip(self, sample_savegame, sample_rows, read_table, tmp_path):
        """Every (key, bytes) pair survives split then combine."""
        tree = tmp_path / "tree"
        restored = tmp_path / "restored.vcdbs"
        split(sample_savegame, tree)

        counts = combine(tree, restored)

        assert counts == {"chunk": 4, "mapchunk": 2, "mapregion": 1, "gamedata": 1, "playerdata": 3}
        for plural, table in TABLES.items():
            assert read_table(restored, table) == set(sample_rows[plural])

    def test_output_is_deterministic(self, sample_savegame, tmp_path):
        tree = tmp_path / "tree"
        split(sample_savegame, tree)

        combine(tree, tmp_path / "a.vcdbs")
        combine(tree, tmp_path / "b.vcdbs")

        assert (tmp_path / "a.vcdbs").read_bytes() == (tmp_path / "b.vcdbs").read_bytes()

    def test_replaces_existing_output(self, sample_savegame, read_table, tmp_path):
        tree = tmp_path / "tree"
        restored = tmp_path / "restored.vcdbs"
        split(sample_savegame, tree)
        restored.write_bytes(b"not a database")

        combine(tree, restored)

        assert len(read_table(restored, "chunk")) == 4

    def test_split_of_combined_matches(self, sample_savegame, tmp_path):
        """split -> combine -> split gives the same tree."""
        first = tmp_path / "first"
        second = tmp_path / "second"
        split(sample_savegame, first)
        combine(first, tmp_path / "restored.vcdbs")
        split(tmp_path / "restored.vcdbs", second)

        first_files = {os.path.relpath(p, first): open(p, "rb").read() for p in walk_files_sorted(first)}
        second_files = {
            os.path.relpath(p, second): open(p, "rb").read() for p in walk_files_sorted(second)
        }
        assert first_files == second_files

    def test_missing_roots_give_empty_tables(self, tmp_path):
        (tmp_path / "tree").mkdir()

        counts = combine(tmp_path / "tree", tmp_path / "out.vcdbs")

        assert counts == {"chunk": 0, "mapchunk": 0, "mapregion": 0, "gamedata": 0, "playerdata": 0}

    def test_malformed_sharded_filename(self, tmp_path):
        shard = tmp_path / "tree" / "chunks" / "0" / "0"
        shard.mkdir(parents=True)
        (shard / "12abff341c.bin").write_bytes(b"x")

        with pytest.raises(MalformedTreeError, match="reconstruct position"):
            combine(tmp_path / "tree", tmp_path / "out.vcdbs")

    def test_malformed_gamedata_filename(self, tmp_path):
        root = tmp_path / "tree" / "gamedata"
        root.mkdir(parents=True)
        (root / "savegame.bin").write_bytes(b"x")

        with pytest.raises(MalformedTreeError):
            combine(tmp_path / "tree", tmp_path / "out.vcdbs")

    def test_directories_in_flat_roots_are_ignored(self, read_table, tmp_path):
        root = tmp_path / "tree" / "gamedata"
        (root / "nested").mkdir(parents=True)
        (root / "-3.bin").write_bytes(b"negative id")

        counts = combine(tmp_path / "tree", tmp_path / "out.vcdbs")

        assert counts["gamedata"] == 1
        assert read_table(tmp_path / "out.vcdbs", "gamedata") == {(-3, b"negative id")}

    def test_malformed_error_is_vcdbtree_error(self):
        assert issubclass(MalformedTreeError, VcdbtreeError)


class TestPlayerUid:
    """Tests for player uid sanitization."""

    @pytest.mark.parametrize(
        "uid,safe",
        [
            ("ab+cd/ef", "ab-cd_ef"),
            ("QUJDREVGR0g=", "QUJDREVGR0g"),
            ("QUJDRA==", "QUJDRA"),
            ("+/+/", "-_-_"),
        ],
    )
    def test_sanitize(self, uid, safe):
        assert sanitize_player_uid(uid) == safe
        assert unsanitize_player_uid(safe) == uid

    def test_sanitized_names_are_filesystem_safe(self):
        safe = sanitize_player_uid("a+b/c==")

        assert "/" not in safe
        assert "+" not in safe
        assert "=" not in safe
