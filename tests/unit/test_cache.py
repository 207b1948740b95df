"""
Unit tests for incremental vcdbtree updates and directory sync.

Tests cover:
- split_with_cache idempotence (no rewrites, mtimes preserved)
- Change detection and stale file removal
- copy_file_if_changed / sync_dir / sync_file

split_with_cache reports a removed count alongside written/skipped,
matching what sync_dir reports.
"""

import os
import shutil
import sqlite3
from pathlib import Path

import pytest

from vsrestic.launcher.vcdbtree import (
    VcdbtreeError,
    copy_dir_if_changed,
    copy_file_if_changed,
    file_matches_content,
    split_with_cache,
    sync_dir,
    sync_file,
)
from vsrestic.launcher.vcdbtree.layout import MANAGED_ROOTS, walk_files_sorted
from vsrestic.launcher.vcdbtree.position import pack_chunk_position, sharded_path

from tests.conftest import SAMPLE_POSITION


def snapshot_stats(root):
    return {path: (os.stat(path).st_mtime_ns, os.stat(path).st_ino) for path in walk_files_sorted(root)}


def execute(db_path, sql, params=()):
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


class TestSplitWithCache:
    """Tests for split_with_cache()."""

    @pytest.fixture
    def cache_dir(self, tmp_path):
        return tmp_path / "cache"

    def test_first_run_writes_everything(self, sample_savegame, cache_dir):
        result = split_with_cache(sample_savegame, cache_dir)

        assert result.written == 11
        assert result.skipped == 0
        assert result.removed == 0
        assert result.total == 11

    def test_second_run_is_idempotent(self, sample_savegame, cache_dir):
        """No source change: nothing rewritten, no mtime or inode changes."""
        split_with_cache(sample_savegame, cache_dir)
        before = snapshot_stats(cache_dir)

        result = split_with_cache(sample_savegame, cache_dir)

        assert result.written == 0
        assert result.skipped == 11
        assert result.removed == 0
        assert snapshot_stats(cache_dir) == before

    def test_single_row_change(self, sample_savegame, cache_dir):
        split_with_cache(sample_savegame, cache_dir)
        position = pack_chunk_position(0, 0)
        execute(sample_savegame, "UPDATE chunk SET data = ? WHERE position = ?", (b"changed", position))

        result = split_with_cache(sample_savegame, cache_dir)

        assert result.written == 1
        assert result.skipped == 10
        assert open(sharded_path(cache_dir, "chunks", position), "rb").read() == b"changed"

    def test_same_size_change_is_detected(self, sample_savegame, cache_dir):
        """Comparison is by content, not just size."""
        split_with_cache(sample_savegame, cache_dir)
        execute(sample_savegame, "UPDATE gamedata SET data = ? WHERE savegameid = 1", (b"GAME",))

        result = split_with_cache(sample_savegame, cache_dir)

        assert result.written == 1
        assert (cache_dir / "gamedata" / "1.bin").read_bytes() == b"GAME"

    def test_deleted_row_removes_file(self, sample_savegame, cache_dir):
        split_with_cache(sample_savegame, cache_dir)
        position = pack_chunk_position(-1, -1)
        leaf = sharded_path(cache_dir, "chunks", position)
        assert os.path.exists(leaf)
        execute(sample_savegame, "DELETE FROM chunk WHERE position = ?", (position,))

        result = split_with_cache(sample_savegame, cache_dir)

        assert not os.path.exists(leaf)
        assert result.removed == 1
        # Empty shard directories are pruned
        assert not os.path.exists(os.path.dirname(leaf))

    def test_null_data_removes_file(self, sample_savegame, cache_dir):
        split_with_cache(sample_savegame, cache_dir)
        execute(sample_savegame, "UPDATE playerdata SET data = NULL WHERE playeruid = 'ab+cd/ef'")

        result = split_with_cache(sample_savegame, cache_dir)

        assert not (cache_dir / "playerdata" / "ab-cd_ef.bin").exists()
        assert result.removed == 1

    def test_stray_files_removed_from_managed_roots(self, sample_savegame, cache_dir):
        split_with_cache(sample_savegame, cache_dir)
        (cache_dir / "chunks" / "stray.txt").write_bytes(b"?")
        (cache_dir / "gamedata" / "99.bin").write_bytes(b"old")

        result = split_with_cache(sample_savegame, cache_dir)

        assert result.removed == 2
        assert not (cache_dir / "chunks" / "stray.txt").exists()
        assert not (cache_dir / "gamedata" / "99.bin").exists()

    def test_files_outside_managed_roots_are_kept(self, sample_savegame, cache_dir):
        cache_dir.mkdir()
        (cache_dir / "README").write_text("keep me")

        split_with_cache(sample_savegame, cache_dir)

        assert (cache_dir / "README").read_text() == "keep me"

    def test_managed_roots_survive_empty_database(self, sample_savegame, savegame_factory, cache_dir):
        split_with_cache(sample_savegame, cache_dir)
        empty = savegame_factory("empty.vcdbs")

        result = split_with_cache(empty, cache_dir)

        assert result.removed == 11
        for root in MANAGED_ROOTS:
            assert (cache_dir / root).is_dir()
            assert list(walk_files_sorted(cache_dir / root)) == []

    def test_corrupted_leaf_is_rewritten(self, sample_savegame, cache_dir):
        split_with_cache(sample_savegame, cache_dir)
        (cache_dir / "gamedata" / "1.bin").write_bytes(b"garbage!")

        result = split_with_cache(sample_savegame, cache_dir)

        assert result.written == 1
        assert (cache_dir / "gamedata" / "1.bin").read_bytes() == b"game"

    @pytest.mark.parametrize("levels_up", [1, 2], ids=["x_shard", "z_shard"])
    def test_file_blocking_shard_directory_is_replaced(self, sample_savegame, cache_dir, levels_up):
        split_with_cache(sample_savegame, cache_dir)
        leaf = Path(sharded_path(cache_dir, "chunks", SAMPLE_POSITION))
        shard = leaf.parents[levels_up - 1]
        leaves_under_shard = len(list(walk_files_sorted(shard)))
        shutil.rmtree(shard)
        shard.write_bytes(b"not a directory")

        result = split_with_cache(sample_savegame, cache_dir)

        assert result.removed == 1
        assert result.written == leaves_under_shard
        assert shard.is_dir()
        assert leaf.read_bytes() == b"chunk-a"

        # Healed: the following run is a no-op
        again = split_with_cache(sample_savegame, cache_dir)
        assert (again.written, again.removed) == (0, 0)

    def test_missing_database(self, tmp_path, cache_dir):
        with pytest.raises(VcdbtreeError):
            split_with_cache(tmp_path / "missing.vcdbs", cache_dir)


class TestFileMatchesContent:
    def test_match(self, tmp_path):
        path = tmp_path / "f"
        path.write_bytes(b"abc")
        assert file_matches_content(path, b"abc")

    def test_size_mismatch(self, tmp_path):
        path = tmp_path / "f"
        path.write_bytes(b"abc")
        assert not file_matches_content(path, b"abcd")

    def test_missing_file(self, tmp_path):
        assert not file_matches_content(tmp_path / "missing", b"")


class TestCopy:
    """Tests for copy_file_if_changed() and copy_dir_if_changed()."""

    def test_copy_file_if_changed(self, tmp_path):
        src = tmp_path / "src.json"
        dst = tmp_path / "out" / "dst.json"
        src.write_text("{}")

        assert copy_file_if_changed(src, dst) is True
        mtime = os.stat(dst).st_mtime_ns
        assert copy_file_if_changed(src, dst) is False
        assert os.stat(dst).st_mtime_ns == mtime

        src.write_text('{"a": 1}')
        assert copy_file_if_changed(src, dst) is True
        assert dst.read_text() == '{"a": 1}'

    def test_copy_file_missing_source(self, tmp_path):
        with pytest.raises(OSError):
            copy_file_if_changed(tmp_path / "missing", tmp_path / "dst")

    def test_copy_dir_if_changed(self, tmp_path):
        src = tmp_path / "src"
        (src / "sub").mkdir(parents=True)
        (src / "a.txt").write_text("a")
        (src / "sub" / "b.txt").write_text("b")

        assert copy_dir_if_changed(src, tmp_path / "dst") == (2, 0)
        assert copy_dir_if_changed(src, tmp_path / "dst") == (0, 2)
        assert (tmp_path / "dst" / "sub" / "b.txt").read_text() == "b"


class TestSyncDir:
    """Tests for sync_dir()."""

    @pytest.fixture
    def src(self, tmp_path):
        src = tmp_path / "Logs"
        (src / "Archive").mkdir(parents=True)
        (src / "server-main.log").write_text("line 1\n")
        (src / "Archive" / "old.log").write_text("old\n")
        return src

    def test_initial_sync(self, src, tmp_path):
        result = sync_dir(src, tmp_path / "staging" / "Logs")

        assert (result.written, result.skipped, result.removed) == (2, 0, 0)
        assert (tmp_path / "staging" / "Logs" / "Archive" / "old.log").read_text() == "old\n"

    def test_unchanged_files_keep_mtime(self, src, tmp_path):
        dst = tmp_path / "staging" / "Logs"
        sync_dir(src, dst)
        before = snapshot_stats(dst)

        result = sync_dir(src, dst)

        assert (result.written, result.skipped, result.removed) == (0, 2, 0)
        assert snapshot_stats(dst) == before

    def test_deleted_source_files_are_removed(self, src, tmp_path):
        dst = tmp_path / "staging" / "Logs"
        sync_dir(src, dst)
        (src / "Archive" / "old.log").unlink()

        result = sync_dir(src, dst)

        assert result.removed == 1
        assert not (dst / "Archive").exists()
        assert dst.is_dir()


class TestSyncFile:
    def test_copy_then_skip(self, tmp_path):
        src = tmp_path / "serverconfig.json"
        src.write_text("{}")
        dst = tmp_path / "staging" / "serverconfig.json"

        assert sync_file(src, dst) == (1, 0)
        assert sync_file(src, dst) == (0, 0)

    def test_missing_source_removes_destination(self, tmp_path):
        dst = tmp_path / "servermagicnumbers.json"
        dst.write_text("{}")

        assert sync_file(tmp_path / "missing.json", dst) == (0, 1)
        assert not dst.exists()

    def test_both_missing(self, tmp_path):
        assert sync_file(tmp_path / "a", tmp_path / "b") == (0, 0)
