"""
Incremental vcdbtree updates and content-preserving directory sync.

The staging directory handed to restic survives between backups. Each
backup rewrites only the leaves whose bytes changed; everything else keeps
its mtime and inode, so restic's change detection skips it and the
content-defined chunker never sees it.

Algorithm for split_with_cache():
    1. Stream every non-null row and compute its leaf path
    2. Leave the file alone if size and then bytes match the blob
    3. Otherwise write it (creating shard directories as needed)
    4. Delete any file under the five managed roots that no row claimed
    5. Remove shard directories left empty, never the roots themselves

Invariants:
    - After a successful run the files under the managed roots are exactly
      the current non-null rows
    - Comparison is by full content only; mtime and hashes are never trusted
    - The cache directory has a single writer (the backup loop); nothing
      here locks it

How to change safely:
    - Any shortcut in file_matches_content() breaks the no-rewrite
      guarantee under clock skew; keep the byte comparison
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from .codec import VcdbtreeError
from .layout import (
    GAMEDATA_DIR,
    MANAGED_ROOTS,
    PLAYERDATA_DIR,
    TABLE_ORDER,
    iter_table_leaves,
    open_readonly,
    prune_empty_dirs,
    walk_files_sorted,
)

logger = logging.getLogger(__name__)


@dataclass
class SplitResult:
    """Outcome of split_with_cache().

    Attributes:
        written: Leaves created or rewritten
        skipped: Leaves already holding identical bytes
        removed: Stale files deleted from the managed roots
    """

    written: int = 0
    skipped: int = 0
    removed: int = 0

    @property
    def total(self) -> int:
        return self.written + self.skipped


@dataclass
class SyncResult:
    """Outcome of sync_dir()."""

    written: int = 0
    skipped: int = 0
    removed: int = 0


def file_matches_content(path: str | os.PathLike[str], data: bytes) -> bool:
    """Check whether path exists and holds exactly data.

    Size is compared first; bytes are only read when sizes agree.
    Unreadable files count as different so the caller rewrites them.
    """
    try:
        if os.stat(path).st_size != len(data):
            return False
        with open(path, "rb") as f:
            return f.read() == data
    except OSError:
        return False


def split_with_cache(
    input_db_path: str | os.PathLike[str],
    cache_dir: str | os.PathLike[str],
) -> SplitResult:
    """Bring a vcdbtree in cache_dir in line with a .vcdbs database.

    Args:
        input_db_path: Source .vcdbs file (opened read-only)
        cache_dir: Persistent tree root (created if missing)

    Returns:
        SplitResult with written/skipped/removed counts

    Raises:
        VcdbtreeError: On any read, write or delete failure. Files already
            written stay in place; the next successful run converges.
    """
    cache = os.path.normpath(str(cache_dir))
    try:
        os.makedirs(cache, exist_ok=True)
        os.makedirs(os.path.join(cache, GAMEDATA_DIR), exist_ok=True)
        os.makedirs(os.path.join(cache, PLAYERDATA_DIR), exist_ok=True)
    except OSError as e:
        raise VcdbtreeError(f"failed to create cache directory: {e}") from e

    result = SplitResult()
    expected: set[str] = set()

    try:
        with open_readonly(input_db_path) as conn:
            for table in TABLE_ORDER:
                _split_table_with_cache(conn, cache, table, expected, result)
    except sqlite3.Error as e:
        raise VcdbtreeError(f"failed to open database: {e}") from e

    try:
        result.removed += _cleanup_stale_files(cache, expected)
    except OSError as e:
        raise VcdbtreeError(f"failed to cleanup stale files: {e}") from e

    logger.info(
        "vcdbtree updated",
        extra={
            "cache_dir": cache,
            "written": result.written,
            "skipped": result.skipped,
            "removed": result.removed,
        },
    )
    return result


def _split_table_with_cache(
    conn: sqlite3.Connection,
    cache: str,
    table: str,
    expected: set[str],
    result: SplitResult,
) -> None:
    try:
        for leaf in iter_table_leaves(conn, cache, table):
            path = os.path.normpath(leaf.path)
            expected.add(path)

            if file_matches_content(path, leaf.data):
                result.skipped += 1
                continue

            _ensure_parent_dir(cache, path, result)
            Path(path).write_bytes(leaf.data)
            result.written += 1
    except (OSError, sqlite3.Error) as e:
        raise VcdbtreeError(f"failed to split {table} table: {e}") from e


def _ensure_parent_dir(cache: str, path: str, result: SplitResult) -> None:
    """Create the shard directories for path.

    A regular file sitting where a shard directory belongs is deleted and
    counted as removed, so a damaged tree heals on the next run.
    """
    parent = os.path.dirname(path)
    try:
        os.makedirs(parent, exist_ok=True)
        return
    except (FileExistsError, NotADirectoryError):
        pass

    current = cache
    for part in os.path.relpath(parent, cache).split(os.sep):
        current = os.path.join(current, part)
        if os.path.lexists(current) and not os.path.isdir(current):
            logger.warning("Removing file blocking shard directory", extra={"path": current})
            os.remove(current)
            result.removed += 1
            break
    os.makedirs(parent, exist_ok=True)


def _cleanup_stale_files(cache: str, expected: set[str]) -> int:
    """Delete unclaimed files under the managed roots, then prune empty shards."""
    removed = 0
    for root in MANAGED_ROOTS:
        root_path = os.path.join(cache, root)
        if not os.path.isdir(root_path):
            continue

        for path in list(walk_files_sorted(root_path)):
            if os.path.normpath(path) not in expected:
                os.remove(path)
                removed += 1

        prune_empty_dirs(root_path)
    return removed


def copy_file_if_changed(src: str | os.PathLike[str], dst: str | os.PathLike[str]) -> bool:
    """Copy src to dst unless dst already holds the same bytes.

    Returns:
        True if dst was written, False if it was left untouched

    Raises:
        OSError: If src cannot be read or dst cannot be written
    """
    data = Path(src).read_bytes()
    if file_matches_content(dst, data):
        return False

    dst_path = Path(dst)
    dst_path.parent.mkdir(parents=True, exist_ok=True)
    dst_path.write_bytes(data)
    return True


def copy_dir_if_changed(src: str | os.PathLike[str], dst: str | os.PathLike[str]) -> tuple[int, int]:
    """Recursively copy src into dst, writing only changed files.

    Returns:
        (written, skipped)
    """
    written, skipped = 0, 0
    for _dst_file, changed in _copy_tree(str(src), str(dst)):
        if changed:
            written += 1
        else:
            skipped += 1
    return written, skipped


def _copy_tree(src: str, dst: str):
    for dirpath, dirnames, filenames in os.walk(src):
        dirnames.sort()
        rel = os.path.relpath(dirpath, src)
        dst_dir = os.path.normpath(os.path.join(dst, rel))
        os.makedirs(dst_dir, exist_ok=True)
        for name in sorted(filenames):
            dst_file = os.path.join(dst_dir, name)
            yield dst_file, copy_file_if_changed(os.path.join(dirpath, name), dst_file)


def sync_dir(src: str | os.PathLike[str], dst: str | os.PathLike[str]) -> SyncResult:
    """Mirror src into dst.

    Changed files are copied, files missing from src are deleted from
    dst, and directories left empty below dst are removed.

    Raises:
        OSError: On any copy or delete failure
    """
    src_s, dst_s = str(src), os.path.normpath(str(dst))
    result = SyncResult()
    expected: set[str] = set()

    for dst_file, changed in _copy_tree(src_s, dst_s):
        expected.add(os.path.normpath(dst_file))
        if changed:
            result.written += 1
        else:
            result.skipped += 1

    if os.path.isdir(dst_s):
        for path in list(walk_files_sorted(dst_s)):
            if os.path.normpath(path) not in expected:
                os.remove(path)
                result.removed += 1
        prune_empty_dirs(dst_s)

    return result


def sync_file(src: str | os.PathLike[str], dst: str | os.PathLike[str]) -> tuple[int, int]:
    """Copy a single file if changed, or delete dst when src is gone.

    Returns:
        (written, removed), each 0 or 1
    """
    if not os.path.exists(src):
        if os.path.lexists(dst):
            os.remove(dst)
            return 0, 1
        return 0, 0

    if copy_file_if_changed(src, dst):
        return 1, 0
    return 0, 0
