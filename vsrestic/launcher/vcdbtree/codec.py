"""
Uncached conversion between .vcdbs savegames and vcdbtree directories.

split() projects every non-null row of the five savegame tables onto its
vcdbtree leaf. combine() rebuilds a .vcdbs file from a tree. The tree
is what gets handed to restic: SQLite's own page layout shifts whenever
rows move, while a leaf's bytes only change when its blob changes.

Invariants:
    - split() never writes to the source database (opened with mode=ro)
    - combine() output is byte-identical for identical input trees
      (sorted walk, one transaction per table, VACUUM at the end)
    - combine() assigns fresh playerid surrogate keys
    - A malformed leaf filename aborts that table's reconstruction

How to change safely:
    - SCHEMA must match what the game server writes; test against a
      real savegame before touching it
    - Keep the walk sorted, otherwise combine() loses determinism
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .layout import (
    GAMEDATA_DIR,
    PLAYERDATA_DIR,
    SHARDED_TABLES,
    TABLE_ORDER,
    iter_table_leaves,
    open_readonly,
    unsanitize_player_uid,
    walk_files_sorted,
)
from .position import LEAF_SUFFIX, InvalidPositionFilenameError, position_from_filename

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE chunk (position integer PRIMARY KEY, data BLOB);
CREATE TABLE mapchunk (position integer PRIMARY KEY, data BLOB);
CREATE TABLE mapregion (position integer PRIMARY KEY, data BLOB);
CREATE TABLE gamedata (savegameid integer PRIMARY KEY, data BLOB);
CREATE TABLE playerdata (playerid integer PRIMARY KEY AUTOINCREMENT, playeruid TEXT, data BLOB);
CREATE INDEX index_playeruid ON playerdata (playeruid);
"""

_SAVEGAMEID_NAME = re.compile(r"(-?\d+)\.bin")


class VcdbtreeError(Exception):
    """Base exception for vcdbtree conversion."""

    pass


class MalformedTreeError(VcdbtreeError):
    """A file in the tree does not decode to a row key."""

    pass


def split(input_db_path: str | os.PathLike[str], output_dir: str | os.PathLike[str]) -> int:
    """Convert a .vcdbs database into a vcdbtree directory.

    Existing files at leaf paths are overwritten; nothing is deleted.
    Use split_with_cache() to keep a tree in sync across runs.

    Args:
        input_db_path: Source .vcdbs file
        output_dir: Destination tree root (created if missing)

    Returns:
        Number of leaf files written

    Raises:
        VcdbtreeError: If the database cannot be read or a file cannot
            be written
    """
    out = str(output_dir)
    try:
        os.makedirs(out, exist_ok=True)
        os.makedirs(os.path.join(out, GAMEDATA_DIR), exist_ok=True)
        os.makedirs(os.path.join(out, PLAYERDATA_DIR), exist_ok=True)
    except OSError as e:
        raise VcdbtreeError(f"failed to create output directory: {e}") from e

    written = 0
    try:
        with open_readonly(input_db_path) as conn:
            for table in TABLE_ORDER:
                written += _split_table(conn, out, table)
    except sqlite3.Error as e:
        raise VcdbtreeError(f"failed to open database: {e}") from e

    logger.debug("Split database", extra={"source": str(input_db_path), "files": written})
    return written


def _split_table(conn: sqlite3.Connection, out: str, table: str) -> int:
    written = 0
    try:
        for leaf in iter_table_leaves(conn, out, table):
            os.makedirs(os.path.dirname(leaf.path), exist_ok=True)
            Path(leaf.path).write_bytes(leaf.data)
            written += 1
    except (OSError, sqlite3.Error) as e:
        raise VcdbtreeError(f"failed to split {table} table: {e}") from e
    return written


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[None]:
    conn.execute("BEGIN")
    try:
        yield
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def combine(input_dir: str | os.PathLike[str], output_db_path: str | os.PathLike[str]) -> dict[str, int]:
    """Reconstruct a .vcdbs database from a vcdbtree directory.

    Any existing file at output_db_path is replaced.

    Args:
        input_dir: Tree root produced by split() or split_with_cache()
        output_db_path: Destination .vcdbs file

    Returns:
        Row count per table

    Raises:
        MalformedTreeError: If a leaf filename does not decode
        VcdbtreeError: On any other read or database failure
    """
    in_dir = str(input_dir)
    out_path = Path(output_db_path)

    try:
        out_path.unlink(missing_ok=True)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(out_path), isolation_level=None)
    except (OSError, sqlite3.Error) as e:
        raise VcdbtreeError(f"failed to create database: {e}") from e

    counts: dict[str, int] = {}
    try:
        try:
            conn.execute("PRAGMA page_size = 4096")
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise VcdbtreeError(f"failed to create schema: {e}") from e

        for table in SHARDED_TABLES:
            counts[table.name] = _combine_table(
                conn, table.name, _iter_sharded_rows(os.path.join(in_dir, table.plural))
            )
        counts["gamedata"] = _combine_table(
            conn, "gamedata", _iter_gamedata_rows(os.path.join(in_dir, GAMEDATA_DIR))
        )
        counts["playerdata"] = _combine_table(
            conn, "playerdata", _iter_playerdata_rows(os.path.join(in_dir, PLAYERDATA_DIR))
        )

        try:
            conn.execute("VACUUM")
        except sqlite3.Error as e:
            raise VcdbtreeError(f"failed to vacuum database: {e}") from e
    finally:
        conn.close()

    logger.debug("Combined tree", extra={"source": in_dir, "rows": counts})
    return counts


_INSERT_SQL = {
    "chunk": "INSERT OR REPLACE INTO chunk (position, data) VALUES (?, ?)",
    "mapchunk": "INSERT OR REPLACE INTO mapchunk (position, data) VALUES (?, ?)",
    "mapregion": "INSERT OR REPLACE INTO mapregion (position, data) VALUES (?, ?)",
    "gamedata": "INSERT OR REPLACE INTO gamedata (savegameid, data) VALUES (?, ?)",
    "playerdata": "INSERT INTO playerdata (playeruid, data) VALUES (?, ?)",
}


def _combine_table(
    conn: sqlite3.Connection,
    table: str,
    rows: Iterator[tuple[int | str, bytes]],
) -> int:
    """Insert all rows of one table inside a single transaction."""
    count = 0
    try:
        with _transaction(conn):
            for key, data in rows:
                conn.execute(_INSERT_SQL[table], (key, data))
                count += 1
    except MalformedTreeError:
        raise
    except (OSError, sqlite3.Error) as e:
        raise VcdbtreeError(f"failed to combine {table} table: {e}") from e
    return count


def _iter_sharded_rows(root: str) -> Iterator[tuple[int, bytes]]:
    if not os.path.isdir(root):
        return
    for path in walk_files_sorted(root):
        try:
            position = position_from_filename(path)
        except InvalidPositionFilenameError as e:
            raise MalformedTreeError(f"failed to reconstruct position from {path}: {e}") from e
        yield position, Path(path).read_bytes()


def _iter_flat_files(root: str) -> Iterator[os.DirEntry[str]]:
    if not os.path.isdir(root):
        return
    with os.scandir(root) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir():
            continue
        yield entry


def _iter_gamedata_rows(root: str) -> Iterator[tuple[int, bytes]]:
    for entry in _iter_flat_files(root):
        match = _SAVEGAMEID_NAME.fullmatch(entry.name)
        if not match:
            raise MalformedTreeError(f"invalid gamedata filename: {entry.path}")
        yield int(match.group(1)), Path(entry.path).read_bytes()


def _iter_playerdata_rows(root: str) -> Iterator[tuple[str, bytes]]:
    for entry in _iter_flat_files(root):
        if not entry.name.endswith(LEAF_SUFFIX) or entry.name == LEAF_SUFFIX:
            raise MalformedTreeError(f"invalid playerdata filename: {entry.path}")
        safe_uid = entry.name[: -len(LEAF_SUFFIX)]
        yield unsanitize_player_uid(safe_uid), Path(entry.path).read_bytes()
