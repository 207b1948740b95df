"""
On-disk layout of a vcdbtree and row streaming from a .vcdbs savegame.

Layout:
    chunks/<chunkZ>/<chunkX>/<position_hex>.bin
    mapchunks/<chunkZ>/<chunkX>/<position_hex>.bin
    mapregions/<chunkZ>/<chunkX>/<position_hex>.bin
    gamedata/<savegameid>.bin
    playerdata/<base64url playeruid>.bin

Invariants:
    - A leaf path is a pure function of (table, key)
    - Rows with NULL data (and playerdata rows with an empty uid) have no leaf
    - Directory walks are lexically sorted so consumers see a stable order

How to change safely:
    - Add tables by extending SHARDED_TABLES or adding a flat table here;
      split, split_with_cache and combine all read from this module
"""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .position import LEAF_SUFFIX, sharded_path


@dataclass(frozen=True)
class ShardedTable:
    """A position-keyed table stored under <plural>/<chunkZ>/<chunkX>/."""

    name: str
    plural: str


SHARDED_TABLES: tuple[ShardedTable, ...] = (
    ShardedTable("chunk", "chunks"),
    ShardedTable("mapchunk", "mapchunks"),
    ShardedTable("mapregion", "mapregions"),
)

GAMEDATA_DIR = "gamedata"
PLAYERDATA_DIR = "playerdata"

MANAGED_ROOTS: tuple[str, ...] = tuple(t.plural for t in SHARDED_TABLES) + (
    GAMEDATA_DIR,
    PLAYERDATA_DIR,
)


@dataclass(frozen=True)
class Leaf:
    """One non-null row projected onto its vcdbtree path."""

    table: str
    path: str
    data: bytes


def sanitize_player_uid(playeruid: str) -> str:
    """Convert a base64 player uid to a filesystem-safe base64url name.

    Replaces + with -, / with _ and strips trailing = padding.
    """
    return playeruid.replace("+", "-").replace("/", "_").rstrip("=")


def unsanitize_player_uid(safe_uid: str) -> str:
    """Reverse sanitize_player_uid, restoring padding to a multiple of 4."""
    uid = safe_uid.replace("-", "+").replace("_", "/")
    remainder = len(uid) % 4
    if remainder in (2, 3):
        uid += "=" * (4 - remainder)
    return uid


def gamedata_path(base_dir: str | os.PathLike[str], savegameid: int) -> str:
    return os.path.join(base_dir, GAMEDATA_DIR, f"{savegameid}{LEAF_SUFFIX}")


def playerdata_path(base_dir: str | os.PathLike[str], playeruid: str) -> str:
    return os.path.join(base_dir, PLAYERDATA_DIR, f"{sanitize_player_uid(playeruid)}{LEAF_SUFFIX}")


@contextmanager
def open_readonly(db_path: str | os.PathLike[str]) -> Iterator[sqlite3.Connection]:
    """Open a savegame database read-only.

    Raises:
        sqlite3.OperationalError: If the file does not exist or is not
            a database
    """
    uri = f"{Path(db_path).resolve().as_uri()}?mode=ro"
    conn = sqlite3.connect(uri, uri=True)
    try:
        yield conn
    finally:
        conn.close()


def iter_table_leaves(conn: sqlite3.Connection, base_dir: str, table: str) -> Iterator[Leaf]:
    """Stream the leaves of one table, skipping rows that have no file."""
    sharded = {t.name: t for t in SHARDED_TABLES}

    if table in sharded:
        plural = sharded[table].plural
        cursor = conn.execute(f"SELECT position, data FROM {table}")
        for position, data in cursor:
            if data is None:
                continue
            yield Leaf(table, sharded_path(base_dir, plural, position), bytes(data))

    elif table == "gamedata":
        cursor = conn.execute("SELECT savegameid, data FROM gamedata")
        for savegameid, data in cursor:
            if data is None:
                continue
            yield Leaf(table, gamedata_path(base_dir, savegameid), bytes(data))

    elif table == "playerdata":
        cursor = conn.execute("SELECT playeruid, data FROM playerdata")
        for playeruid, data in cursor:
            if not playeruid or data is None:
                continue
            yield Leaf(table, playerdata_path(base_dir, playeruid), bytes(data))

    else:
        raise ValueError(f"unknown table: {table}")


TABLE_ORDER: tuple[str, ...] = tuple(t.name for t in SHARDED_TABLES) + ("gamedata", "playerdata")


def walk_files_sorted(root: str | os.PathLike[str]) -> Iterator[str]:
    """Yield every file below root in lexical order (directories first visited)."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            yield os.path.join(dirpath, name)


def prune_empty_dirs(root: str | os.PathLike[str]) -> int:
    """Remove empty directories below root, bottom-up. root itself is kept.

    Returns:
        Number of directories removed
    """
    root = os.path.normpath(root)
    removed = 0
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        if os.path.normpath(dirpath) == root:
            continue
        if not os.listdir(dirpath):
            os.rmdir(dirpath)
            removed += 1
    return removed
