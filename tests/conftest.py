"""
Shared fixtures: build small .vcdbs savegames on disk.
"""

import sqlite3

import pytest

from vsrestic.launcher.vcdbtree.codec import SCHEMA
from vsrestic.launcher.vcdbtree.position import pack_chunk_position

SAMPLE_POSITION = 0x00000012ABFF341C

# Standard base64 uids; the second contains both + and /
SAMPLE_UIDS = ("QUJDREVGR0g=", "ab+cd/ef", "WFlaMTIzNDU2Nzg5")


def write_savegame(path, chunks=(), mapchunks=(), mapregions=(), gamedata=(), playerdata=()):
    """Create a savegame at path. Each argument is an iterable of (key, data)."""
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(SCHEMA)
        conn.executemany("INSERT INTO chunk (position, data) VALUES (?, ?)", list(chunks))
        conn.executemany("INSERT INTO mapchunk (position, data) VALUES (?, ?)", list(mapchunks))
        conn.executemany("INSERT INTO mapregion (position, data) VALUES (?, ?)", list(mapregions))
        conn.executemany("INSERT INTO gamedata (savegameid, data) VALUES (?, ?)", list(gamedata))
        conn.executemany(
            "INSERT INTO playerdata (playeruid, data) VALUES (?, ?)", list(playerdata)
        )
        conn.commit()
    finally:
        conn.close()
    return str(path)


def build_sample_rows():
    """4 chunks, 2 mapchunks, 1 mapregion, 1 gamedata, 3 playerdata."""
    chunks = [
        (SAMPLE_POSITION, b"chunk-a"),
        (pack_chunk_position(0, 0), b"chunk-origin"),
        (pack_chunk_position(-1, -1), b"chunk-negative"),
        (pack_chunk_position(1023, -2048, extra=1 << 62), b"chunk-far"),
    ]
    mapchunks = [
        (pack_chunk_position(5, 7), b"mapchunk-1"),
        (pack_chunk_position(-5, 7), b"mapchunk-2"),
    ]
    mapregions = [(pack_chunk_position(2, -3), b"region")]
    gamedata = [(1, b"game")]
    playerdata = [(uid, f"player-{i}".encode()) for i, uid in enumerate(SAMPLE_UIDS)]
    return {
        "chunks": chunks,
        "mapchunks": mapchunks,
        "mapregions": mapregions,
        "gamedata": gamedata,
        "playerdata": playerdata,
    }


def read_table_rows(db_path, table):
    key = {"gamedata": "savegameid", "playerdata": "playeruid"}.get(table, "position")
    conn = sqlite3.connect(str(db_path))
    try:
        return set(conn.execute(f"SELECT {key}, data FROM {table}").fetchall())
    finally:
        conn.close()


@pytest.fixture
def savegame_factory(tmp_path):
    """Return a callable that writes a savegame under tmp_path."""
    counter = {"n": 0}

    def factory(name=None, **rows):
        counter["n"] += 1
        path = tmp_path / (name or f"save{counter['n']}.vcdbs")
        return write_savegame(path, **rows)

    return factory


@pytest.fixture
def sample_savegame(savegame_factory):
    return savegame_factory("sample.vcdbs", **build_sample_rows())


@pytest.fixture
def sample_rows():
    return build_sample_rows()


@pytest.fixture
def read_table():
    """Return a callable giving the (key, data) set of a table."""
    return read_table_rows
