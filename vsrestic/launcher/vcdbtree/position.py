"""
ChunkPos codec for vcdbtree sharding.

A ChunkPos is the signed 64-bit primary key of the chunk, mapchunk and
mapregion tables. Layout (MSB first):

    | reserved(1) | chunkY(9) | dimHigh(5) | guard(1) | chunkZ(21) | dimLow(5) | guard(1) | chunkX(21) |

Only chunkX and chunkZ are decoded here; they pick the two shard
directories. Every other bit is opaque and survives because the full
position is kept in the leaf filename as 16 hex digits.

Invariants:
    - extract_chunk_x/extract_chunk_z are pure and never raise
    - position_to_filename and position_from_filename are inverses
      over the whole signed 64-bit range

How to change safely:
    - The filename format is part of the on-disk layout; changing it
      invalidates every existing staging tree and restic snapshot
"""

from __future__ import annotations

import os
import re

CHUNK_X_MASK = 0x1FFFFF
CHUNK_Z_SHIFT = 27
CHUNK_Z_MASK = 0x1FFFFF
SIGN_BIT_21 = 0x100000

LEAF_SUFFIX = ".bin"

_UINT64_MASK = 0xFFFFFFFFFFFFFFFF
_HEX16 = re.compile(r"[0-9a-fA-F]{16}")


class InvalidPositionFilenameError(ValueError):
    """Leaf filename does not encode a ChunkPos."""

    pass


def _sign_extend_21(raw: int) -> int:
    if raw & SIGN_BIT_21:
        return raw - (1 << 21)
    return raw


def extract_chunk_x(position: int) -> int:
    """Extract the signed chunkX coordinate (bits 0-20)."""
    return _sign_extend_21(position & CHUNK_X_MASK)


def extract_chunk_z(position: int) -> int:
    """Extract the signed chunkZ coordinate (bits 27-47)."""
    return _sign_extend_21((position >> CHUNK_Z_SHIFT) & CHUNK_Z_MASK)


def pack_chunk_position(chunk_x: int, chunk_z: int, extra: int = 0) -> int:
    """Build a signed 64-bit ChunkPos from coordinates.

    Args:
        chunk_x: Signed 21-bit chunkX
        chunk_z: Signed 21-bit chunkZ
        extra: Remaining bits (dimension, chunkY, guards) placed verbatim;
            bits overlapping the coordinate fields are ignored

    Returns:
        The position as a signed 64-bit integer, as SQLite stores it
    """
    coords = (chunk_x & CHUNK_X_MASK) | ((chunk_z & CHUNK_Z_MASK) << CHUNK_Z_SHIFT)
    coord_bits = CHUNK_X_MASK | (CHUNK_Z_MASK << CHUNK_Z_SHIFT)
    unsigned = ((extra & _UINT64_MASK) & ~coord_bits) | coords
    return to_signed64(unsigned)


def to_signed64(value: int) -> int:
    value &= _UINT64_MASK
    if value >= 1 << 63:
        return value - (1 << 64)
    return value


def position_to_filename(position: int) -> str:
    """Leaf filename for a position: 16 zero-padded lowercase hex digits."""
    return f"{position & _UINT64_MASK:016x}{LEAF_SUFFIX}"


def position_from_filename(filename: str) -> int:
    """Decode the signed position stored in a leaf filename.

    Raises:
        InvalidPositionFilenameError: Wrong extension, wrong length or
            non-hex characters
    """
    name = os.path.basename(filename)
    if not name.endswith(LEAF_SUFFIX):
        raise InvalidPositionFilenameError(f"invalid filename: {name}")

    hex_str = name[: -len(LEAF_SUFFIX)]
    if len(hex_str) != 16:
        raise InvalidPositionFilenameError(
            f"invalid hex length in {name}: expected 16, got {len(hex_str)}"
        )
    if not _HEX16.fullmatch(hex_str):
        raise InvalidPositionFilenameError(f"failed to parse hex {hex_str!r}")

    return to_signed64(int(hex_str, 16))


def shard_dirs(position: int) -> tuple[str, str]:
    """Return the (chunkZ, chunkX) shard directory names for a position."""
    return str(extract_chunk_z(position)), str(extract_chunk_x(position))


def sharded_path(base_dir: str | os.PathLike[str], table_plural: str, position: int) -> str:
    """Full leaf path: <base>/<plural>/<chunkZ>/<chunkX>/<position_hex>.bin"""
    z_dir, x_dir = shard_dirs(position)
    return os.path.join(base_dir, table_plural, z_dir, x_dir, position_to_filename(position))
