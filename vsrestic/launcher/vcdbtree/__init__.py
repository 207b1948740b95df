"""
vcdbtree - deduplication-friendly projection of .vcdbs savegames.

This module converts Vintage Story savegames (SQLite) into a directory
tree where each row becomes one file:
- Position-keyed tables are sharded by chunkZ/chunkX so nearby chunks
  share directories
- gamedata and playerdata are flat directories

Invariants:
    - Leaf paths are a pure function of (table, key)
    - split -> combine -> split reproduces identical (key, bytes) sets
    - Incremental updates never touch files whose bytes did not change
"""

from .cache import (
    SplitResult,
    SyncResult,
    copy_dir_if_changed,
    copy_file_if_changed,
    file_matches_content,
    split_with_cache,
    sync_dir,
    sync_file,
)
from .codec import MalformedTreeError, VcdbtreeError, combine, split
from .layout import MANAGED_ROOTS, sanitize_player_uid, unsanitize_player_uid
from .position import (
    extract_chunk_x,
    extract_chunk_z,
    pack_chunk_position,
    position_from_filename,
    position_to_filename,
    sharded_path,
)

__all__ = [
    "split",
    "combine",
    "split_with_cache",
    "copy_file_if_changed",
    "copy_dir_if_changed",
    "file_matches_content",
    "sync_dir",
    "sync_file",
    "SplitResult",
    "SyncResult",
    "VcdbtreeError",
    "MalformedTreeError",
    "MANAGED_ROOTS",
    "sanitize_player_uid",
    "unsanitize_player_uid",
    "extract_chunk_x",
    "extract_chunk_z",
    "pack_chunk_position",
    "position_from_filename",
    "position_to_filename",
    "sharded_path",
]
