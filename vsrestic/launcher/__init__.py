"""
vsrestic launcher - Vintage Story dedicated server with restic backups.

This package supervises a Vintage Story dedicated server and keeps it
backed up with restic. The savegame (a SQLite .vcdbs file) is converted
into a directory tree ("vcdbtree") whose unchanged blobs stay byte-identical
between backups, so restic only uploads what actually changed.

Architecture:
    ┌──────────────┐  /genbackup  ┌──────────────┐  Backups/*.vcdbs
    │ BackupManager│─────────────▶│  GameServer  │─────────────────┐
    └──────┬───────┘              └──────────────┘                 │
           │                                                       ▼
           │                                         ┌──────────────────────┐
           │                                         │ vcdbtree (cached)    │
           │                                         │ split_with_cache     │
           │                                         └──────────┬───────────┘
           │                                                    ▼
           │                                         ┌──────────────────────┐
           └────────────────────────────────────────▶│ staging dir → restic │
                                                     └──────────────────────┘

Invariants:
    - The staging directory persists across backups and is never wiped
    - A vcdbtree leaf path is a pure function of its table and key
    - Unchanged blobs are never rewritten (mtime and inode are preserved)
    - A failed cycle never stops the periodic backup loop

How to change safely:
    - The vcdbtree layout is a de-facto wire format; do not rename paths
    - Keep restic invocations swappable through the manager's runner hooks
"""

from ._version import __version__

__all__ = ["__version__"]
