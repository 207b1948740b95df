"""
vcdbtree CLI tool.

Converts Vintage Story .vcdbs savegames to and from the vcdbtree
directory format, e.g. to restore a world from a restic snapshot.

Usage:
    vcdbtree split <input.vcdbs> <output_dir>
    vcdbtree combine <input_dir> <output.vcdbs>

Examples:
    vcdbtree split /gamedata/Backups/backup.vcdbs /tmp/backup-tree
    vcdbtree combine /tmp/backup-tree /gamedata/Saves/restored.vcdbs

Invariants:
    - Exit status is 0 on success and 1 on any error or usage problem
    - combine replaces an existing output file
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from ..vcdbtree import VcdbtreeError, combine, split

logger = logging.getLogger(__name__)

DESCRIPTION = "Convert Vintage Story .vcdbs savegames to/from deduplication-optimized format"

TREE_HELP = """\
The tree contains:
  chunks/      2-level sharded directory for the chunk table
  mapchunks/   2-level sharded directory for the mapchunk table
  mapregions/  2-level sharded directory for the mapregion table
  gamedata/    flat directory for the gamedata table
  playerdata/  flat directory for the playerdata table
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vcdbtree",
        description=DESCRIPTION,
        epilog=TREE_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command")

    split_parser = sub.add_parser("split", help="Convert a .vcdbs database into a vcdbtree")
    split_parser.add_argument("input_db", help="Source .vcdbs file")
    split_parser.add_argument("output_dir", help="Destination tree directory")

    combine_parser = sub.add_parser("combine", help="Rebuild a .vcdbs database from a vcdbtree")
    combine_parser.add_argument("input_dir", help="Source tree directory")
    combine_parser.add_argument("output_db", help="Destination .vcdbs file")

    sub.add_parser("help", help="Show this help")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the vcdbtree tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if args.command == "help":
        parser.print_help()
        sys.exit(0)

    if args.command is None:
        parser.print_help(sys.stderr)
        sys.exit(1)

    start = time.monotonic()
    try:
        if args.command == "split":
            print(f"Splitting {args.input_db} -> {args.output_dir}")
            files = split(args.input_db, args.output_dir)
            print(f"Split complete in {time.monotonic() - start:.2f}s ({files} files)")
        else:
            print(f"Combining {args.input_dir} -> {args.output_db}")
            counts = combine(args.input_dir, args.output_db)
            print(f"Combine complete in {time.monotonic() - start:.2f}s")
            for table, rows in counts.items():
                print(f"  {table}: {rows} rows")
    except VcdbtreeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
