import argparse
import asyncio
import logging
import sys

from clipkeep import __version__
from clipkeep.config import LOG_PATH, PREVIEW_LENGTH, RegistryConfig
from clipkeep.storage import Registry, RegistryError
from clipkeep.utils import ensure_dir


def setup_logging(verbose: bool = False) -> None:
    ensure_dir(LOG_PATH.parent)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_PATH),
            logging.StreamHandler(sys.stderr),
        ],
    )


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


async def list_entries(registry: Registry) -> int:
    """Print the stored history, oldest first."""
    try:
        entries = await registry.load()
    except RegistryError as e:
        print(f"Could not read history: {e}")
        return 1

    if not entries:
        print("(No clipboard history)")
        return 0
    for i, entry in enumerate(entries, 1):
        marker = "*" if entry.is_favorite() else " "
        print(f"{i:>4} {marker} {entry.preview(PREVIEW_LENGTH)}")
    return 0


async def show_status(registry: Registry) -> int:
    stats = await registry.stats()
    print(f"Registry: {registry.index_path}")
    if not stats.index_exists:
        print("No history stored yet.")
    else:
        print(f"Index size: {format_size(stats.index_size)} (limit {registry.config.cache_file_size_mib} MiB)")
    print(f"Blobs: {stats.blob_count} ({format_size(stats.blob_bytes)})")
    print(f"History size: {registry.config.history_size}")
    if stats.backup_exists:
        print(f"Backup: {registry.backup_path}")
    return 0


async def prune_history(registry: Registry) -> int:
    """Rewrite the index with its pruned contents and drop orphaned blobs."""
    try:
        entries = await registry.load()
    except RegistryError as e:
        print(f"Could not read history: {e}")
        return 1

    await registry.write(entries)
    removed = await registry.collect_garbage(entries)
    print(f"Kept {len(entries)} entries, removed {removed} unreferenced blobs.")
    return 0


async def clear_history(registry: Registry) -> int:
    try:
        entries = await registry.load()
    except RegistryError as e:
        print(f"Could not read history: {e}")
        return 1

    await registry.clear(entries)
    print(f"Cleared {len(entries)} entries.")
    return 0


COMMANDS = {
    "list": list_entries,
    "status": show_status,
    "prune": prune_history,
    "clear": clear_history,
}


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        description=f"clipkeep {__version__} - inspect and maintain the clipboard history cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  status      Show paths and sizes (default)
  list        Print stored entries, favorites marked with *
  prune       Apply the history size limit on disk and drop orphaned blobs
  clear       Delete the whole history

Environment:
  CLIPKEEP_CACHE_DIR, CLIPKEEP_APP_ID, CLIPKEEP_HISTORY_SIZE, CLIPKEEP_CACHE_FILE_SIZE
""",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="status",
        choices=sorted(COMMANDS),
        help="Command to run",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    registry = Registry(RegistryConfig.from_env())
    sys.exit(asyncio.run(COMMANDS[args.command](registry)))


if __name__ == "__main__":
    main()
