import argparse
import asyncio
import logging

from ..core.context import IndexingContext
from ..utils.logger import setup_logging

ACTIONS = ("merge", "cleanup", "orphans", "reset")


async def _merge(context: IndexingContext, dry_run: bool):
    groups = await context.db.find_duplicate_series()
    if not groups:
        print("No duplicate series found.")
        return

    print(f"Found {len(groups)} groups of duplicate series:")
    for group in groups:
        print("  - " + ", ".join(f"{title} (ID {series_id})" for series_id, title in group))

    if dry_run:
        print("\nTo merge these series, run with --apply")
    else:
        merged = await context.library.merge_duplicates()
        print(f"\nMerged {merged} series entries.")


async def _cleanup(context: IndexingContext, dry_run: bool):
    empty = await context.db.find_empty_series()
    if not empty:
        print("No empty series found.")
        return

    print(f"Found {len(empty)} series without episodes:")
    for series_id, title in empty[:20]:
        print(f"  - {title} (ID {series_id})")
    if len(empty) > 20:
        print(f"  ... and {len(empty) - 20} more.")

    if dry_run:
        print("\nTo remove these series, run with --apply")
    else:
        removed = await context.library.cleanup_series()
        print(f"\nRemoved {removed} empty series.")


async def _orphans(context: IndexingContext, dry_run: bool):
    orphans = await context.library.find_orphan_images()
    if not orphans:
        print("No orphaned images found. Your image cache is clean!")
        return

    print(f"Found {len(orphans)} cached images no entry uses:")
    for path in orphans[:20]:
        print(f"  - {path}")
    if len(orphans) > 20:
        print(f"  ... and {len(orphans) - 20} more.")

    if dry_run:
        print("\nTo delete these images, run with --apply")
    else:
        removed = await context.library.reclaim_orphans()
        print(f"\nDeleted {removed} images.")


async def _reset(context: IndexingContext, dry_run: bool):
    movies, shows = await context.db.get_library_counts()
    print(f"This removes {movies} movies, {shows} series with their episodes, all watch and "
          f"streaming history and every cached image in {context.images.cache_dir}.")
    if dry_run:
        print("\nTo reset the library, run with --apply")
    else:
        await context.library.reset()
        print("\nLibrary reset.")


async def run_maintenance(action: str, dry_run: bool = True):
    context = await IndexingContext.create()
    try:
        print(f"\nRunning '{action}' on {context.db.db_path}")
        if dry_run:
            print("[DRY RUN] Nothing will be changed.")
        print("-" * 60)
        handler = {"merge": _merge, "cleanup": _cleanup, "orphans": _orphans, "reset": _reset}[action]
        await handler(context, dry_run)
    finally:
        await context.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Library maintenance (dry run unless --apply is given)")
    parser.add_argument("action", choices=ACTIONS)
    parser.add_argument("--apply", action="store_true", help="Actually change the library")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(level=logging.DEBUG if args.debug else logging.WARNING, log_to_file=False)
    asyncio.run(run_maintenance(args.action, dry_run=not args.apply))


if __name__ == "__main__":
    main()
