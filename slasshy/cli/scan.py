import argparse
import asyncio
import logging
from typing import List, Optional

from ..core.context import IndexingContext
from ..utils.logger import setup_logging


async def run_scan(folders: Optional[List[str]] = None, once: bool = False):
    context = await IndexingContext.create()
    if folders:
        # Scanned alongside the configured folders, without saving them
        context.sync.roots = lambda: context.media_roots() + [f for f in folders if f not in context.media_roots()]

    roots = list(context.sync.roots())
    if not roots:
        print("No media folders configured. Pass folders on the command line or add them in the settings.")
        await context.stop()
        return

    print(f"\nScanning {len(roots)} folder(s):")
    for root in roots:
        print(f"  - {root}")
    print("-" * 60)

    try:
        if once:
            report = await context.sync.run_tick()
            movies, shows = await context.db.get_library_counts()
            print(f"Added: {report.added}  Removed: {report.removed}  Failed: {report.failed}  "
                  f"Skipped duplicates: {report.skipped}  Empty series removed: {report.series_removed}")
            print(f"Library now holds {movies} movies and {shows} series.")
            if report.failed:
                print("Some files could not be indexed. Check the log for details.")
        else:
            context.sync.initial_delay = 0
            context.sync.start()
            print(f"Watching every {context.sync.interval:g}s. Press Ctrl+C to stop.")
            while True:
                await asyncio.sleep(3600)
    finally:
        await context.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Sync media folders into the library")
    parser.add_argument("folders", nargs="*", help="Folders to scan (default: configured folders)")
    parser.add_argument("--once", action="store_true", help="Run a single sync instead of watching")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(level=logging.DEBUG if args.debug else logging.INFO)
    try:
        asyncio.run(run_scan(args.folders, once=args.once))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
