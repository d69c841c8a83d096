import sys
from collections import defaultdict

from slasshy.config import load_config
from slasshy.utils.file_scanner import FileScanner
from slasshy.utils.filename_parser import FilenameParser


def dryrun(roots, output_file="parse_preview.txt"):
    """Write how every video under `roots` would be parsed, grouped by detected title."""
    snapshot = FileScanner.scan_roots(roots)
    if not snapshot:
        print("No video files found.")
        return

    movies = []
    shows = defaultdict(list)
    for path in sorted(snapshot.values()):
        parsed = FilenameParser.parse(path, FileScanner.find_root(path, roots) or None)
        if parsed.is_episode:
            shows[(parsed.title, parsed.year)].append((parsed, path))
        else:
            movies.append((parsed, path))

    with open(output_file, "w", encoding="utf-8") as f:
        f.write("# Slasshy Filename Parse Dry-Run Report\n")
        f.write(f"# Files: {len(snapshot)}  Movies: {len(movies)}  Series: {len(shows)}\n")
        f.write("#" + "-" * 80 + "\n\n")

        f.write("## MOVIES\n")
        f.write("-" * 40 + "\n")
        for parsed, path in movies:
            year = f" ({parsed.year})" if parsed.year else ""
            f.write(f"{parsed.title}{year}\n          File: {path}\n")

        for (title, year), episodes in sorted(shows.items(), key=lambda item: item[0][0].lower()):
            f.write(f"\n## SERIES: {title}{f' ({year})' if year else ''}\n")
            f.write("-" * 40 + "\n")
            episodes.sort(key=lambda item: (item[0].season or 0, item[0].episode or 0))
            for parsed, path in episodes:
                marker = f"S{parsed.season or 1:02d}E{parsed.episode:02d}"
                if parsed.episode_end:
                    marker += f"-E{parsed.episode_end:02d}"
                f.write(f"[{marker}] {path}\n")

    print(f"Dry-run report generated: {output_file}")


if __name__ == "__main__":
    folders = sys.argv[1:] or load_config().media_folders
    if not folders:
        print("Usage: python dryrun_parse.py <folder> [folder ...] (or configure media folders)")
        sys.exit(1)
    dryrun(folders)
