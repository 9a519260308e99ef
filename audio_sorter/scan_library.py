"""
scan-library — Incrementally index a music folder from the terminal.

Only files that are new or whose modification time moved forward are
processed; files that disappeared are dropped from the index.

Usage:
    scan-library ~/Music
    scan-library ~/Music --online          # AcoustID/MusicBrainz lookups
    scan-library ~/Music --workers 2       # worker threads (default: auto)
    scan-library ~/Music --dry-run         # show the diff, change nothing
"""

from __future__ import annotations

import argparse
import os
import shutil
import sys
from pathlib import Path

from loguru import logger

from .config import Settings, configure_logging
from .errors import AudioSorterError
from .library import AudioLibrary
from .models import ScanMode, ScanStatus
from .scanner import diff_library
from .worker import default_workers

# ── terminal helpers ──────────────────────────────────────────────────────────

_TERM_WIDTH = shutil.get_terminal_size((80, 20)).columns

GREEN  = "\033[0;32m"
YELLOW = "\033[1;33m"
RED    = "\033[0;31m"
CYAN   = "\033[0;36m"
BOLD   = "\033[1m"
DIM    = "\033[2m"
NC     = "\033[0m"

_POLL_SECONDS = 0.25


def _fmt_eta(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60:02d}s"
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h}h {m:02d}m {s:02d}s"


def _fmt_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def _draw_progress(status: ScanStatus) -> None:
    """Render progress bar + resource line on TWO lines."""
    done, total = status.files_processed, status.files_total
    pct = done / total if total else 0
    bar_width = min(30, _TERM_WIDTH - 45)
    filled = int(bar_width * pct)
    bar = "█" * filled + "░" * (bar_width - filled)

    eta_str = ""
    if done and done < total:
        eta_str = f"  ETA {_fmt_eta((total - done) * status.elapsed_secs / done)}"

    bar_line = (
        f"{CYAN}[{bar}]{NC} "
        f"{BOLD}{done}/{total}{NC} ({pct*100:.0f}%)"
        f"{DIM}{eta_str}{NC}"
    )

    res = status.resources
    info = f"CPU {res.cpu_percent:.0f}%  RSS {_fmt_bytes(res.memory_bytes)}"
    if status.current_file:
        name = Path(status.current_file).stem
        max_w = _TERM_WIDTH - len(info) - 12
        if len(name) > max_w > 1:
            name = name[:max_w - 1] + "…"
        info += f"  ▶ {name}"
    info_line = f"{DIM}  {info}{NC}"

    sys.stdout.write(f"\033[2K\r{bar_line}\n\033[2K\r{info_line}\033[1A\r")
    sys.stdout.flush()


def _clear_progress() -> None:
    """Erase the two progress lines."""
    sys.stdout.write("\033[2K\r\n\033[2K\r\033[1A\r")
    sys.stdout.flush()


def _print_diff(root: Path, library: AudioLibrary) -> int:
    listing, diff = diff_library(root, library.index_store.snapshot())
    print(f"\n{BOLD}Library:{NC} {root}")
    print(f"  Audio files:  {len(listing.files)}")
    print(f"  New:          {len(diff.added)}")
    print(f"  Modified:     {len(diff.modified)}")
    print(f"  Removed:      {len(diff.removed)}")
    print(f"  Unchanged:    {diff.unchanged}")
    if listing.warnings:
        print(f"  {YELLOW}Unreadable:   {listing.warnings}{NC}")
    print()
    return len(diff.to_process)


# ── main ──────────────────────────────────────────────────────────────────────

def main() -> None:
    auto_workers = default_workers()

    parser = argparse.ArgumentParser(
        prog="scan-library",
        description="Fingerprint, tag and analyse new or changed audio files.",
    )
    parser.add_argument("root", nargs="?", default=None,
                        help="Music folder (default: AUDIO_SORTER_INPUT_DIR)")
    parser.add_argument("--online", action="store_true",
                        help="Resolve metadata via AcoustID/MusicBrainz (needs ACOUSTID_CLIENT_ID)")
    parser.add_argument("--index-dir", default=None, metavar="DIR",
                        help="Where index.jsonl and analysis.json live")
    parser.add_argument("--workers", type=int, default=None, metavar="N",
                        help=f"Parallel worker threads (default: {auto_workers})")
    parser.add_argument("--dry-run", action="store_true",
                        help="Show what would be processed without doing anything")
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging(os.environ.get("LOG_LEVEL", "WARNING").upper())
    if args.index_dir:
        settings.index_dir = Path(args.index_dir).expanduser()
    if args.workers:
        settings.workers = args.workers

    root = Path(args.root).expanduser() if args.root else settings.input_dir
    if root is None:
        print("ERROR: no music folder given and AUDIO_SORTER_INPUT_DIR is not set.", file=sys.stderr)
        sys.exit(2)

    library = AudioLibrary(settings)
    library.load()

    try:
        pending = _print_diff(root.resolve(), library)
    except AudioSorterError as e:
        print(f"{RED}ERROR:{NC} {e}", file=sys.stderr)
        sys.exit(1)

    if args.dry_run:
        print("Dry run — nothing processed.")
        return

    mode = ScanMode.ONLINE if args.online else ScanMode.OFFLINE
    if mode == ScanMode.ONLINE and not settings.online_available:
        print(f"{YELLOW}ACOUSTID_CLIENT_ID not set — running offline.{NC}")
    if pending:
        print(f"  Workers: {settings.workers or auto_workers}  │  Mode: {mode.value}\n")

    library.start_scan(root, mode)
    while not library.wait_for_scan(_POLL_SECONDS):
        _draw_progress(library.get_scan_status())
    _clear_progress()

    status = library.get_scan_status()
    if status.last_error:
        print(f"\n{RED}Scan failed:{NC} {status.last_error}", file=sys.stderr)
        sys.exit(1)

    summary = status.last_summary
    print(f"\n{BOLD}{'─' * 50}{NC}")
    print(f"{GREEN}Done{NC} in {_fmt_eta(summary.duration_secs)}")
    print(f"  Processed:  {summary.succeeded}")
    print(f"  Failed:     {summary.failed}")
    print(f"  Warnings:   {summary.warnings}")
    print(f"  Removed:    {summary.removed}")
    print(f"  Unchanged:  {summary.unchanged}")
    print(f"  Index:      {settings.index_path}")

    duplicates = library.get_duplicates()
    if duplicates:
        print(f"\n{YELLOW}{len(duplicates)} duplicate group(s):{NC}")
        for group in duplicates[:10]:
            print(f"  {group.group_id}. " + ", ".join(Path(p).name for p in group.paths))
        if len(duplicates) > 10:
            print(f"  … and {len(duplicates) - 10} more")
    logger.debug(f"Scan of {root} finished with {len(library.get_tracks())} tracks indexed")


if __name__ == "__main__":
    main()
