"""
M3U export of the committed index, with entries served relative to a base URL.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote

from .models import TrackRecord


def build_m3u(records: Iterable[TrackRecord], root: Optional[Path | str] = None, base_url: str = "") -> str:
    """
    Render an extended M3U playlist, one entry per record in path order.

    Paths under *root* are written relative to it and URL-encoded onto
    *base_url*; other paths (or all paths when no base URL is given) are
    written as absolute file paths.
    """
    root_str = str(Path(root).expanduser().resolve()) if root else None
    lines = ["#EXTM3U"]
    for record in sorted(records, key=lambda r: r.path):
        tags = record.tags
        lines.append(f"#EXTINF:{int(round(tags.duration)) or -1},{tags.display_name()}")
        location = record.path
        if base_url and root_str and location.startswith(root_str + os.sep):
            rel = os.path.relpath(location, root_str).replace(os.sep, "/")
            location = f"{base_url.rstrip('/')}/{quote(rel)}"
        lines.append(location)
    return "\n".join(lines) + "\n"
