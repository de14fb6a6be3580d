# stream_resolver/utils.py

import math
import os
import re

from .config import VIDEO_EXTENSIONS


def format_bytes(size_bytes: int) -> str:
    """Converts bytes into a human-readable string (e.g., KB, MB, GB)."""
    if size_bytes <= 0:
        return "0B"
    size_name = ("B", "KB", "MB", "GB", "TB")
    i = min(int(math.floor(math.log(size_bytes, 1024))), len(size_name) - 1)
    p = math.pow(1024, i)
    s = round(size_bytes / p, 2)
    return f"{s} {size_name[i]}"


def get_quality(resolution: str | None) -> str:
    """Maps a parsed resolution string onto a coarse quality tier label."""
    if not resolution:
        return "sd"
    res = resolution.lower()
    if "2160" in res or "4k" in res or "uhd" in res:
        return "4k"
    if "1080" in res:
        return "1080p"
    if "720" in res:
        return "720p"
    if "480" in res:
        return "480p"
    if "360" in res:
        return "360p"
    return "sd"


def magnet_from_hash(info_hash: str) -> str:
    return f"magnet:?xt=urn:btih:{info_hash}"


def is_video_file(path: str) -> bool:
    """True when the path carries one of the known video container extensions."""
    _, extension = os.path.splitext(path or "")
    return extension.lower() in VIDEO_EXTENSIONS


def file_basename(path: str) -> str:
    """Returns the last path component, tolerating both separator styles."""
    return re.split(r"[\\/]", path or "")[-1]
