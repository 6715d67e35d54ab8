"""
Shared helpers for path normalization, glob matching and permission strings.
"""
import logging
import os
import re
import stat as stat_module
import sys
from typing import Optional

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

UNRESOLVED_SYMLINK = "(unresolved)"

_RWX = ("---", "--x", "-w-", "-wx", "r--", "r-x", "rw-", "rwx")


def to_forward_slashes(path: str) -> str:
    """Return the path with backslashes replaced so the UI sees one separator."""
    return path.replace("\\", "/")


def resolve_local_path(path: str) -> str:
    """Expand ~ and normalize a local path.

    An empty path or "/" stays as the filesystem root; on Windows it becomes ""
    so callers can switch to listing drives.
    """
    if path == "~" or path.startswith("~/"):
        return os.path.expanduser(path)
    if path in ("", "/", "\\"):
        return "" if IS_WINDOWS else "/"
    return os.path.normpath(path)


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a filename glob into an anchored, case-insensitive regex.

    Only * (any run of characters) and ? (one character) are special.
    """
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def type_char_for_mode(mode: int) -> str:
    if stat_module.S_ISDIR(mode):
        return "d"
    if stat_module.S_ISLNK(mode):
        return "l"
    return "-"


def build_permissions_string(mode: int, windows: Optional[bool] = None) -> str:
    """Render st_mode as a 10 character Unix permission string.

    Platforms without POSIX modes get sensible defaults derived from the
    read-only bit.
    """
    if windows is None:
        windows = IS_WINDOWS
    type_char = type_char_for_mode(mode)
    if windows:
        if type_char == "d":
            return "drwxr-xr-x"
        read_only = not (mode & stat_module.S_IWUSR)
        return type_char + ("r-xr-xr-x" if read_only else "rwxr-xr-x")
    return (
        type_char
        + _RWX[(mode >> 6) & 7]
        + _RWX[(mode >> 3) & 7]
        + _RWX[mode & 7]
    )


def parse_octal_mode(mode: str) -> int:
    """Parse an octal permission string such as "755" or "0644"."""
    try:
        value = int(str(mode), 8)
    except ValueError:
        raise ValueError(f"Invalid octal mode: {mode!r}")
    if value < 0 or value > 0o7777:
        raise ValueError(f"Invalid octal mode: {mode!r}")
    return value


def join_target(target_dir: str, source_path: str) -> str:
    """Destination path for dropping source_path into target_dir (forward slashes)."""
    name = to_forward_slashes(source_path).rstrip("/").split("/")[-1]
    return target_dir.rstrip("/") + "/" + name


def numbered_name(name: str, n: int) -> str:
    """Return "name (n).ext" for collision-free renames."""
    stem, ext = os.path.splitext(name)
    return f"{stem} ({n}){ext}"
