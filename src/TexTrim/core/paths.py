"""Logical path normalization and output path helpers."""

import os
from pathlib import PurePosixPath


def normalize_logical_path(path: str) -> str:
    """Normalize a data-relative path to its canonical logical form.

    Lower-cases, unifies separators to ``/`` and rejects absolute paths or
    ``..`` segments that escape the root.
    """
    raw = str(path).replace("\\", "/").strip()
    drive_like = len(raw) >= 2 and raw[1] == ":"
    p = PurePosixPath(raw)
    if p.is_absolute() or drive_like:
        raise ValueError(f"Logical path must be relative, got absolute path: {path}")

    parts = []
    for part in p.parts:
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            else:
                raise ValueError(f"Logical path escapes root via '..': {path}")
            continue
        parts.append(part.lower())

    if not parts:
        raise ValueError(f"Logical path is empty after normalization: {path}")
    return "/".join(parts)


def to_archive_path(logical_path: str) -> str:
    """Return the backslash form Bethesda archives hash and store."""
    return normalize_logical_path(logical_path).replace("/", "\\")


def get_output_path(logical_path: str, output_dir: str, ext: str = None) -> str:
    """Return the on-disk output path mirroring the logical layout."""
    p = PurePosixPath(normalize_logical_path(logical_path))
    extension = ext or p.suffix
    parent = [] if str(p.parent) == "." else list(p.parent.parts)
    return os.path.join(output_dir, *parent, p.stem + extension)


def get_staging_path(logical_path: str, staging_dir: str) -> str:
    """Return where an archive entry is extracted before conversion."""
    p = PurePosixPath(normalize_logical_path(logical_path))
    return os.path.join(staging_dir, *p.parts)
