"""Content fingerprints used as completion-cache key components."""

import hashlib
import logging
import os
import uuid

logger = logging.getLogger("texture_optimizer")


def file_hash(filepath: str) -> str:
    """Compute SHA-256 hash of a file for change detection.

    On I/O failure, returns a unique non-repeatable sentinel so that the
    completion cache never considers the file done. This forces
    re-processing on the next run.
    """
    h = hashlib.sha256()
    try:
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                h.update(chunk)
        return h.hexdigest()
    except OSError as exc:
        logger.warning("Failed to hash %s: %s", filepath, exc)
        return f"unhashable-{uuid.uuid4().hex}"


def stat_fingerprint(filepath: str, identity: str = "") -> str:
    """Fingerprint from mtime and size, salted with the source identity.

    Two different files may share size and mtime, so the identity (the
    source path, or archive path plus record offset) is part of the digest.
    """
    try:
        st = os.stat(filepath)
    except OSError as exc:
        logger.warning("Failed to stat %s: %s", filepath, exc)
        return f"unhashable-{uuid.uuid4().hex}"
    raw = f"{identity or os.path.abspath(filepath)}|{st.st_size}|{st.st_mtime_ns}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def loose_fingerprint(filepath: str, mode: str = "stat") -> str:
    """Fingerprint a loose file using ``stat`` or full ``content`` hashing."""
    if mode == "content":
        return file_hash(filepath)
    return stat_fingerprint(filepath)


def archive_entry_fingerprint(archive_fp: str, offset: int, size: int) -> str:
    """Derive an entry fingerprint from its archive's fingerprint and record."""
    raw = f"{archive_fp}|{offset}|{size}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
