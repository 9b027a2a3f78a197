"""Archive container model and format dispatch.

`parse_archive` sniffs the magic bytes, hands the open file to the matching
variant module, and returns an immutable `ArchiveFile`. Variant modules
validate magic and version before they read any record table, and reject
the whole archive when a record points outside the file.
"""

import logging
import os
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, Iterator, Optional, Tuple

import lz4.frame

from ..errors import ArchiveError, ArchiveErrorKind, DecodeError
from ..core.paths import normalize_logical_path
from ..core.records import CompressionKind, FileRecord

logger = logging.getLogger("texture_optimizer.archives")


class ArchiveVariant(Enum):
    """Concrete container families. Each has its own name/hash scheme."""

    TES3 = "tes3"
    TES4 = "tes4"
    BA2_GENERAL = "ba2_gnrl"


@dataclass(frozen=True)
class ArchiveFile:
    """Parsed archive header and record table."""

    path: str
    variant: ArchiveVariant
    version: int
    flags: int
    names_stored: bool
    records: Tuple[FileRecord, ...]
    file_size: int
    embedded_names: bool = False
    name_index: Dict[str, FileRecord] = field(default_factory=dict, compare=False, repr=False)
    hash_index: Dict[Hashable, FileRecord] = field(default_factory=dict, compare=False, repr=False)

    def __len__(self) -> int:
        return len(self.records)


def _variant_module(variant: ArchiveVariant):
    if variant is ArchiveVariant.TES3:
        from . import tes3
        return tes3
    if variant is ArchiveVariant.TES4:
        from . import tes4
        return tes4
    from . import ba2
    return ba2


def sniff_variant(head: bytes) -> Optional[ArchiveVariant]:
    """Return the variant whose magic matches ``head``, or None."""
    from . import ba2, tes3, tes4
    if head.startswith(tes4.MAGIC):
        return ArchiveVariant.TES4
    if head.startswith(tes3.MAGIC):
        return ArchiveVariant.TES3
    if head.startswith(ba2.MAGIC):
        return ArchiveVariant.BA2_GENERAL
    return None


def parse_archive(path: str) -> ArchiveFile:
    """Parse an archive container.

    Raises:
        ArchiveError: ``BAD_MAGIC``, ``UNSUPPORTED_VERSION``,
            ``TRUNCATED_RECORD`` or ``UNREADABLE``. No partial archive is
            ever returned.
    """
    path = str(path)
    try:
        file_size = os.path.getsize(path)
        with open(path, "rb") as fh:
            head = fh.read(4)
            variant = sniff_variant(head)
            if variant is None:
                raise ArchiveError(
                    ArchiveErrorKind.BAD_MAGIC, path, f"magic={head!r}"
                )
            fh.seek(0)
            archive = _variant_module(variant).parse(path, fh, file_size)
    except OSError as exc:
        raise ArchiveError(ArchiveErrorKind.UNREADABLE, path, str(exc)) from exc

    logger.debug(
        "Parsed %s archive %s: version=%d records=%d names=%s",
        archive.variant.value, path, archive.version,
        len(archive.records), archive.names_stored,
    )
    return archive


def list_entries(archive: ArchiveFile) -> Iterator[FileRecord]:
    """Yield the archive's records in table order.

    Every call returns a fresh iterator, so enumeration can be restarted.
    """
    yield from archive.records


def lookup_key(archive: ArchiveFile, logical_path: str) -> Hashable:
    """Return the hash-index key for ``logical_path`` in this variant's scheme."""
    return variant_lookup_key(archive.variant, logical_path)


def variant_lookup_key(variant: ArchiveVariant, logical_path: str) -> Hashable:
    """Hash ``logical_path`` the way archives of ``variant`` key their records."""
    return _variant_module(variant).lookup_key(normalize_logical_path(logical_path))


def find_entry(archive: ArchiveFile, logical_path: str) -> Optional[FileRecord]:
    """Locate a record by logical path.

    Uses literal names when the archive stores them; otherwise hashes the
    query the way this variant does. A miss returns None, never raises.
    """
    try:
        normalized = normalize_logical_path(logical_path)
    except ValueError:
        return None
    if archive.names_stored:
        record = archive.name_index.get(normalized)
        if record is not None:
            return record
    return archive.hash_index.get(lookup_key(archive, normalized))


def _decompress(kind: CompressionKind, data: bytes, expected: int,
                limit: Optional[int], label: str) -> bytes:
    if kind is CompressionKind.NONE:
        return data if limit is None else data[:limit]
    try:
        if kind is CompressionKind.ZLIB:
            if limit is None:
                out = zlib.decompress(data)
            else:
                out = zlib.decompressobj().decompress(data, limit)
        elif kind is CompressionKind.LZ4:
            if limit is None:
                out = lz4.frame.decompress(data)
            else:
                out = lz4.frame.LZ4FrameDecompressor().decompress(data, max_length=limit)
        else:
            raise DecodeError(f"{label}: unsupported compression '{kind.value}'")
    except (zlib.error, RuntimeError, ValueError) as exc:
        raise DecodeError(f"{label}: {kind.value} decompression failed: {exc}") from exc

    if limit is None and expected and len(out) != expected:
        raise DecodeError(
            f"{label}: decompressed {len(out)} bytes, expected {expected}"
        )
    return out


def read_entry(archive: ArchiveFile, record: FileRecord) -> bytes:
    """Return the decompressed bytes of one record.

    Raises:
        DecodeError: unknown compression or corrupt payload. The error is
            scoped to this entry; the archive remains usable.
    """
    return _read(archive, record, None)


def read_entry_head(archive: ArchiveFile, record: FileRecord, size: int) -> bytes:
    """Return at most ``size`` leading bytes of a record's decompressed data."""
    return _read(archive, record, max(int(size), 0))


def _read(archive: ArchiveFile, record: FileRecord, limit: Optional[int]) -> bytes:
    label = f"{archive.path}:{record.name or hex(record.name_hash)}"
    if record.compression is CompressionKind.UNKNOWN:
        raise DecodeError(f"{label}: unsupported compression")
    module = _variant_module(archive.variant)
    try:
        with open(archive.path, "rb") as fh:
            payload, expected = module.read_payload(fh, archive, record, limit)
    except OSError as exc:
        raise DecodeError(f"{label}: read failed: {exc}") from exc
    return _decompress(record.compression, payload, expected, limit, label)


def read_exact(fh, size: int, path: str, what: str) -> bytes:
    """Read ``size`` bytes or fail the whole archive as truncated."""
    data = fh.read(size)
    if len(data) != size:
        raise ArchiveError(
            ArchiveErrorKind.TRUNCATED_RECORD, path,
            f"{what}: wanted {size} bytes, got {len(data)}",
        )
    return data


def check_span(path: str, offset: int, size: int, file_size: int, what: str) -> None:
    """Reject records whose data would run past the end of the file."""
    if offset < 0 or size < 0 or offset + size > file_size:
        raise ArchiveError(
            ArchiveErrorKind.TRUNCATED_RECORD, path,
            f"{what} spans {offset}+{size} beyond file size {file_size}",
        )
