"""Fallout 4 BA2 reader (general "GNRL" archives).

Texture ("DX10") archives store chunked mip data without a DDS header and
are rejected as unsupported.
"""

import struct

import numpy as np

from ..errors import ArchiveError, ArchiveErrorKind
from ..core.paths import normalize_logical_path
from ..core.records import CompressionKind, FileRecord
from .base import ArchiveFile, ArchiveVariant, check_span, read_exact

MAGIC = b"BTDX"
SUPPORTED_VERSIONS = (1, 7, 8)
TYPE_GENERAL = b"GNRL"
TYPE_TEXTURE = b"DX10"

_HEADER = struct.Struct("<4sI4sIQ")
_RECORD = np.dtype([
    ("name_hash", "<u4"), ("ext", "S4"), ("dir_hash", "<u4"), ("flags", "<u4"),
    ("offset", "<u8"), ("packed", "<u4"), ("unpacked", "<u4"), ("align", "<u4"),
])


def lookup_key(logical_path: str):
    # Every general archive carries a name table; hash lookups never apply.
    return ("ba2", logical_path)


def parse(path: str, fh, file_size: int) -> ArchiveFile:
    header = read_exact(fh, _HEADER.size, path, "header")
    magic, version, archive_type, file_count, name_table_offset = _HEADER.unpack(header)
    if magic != MAGIC:
        raise ArchiveError(ArchiveErrorKind.BAD_MAGIC, path, f"magic={magic!r}")
    if version not in SUPPORTED_VERSIONS:
        raise ArchiveError(
            ArchiveErrorKind.UNSUPPORTED_VERSION, path, f"version={version}"
        )
    if archive_type != TYPE_GENERAL:
        raise ArchiveError(
            ArchiveErrorKind.UNSUPPORTED_VERSION, path,
            f"archive type {archive_type!r} is not supported",
        )

    rows = np.frombuffer(
        read_exact(fh, file_count * _RECORD.itemsize, path, "file records"),
        dtype=_RECORD, count=file_count,
    )
    if name_table_offset == 0 or name_table_offset > file_size:
        raise ArchiveError(
            ArchiveErrorKind.TRUNCATED_RECORD, path,
            f"name table offset {name_table_offset} outside file",
        )
    fh.seek(name_table_offset)
    names = []
    for i in range(file_count):
        (length,) = struct.unpack("<H", read_exact(fh, 2, path, f"name {i} length"))
        names.append(read_exact(fh, length, path, f"name {i}").decode("cp1252", errors="replace"))

    records = []
    name_index = {}
    for i, row in enumerate(rows):
        packed = int(row["packed"])
        unpacked = int(row["unpacked"])
        offset = int(row["offset"])
        stored = packed if packed else unpacked
        check_span(path, offset, stored, file_size, f"record {i}")
        try:
            name = normalize_logical_path(names[i])
        except ValueError as exc:
            raise ArchiveError(
                ArchiveErrorKind.TRUNCATED_RECORD, path, f"record {i}: {exc}"
            ) from exc
        record = FileRecord(
            name=name,
            name_hash=int(row["name_hash"]),
            folder_hash=int(row["dir_hash"]),
            offset=offset,
            compressed_size=stored,
            uncompressed_size=unpacked,
            compression=CompressionKind.ZLIB if packed else CompressionKind.NONE,
            index=i,
        )
        records.append(record)
        name_index[name] = record

    return ArchiveFile(
        path=path,
        variant=ArchiveVariant.BA2_GENERAL,
        version=version,
        flags=0,
        names_stored=True,
        records=tuple(records),
        file_size=file_size,
        name_index=name_index,
    )


def read_payload(fh, archive: ArchiveFile, record: FileRecord, limit):
    fh.seek(record.offset)
    if record.compression is CompressionKind.NONE and limit is not None:
        return fh.read(min(limit, record.compressed_size)), record.uncompressed_size
    return fh.read(record.compressed_size), record.uncompressed_size
