"""Oblivion / Fallout 3 / Skyrim / Skyrim SE (TES4 family) BSA reader.

Folder and file names are optional (archive flags 0x1 and 0x2). When they
are absent only the 64-bit folder and file hashes identify a record, so
lookups have to hash the query path.
"""

import logging
import os
import struct

import numpy as np

from ..errors import ArchiveError, ArchiveErrorKind
from ..core.paths import normalize_logical_path, to_archive_path
from ..core.records import CompressionKind, FileRecord
from .base import ArchiveFile, ArchiveVariant, check_span, read_exact
from .hashing import tes4_file_hash, tes4_folder_hash

logger = logging.getLogger("texture_optimizer.archives")

MAGIC = b"BSA\x00"
SUPPORTED_VERSIONS = (103, 104, 105)

FLAG_DIRECTORY_NAMES = 0x1
FLAG_FILE_NAMES = 0x2
FLAG_COMPRESSED = 0x4
FLAG_EMBEDDED_NAMES = 0x100

SIZE_COMPRESSION_TOGGLE = 0x40000000
SIZE_MASK = 0x3FFFFFFF

_HEADER = struct.Struct("<4sIIIIIIIHH")
_FOLDER_V104 = np.dtype([("hash", "<u8"), ("count", "<u4"), ("offset", "<u4")])
_FOLDER_V105 = np.dtype([
    ("hash", "<u8"), ("count", "<u4"), ("pad", "<u4"), ("offset", "<u8"),
])
_FILE = np.dtype([("hash", "<u8"), ("size", "<u4"), ("offset", "<u4")])


def lookup_key(logical_path: str):
    folder, _, filename = to_archive_path(logical_path).rpartition("\\")
    return (tes4_folder_hash(folder), tes4_file_hash(filename))


def parse(path: str, fh, file_size: int) -> ArchiveFile:
    header = read_exact(fh, _HEADER.size, path, "header")
    (magic, version, folder_offset, flags, folder_count, file_count,
     _folder_names_len, file_names_len, _file_flags, _pad) = _HEADER.unpack(header)
    if magic != MAGIC:
        raise ArchiveError(ArchiveErrorKind.BAD_MAGIC, path, f"magic={magic!r}")
    if version not in SUPPORTED_VERSIONS:
        raise ArchiveError(
            ArchiveErrorKind.UNSUPPORTED_VERSION, path, f"version={version}"
        )
    if folder_offset != _HEADER.size:
        raise ArchiveError(
            ArchiveErrorKind.TRUNCATED_RECORD, path,
            f"folder records at {folder_offset}, expected {_HEADER.size}",
        )

    folder_dtype = _FOLDER_V105 if version == 105 else _FOLDER_V104
    folders = np.frombuffer(
        read_exact(fh, folder_count * folder_dtype.itemsize, path, "folder records"),
        dtype=folder_dtype, count=folder_count,
    )
    declared = int(folders["count"].sum()) if folder_count else 0
    if declared != file_count:
        raise ArchiveError(
            ArchiveErrorKind.TRUNCATED_RECORD, path,
            f"folders declare {declared} files, header says {file_count}",
        )

    has_dir_names = bool(flags & FLAG_DIRECTORY_NAMES)
    has_file_names = bool(flags & FLAG_FILE_NAMES)
    compressed_default = bool(flags & FLAG_COMPRESSED)
    embedded_names = version >= 104 and bool(flags & FLAG_EMBEDDED_NAMES)
    codec = CompressionKind.LZ4 if version == 105 else CompressionKind.ZLIB

    # (folder name or None, folder hash, file table rows)
    blocks = []
    for i in range(folder_count):
        folder_name = None
        if has_dir_names:
            length = read_exact(fh, 1, path, f"folder {i} name length")[0]
            raw = read_exact(fh, length, path, f"folder {i} name")
            folder_name = raw.rstrip(b"\x00").decode("cp1252", errors="replace")
        count = int(folders[i]["count"])
        rows = np.frombuffer(
            read_exact(fh, count * _FILE.itemsize, path, f"folder {i} file records"),
            dtype=_FILE, count=count,
        )
        blocks.append((folder_name, int(folders[i]["hash"]), rows))

    file_names = []
    if has_file_names:
        block = read_exact(fh, file_names_len, path, "file name block")
        file_names = [
            n.decode("cp1252", errors="replace") for n in block.split(b"\x00")[:file_count]
        ]
        if len(file_names) < file_count:
            raise ArchiveError(
                ArchiveErrorKind.TRUNCATED_RECORD, path,
                f"{len(file_names)} file names for {file_count} records",
            )

    names_stored = has_dir_names and has_file_names
    records = []
    name_index = {}
    hash_index = {}
    index = 0
    for folder_name, folder_hash, rows in blocks:
        for row in rows:
            raw_size = int(row["size"])
            size = raw_size & SIZE_MASK
            offset = int(row["offset"])
            check_span(path, offset, size, file_size, f"record {index}")
            compressed = compressed_default != bool(raw_size & SIZE_COMPRESSION_TOGGLE)

            name = None
            if names_stored:
                try:
                    name = normalize_logical_path(
                        f"{folder_name}/{file_names[index]}" if folder_name
                        else file_names[index]
                    )
                except ValueError as exc:
                    raise ArchiveError(
                        ArchiveErrorKind.TRUNCATED_RECORD, path, f"record {index}: {exc}"
                    ) from exc

            record = FileRecord(
                name=name,
                name_hash=int(row["hash"]),
                folder_hash=folder_hash,
                offset=offset,
                compressed_size=size,
                # Compressed records carry their original size in the payload.
                uncompressed_size=0 if compressed else size,
                compression=codec if compressed else CompressionKind.NONE,
                index=index,
            )
            records.append(record)
            if name is not None:
                name_index[name] = record
            hash_index[(folder_hash, record.name_hash)] = record
            index += 1

    return ArchiveFile(
        path=path,
        variant=ArchiveVariant.TES4,
        version=version,
        flags=flags,
        names_stored=names_stored,
        records=tuple(records),
        file_size=file_size,
        embedded_names=embedded_names,
        name_index=name_index,
        hash_index=hash_index,
    )


def read_payload(fh, archive: ArchiveFile, record: FileRecord, limit):
    fh.seek(record.offset)
    remaining = record.compressed_size
    if archive.embedded_names:
        prefix = fh.read(1)
        if not prefix:
            return b"", 0
        fh.seek(prefix[0], os.SEEK_CUR)
        remaining -= 1 + prefix[0]

    expected = record.uncompressed_size
    if record.compression is not CompressionKind.NONE:
        original = fh.read(4)
        if len(original) != 4:
            return b"", 0
        expected = struct.unpack("<I", original)[0]
        remaining -= 4
        return fh.read(max(remaining, 0)), expected

    size = max(remaining, 0) if limit is None else min(limit, max(remaining, 0))
    return fh.read(size), max(remaining, 0)
