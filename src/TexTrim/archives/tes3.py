"""Morrowind (TES3) BSA reader.

Layout: 12-byte header (version 0x100, hash table offset, file count),
then size/offset pairs, name offsets, the name block, the 64-bit hash
table and finally the data section. Names are always stored and records
are never compressed.
"""

import struct

import numpy as np

from ..errors import ArchiveError, ArchiveErrorKind
from ..core.paths import normalize_logical_path
from ..core.records import CompressionKind, FileRecord
from .base import ArchiveFile, ArchiveVariant, check_span, read_exact
from .hashing import tes3_hash

MAGIC = b"\x00\x01\x00\x00"
VERSION = 0x100
_HEADER = struct.Struct("<III")
_SIZE_OFFSET = np.dtype([("size", "<u4"), ("offset", "<u4")])


def lookup_key(logical_path: str):
    return tes3_hash(logical_path)


def parse(path: str, fh, file_size: int) -> ArchiveFile:
    header = read_exact(fh, _HEADER.size, path, "header")
    version, hash_offset, file_count = _HEADER.unpack(header)
    if version != VERSION:
        raise ArchiveError(
            ArchiveErrorKind.UNSUPPORTED_VERSION, path, f"version=0x{version:x}"
        )

    names_start = _HEADER.size + file_count * 12
    hash_start = _HEADER.size + hash_offset
    data_start = hash_start + file_count * 8
    if hash_start < names_start or data_start > file_size:
        raise ArchiveError(
            ArchiveErrorKind.TRUNCATED_RECORD, path,
            f"hash table offset {hash_offset} inconsistent with {file_count} files",
        )

    pairs = np.frombuffer(
        read_exact(fh, file_count * 8, path, "size/offset table"),
        dtype=_SIZE_OFFSET, count=file_count,
    )
    name_offsets = np.frombuffer(
        read_exact(fh, file_count * 4, path, "name offsets"),
        dtype="<u4", count=file_count,
    )
    name_block = read_exact(fh, hash_start - names_start, path, "name block")
    hashes = np.frombuffer(
        read_exact(fh, file_count * 8, path, "hash table"),
        dtype="<u8", count=file_count,
    )

    records = []
    name_index = {}
    hash_index = {}
    for i in range(file_count):
        start = int(name_offsets[i])
        end = name_block.find(b"\x00", start)
        if start >= len(name_block) or end < 0:
            raise ArchiveError(
                ArchiveErrorKind.TRUNCATED_RECORD, path, f"name of record {i}"
            )
        raw_name = name_block[start:end].decode("cp1252", errors="replace")
        size = int(pairs[i]["size"])
        offset = data_start + int(pairs[i]["offset"])
        check_span(path, offset, size, file_size, f"record {i}")
        try:
            name = normalize_logical_path(raw_name)
        except ValueError as exc:
            raise ArchiveError(
                ArchiveErrorKind.TRUNCATED_RECORD, path, f"record {i}: {exc}"
            ) from exc
        record = FileRecord(
            name=name,
            name_hash=int(hashes[i]),
            offset=offset,
            compressed_size=size,
            uncompressed_size=size,
            compression=CompressionKind.NONE,
            index=i,
        )
        records.append(record)
        name_index[name] = record
        hash_index[record.name_hash] = record

    return ArchiveFile(
        path=path,
        variant=ArchiveVariant.TES3,
        version=version,
        flags=0,
        names_stored=True,
        records=tuple(records),
        file_size=file_size,
        name_index=name_index,
        hash_index=hash_index,
    )


def read_payload(fh, archive: ArchiveFile, record: FileRecord, limit):
    fh.seek(record.offset)
    size = record.compressed_size if limit is None else min(limit, record.compressed_size)
    return fh.read(size), record.uncompressed_size
