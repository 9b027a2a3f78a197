"""Byte-level builders for synthetic archives and DDS textures used in tests."""

import os
import struct
import zlib

import lz4.frame

from TexTrim.archives.hashing import tes3_hash, tes4_file_hash, tes4_folder_hash


def make_dds(width=64, height=64, fourcc=b"DXT1", dxgi=None, mips=1,
             alpha=False, payload=64):
    """Return a DDS file: header, optional DX10 extension, zero payload.

    ``fourcc=None`` writes an uncompressed 32-bit BGRA(X) pixel format.
    """
    header = bytearray(128)
    header[0:4] = b"DDS "
    struct.pack_into("<7I", header, 4, 124, 0x1007, height, width, 0, 0, mips)
    if dxgi is not None:
        fourcc = b"DX10"
    if fourcc:
        pf_flags = 0x4 | (0x1 if alpha else 0)
        struct.pack_into("<II4s5I", header, 76, 32, pf_flags, fourcc, 0, 0, 0, 0, 0)
    else:
        pf_flags = 0x40 | (0x1 if alpha else 0)
        struct.pack_into(
            "<II4s5I", header, 76, 32, pf_flags, b"\0\0\0\0", 32,
            0x00FF0000, 0x0000FF00, 0x000000FF, 0xFF000000 if alpha else 0,
        )
    data = bytes(header)
    if dxgi is not None:
        data += struct.pack("<5I", dxgi, 3, 0, 1, 0)
    return data + b"\0" * payload


def write_file(path, data: bytes) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(data)
    return path


def _split(name: str):
    norm = name.replace("/", "\\").lower()
    folder, _, filename = norm.rpartition("\\")
    return folder, filename


def build_tes3(path, files: dict) -> str:
    """Write a Morrowind BSA holding ``files`` (logical path -> bytes)."""
    names = [n.replace("/", "\\").lower() for n in files]
    payloads = list(files.values())
    count = len(names)

    name_block = b""
    name_offsets = []
    for n in names:
        name_offsets.append(len(name_block))
        name_block += n.encode("cp1252") + b"\0"

    pairs = b""
    data = b""
    for payload in payloads:
        pairs += struct.pack("<II", len(payload), len(data))
        data += payload

    hash_offset = count * 12 + len(name_block)
    out = struct.pack("<III", 0x100, hash_offset, count)
    out += pairs
    out += b"".join(struct.pack("<I", o) for o in name_offsets)
    out += name_block
    out += b"".join(struct.pack("<Q", tes3_hash(n)) for n in names)
    out += data
    return write_file(path, out)


def build_tes4(path, files: dict, version=105, compress=False, names=True,
               embed_names=False, toggle=()) -> str:
    """Write a TES4-family BSA.

    ``compress`` sets the archive-wide default; logical paths listed in
    ``toggle`` invert it per record. ``names=False`` omits both name
    tables so only hashes identify records.
    """
    folders = {}
    for name, payload in files.items():
        folder, filename = _split(name)
        folders.setdefault(folder, []).append((filename, payload, name))
    folder_items = list(folders.items())

    flags = 0
    if names:
        flags |= 0x1 | 0x2
    if compress:
        flags |= 0x4
    if embed_names:
        flags |= 0x100

    folder_rec_size = 24 if version == 105 else 16
    header_size = 36
    file_count = len(files)
    folder_names_len = sum(len(f) + 1 for f, _ in folder_items) if names else 0
    file_names = b"".join(fn.encode("cp1252") + b"\0" for _, items in folder_items for fn, _, _ in items)
    file_names_len = len(file_names) if names else 0

    # Folder name bzstrings + file records
    blocks_size = sum(
        (1 + len(f) + 1 if names else 0) + 16 * len(items) for f, items in folder_items
    )
    data_start = (header_size + folder_rec_size * len(folder_items)
                  + blocks_size + file_names_len)

    data = b""
    blocks = b""
    folder_records = b""
    block_cursor = header_size + folder_rec_size * len(folder_items)
    for folder, items in folder_items:
        fh = tes4_folder_hash(folder)
        if version == 105:
            folder_records += struct.pack("<QIIQ", fh, len(items), 0, block_cursor)
        else:
            folder_records += struct.pack("<QII", fh, len(items), block_cursor)
        block = b""
        if names:
            fname = folder.encode("cp1252") + b"\0"
            block += bytes([len(fname)]) + fname
        for filename, payload, logical in items:
            compressed = compress != (logical in toggle)
            stored = b""
            if embed_names:
                full = f"{folder}\\{filename}".encode("cp1252")
                stored += bytes([len(full)]) + full
            if compressed:
                packed = lz4.frame.compress(payload) if version == 105 else zlib.compress(payload)
                stored += struct.pack("<I", len(payload)) + packed
            else:
                stored += payload
            size = len(stored)
            if logical in toggle:
                size |= 0x40000000
            block += struct.pack("<QII", tes4_file_hash(filename), size, data_start + len(data))
            data += stored
        blocks += block
        block_cursor += len(block)

    header = struct.pack(
        "<4sIIIIIIIHH", b"BSA\0", version, header_size, flags,
        len(folder_items), file_count, folder_names_len, file_names_len, 0x2, 0,
    )
    out = header + folder_records + blocks + (file_names if names else b"") + data
    assert len(out) == data_start + len(data)
    return write_file(path, out)


def build_ba2(path, files: dict, version=1, compress=False, archive_type=b"GNRL") -> str:
    """Write a Fallout 4 general BA2 archive."""
    count = len(files)
    data_start = 24 + 36 * count
    records = b""
    data = b""
    for name, payload in files.items():
        stored = zlib.compress(payload) if compress else payload
        ext = os.path.splitext(name)[1].lstrip(".").encode("ascii")[:4].ljust(4, b"\0")
        records += struct.pack(
            "<I4sIIQIII", 0, ext, 0, 0, data_start + len(data),
            len(stored) if compress else 0, len(payload), 0xBAADF00D,
        )
        data += stored
    name_table = b""
    for name in files:
        raw = name.replace("/", "\\").encode("cp1252")
        name_table += struct.pack("<H", len(raw)) + raw
    name_table_offset = data_start + len(data)
    header = struct.pack("<4sI4sIQ", b"BTDX", version, archive_type, count, name_table_offset)
    return write_file(path, header + records + data + name_table)
