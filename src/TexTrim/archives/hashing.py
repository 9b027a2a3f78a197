"""Path hash schemes used by the archive variants.

Each container family hashes names its own way; lookups must branch on the
concrete format instead of assuming one scheme.
"""

import os

_U32 = 0xFFFFFFFF


def _prepare(path: str) -> str:
    return path.lower().replace("/", "\\")


def tes3_hash(path: str) -> int:
    """Morrowind BSA hash of a full path, as a 64-bit value (low word first)."""
    name = _prepare(path)
    half = len(name) >> 1
    low = 0
    off = 0
    for ch in name[:half]:
        low ^= (ord(ch) << (off & 0x1F)) & _U32
        off += 8
    high = 0
    off = 0
    for ch in name[half:]:
        temp = (ord(ch) << (off & 0x1F)) & _U32
        high ^= temp
        n = temp & 0x1F
        high = ((high >> n) | (high << (32 - n))) & _U32
        off += 8
    return (high << 32) | low


def tes4_hash(name: str, ext: str = "") -> int:
    """Oblivion-and-later BSA hash for a file stem (with ``ext``) or a folder."""
    stem = _prepare(name)
    ext = ext.lower()
    if not stem:
        return 0
    chars = [ord(c) for c in stem]
    hash1 = (
        chars[-1]
        | ((chars[-2] if len(chars) > 2 else 0) << 8)
        | (len(chars) << 16)
        | (chars[0] << 24)
    )
    if ext == ".kf":
        hash1 |= 0x80
    elif ext == ".nif":
        hash1 |= 0x8000
    elif ext == ".dds":
        hash1 |= 0x8080
    elif ext == ".wav":
        hash1 |= 0x80000000

    hash2 = 0
    for c in chars[1:-2]:
        hash2 = (hash2 * 0x1003F + c) & _U32
    hash3 = 0
    for c in ext:
        hash3 = (hash3 * 0x1003F + ord(c)) & _U32
    hash2 = (hash2 + hash3) & _U32
    return (hash2 << 32) | (hash1 & _U32)


def tes4_file_hash(filename: str) -> int:
    """Hash a bare file name (no folder) with the TES4 scheme."""
    stem, ext = os.path.splitext(_prepare(filename))
    return tes4_hash(stem, ext)


def tes4_folder_hash(folder: str) -> int:
    return tes4_hash(_prepare(folder).strip("\\"))
