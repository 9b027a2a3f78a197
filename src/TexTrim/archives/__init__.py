"""Readers for Bethesda-style archive containers (BSA / BA2)."""

from .base import (
    ArchiveFile,
    ArchiveVariant,
    find_entry,
    list_entries,
    lookup_key,
    parse_archive,
    read_entry,
    read_entry_head,
    sniff_variant,
    variant_lookup_key,
)
from .hashing import tes3_hash, tes4_file_hash, tes4_folder_hash, tes4_hash

__all__ = [
    "ArchiveFile", "ArchiveVariant",
    "parse_archive", "list_entries", "read_entry", "read_entry_head",
    "find_entry", "lookup_key", "variant_lookup_key", "sniff_variant",
    "tes3_hash", "tes4_hash", "tes4_file_hash", "tes4_folder_hash",
]
