"""Tests for the BSA/BA2 archive readers."""

import os
import struct
import tempfile
import unittest

import pytest

from TexTrim.archives import (
    ArchiveVariant,
    find_entry,
    list_entries,
    parse_archive,
    read_entry,
    read_entry_head,
    sniff_variant,
    tes3_hash,
    tes4_file_hash,
    tes4_folder_hash,
)
from TexTrim.core.records import CompressionKind, FileRecord
from TexTrim.errors import ArchiveError, ArchiveErrorKind, DecodeError

from builders import build_ba2, build_tes3, build_tes4, make_dds, write_file

FILES = {
    "textures/rocks/rock.dds": make_dds(128, 128),
    "textures/rocks/rock_n.dds": make_dds(128, 128, fourcc=b"ATI2"),
    "meshes/rock.nif": b"NIF" * 50,
}


class TestTES3(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = build_tes3(os.path.join(self.tmp.name, "mw.bsa"), FILES)

    def tearDown(self):
        self.tmp.cleanup()

    def test_parse_lists_named_records(self):
        archive = parse_archive(self.path)
        self.assertEqual(archive.variant, ArchiveVariant.TES3)
        self.assertTrue(archive.names_stored)
        self.assertEqual(sorted(r.name for r in list_entries(archive)), sorted(FILES))

    def test_read_entry_roundtrips_bytes(self):
        archive = parse_archive(self.path)
        for name, payload in FILES.items():
            record = find_entry(archive, name)
            self.assertIsNotNone(record)
            self.assertEqual(read_entry(archive, record), payload)

    def test_find_entry_is_case_and_separator_insensitive(self):
        archive = parse_archive(self.path)
        self.assertIsNotNone(find_entry(archive, "Textures\\Rocks\\ROCK.dds"))

    def test_hash_table_matches_tes3_hash(self):
        archive = parse_archive(self.path)
        record = find_entry(archive, "meshes/rock.nif")
        self.assertEqual(record.name_hash, tes3_hash("meshes\\rock.nif"))

    def test_other_version_word_is_not_tes3(self):
        with open(self.path, "r+b") as fh:
            fh.write(struct.pack("<I", 0x200))
        with self.assertRaises(ArchiveError) as ctx:
            parse_archive(self.path)
        self.assertEqual(ctx.exception.kind, ArchiveErrorKind.BAD_MAGIC)


class TestTES4(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def _build(self, name="a.bsa", **kwargs):
        return build_tes4(os.path.join(self.tmp.name, name), FILES, **kwargs)

    def test_uncompressed_v104(self):
        archive = parse_archive(self._build(version=104))
        self.assertEqual(archive.variant, ArchiveVariant.TES4)
        self.assertEqual(archive.version, 104)
        record = find_entry(archive, "textures/rocks/rock.dds")
        self.assertEqual(record.compression, CompressionKind.NONE)
        self.assertEqual(read_entry(archive, record), FILES["textures/rocks/rock.dds"])

    def test_zlib_compressed_v104(self):
        archive = parse_archive(self._build(version=104, compress=True))
        for name, payload in FILES.items():
            record = find_entry(archive, name)
            self.assertEqual(record.compression, CompressionKind.ZLIB)
            self.assertEqual(read_entry(archive, record), payload)

    def test_lz4_compressed_v105(self):
        archive = parse_archive(self._build(version=105, compress=True))
        record = find_entry(archive, "textures/rocks/rock_n.dds")
        self.assertEqual(record.compression, CompressionKind.LZ4)
        self.assertEqual(read_entry(archive, record), FILES["textures/rocks/rock_n.dds"])

    def test_per_record_toggle_inverts_default(self):
        archive = parse_archive(self._build(
            version=105, compress=True, toggle={"meshes/rock.nif"},
        ))
        self.assertEqual(find_entry(archive, "meshes/rock.nif").compression, CompressionKind.NONE)
        self.assertEqual(
            find_entry(archive, "textures/rocks/rock.dds").compression, CompressionKind.LZ4
        )
        self.assertEqual(
            read_entry(archive, find_entry(archive, "meshes/rock.nif")), FILES["meshes/rock.nif"]
        )

    def test_embedded_names_are_skipped(self):
        archive = parse_archive(self._build(version=104, embed_names=True, compress=True))
        self.assertTrue(archive.embedded_names)
        for name, payload in FILES.items():
            self.assertEqual(read_entry(archive, find_entry(archive, name)), payload)

    def test_hash_only_lookup(self):
        archive = parse_archive(self._build(version=105, names=False))
        self.assertFalse(archive.names_stored)
        self.assertTrue(all(r.name is None for r in archive.records))
        record = find_entry(archive, "Textures/Rocks/Rock_N.dds")
        self.assertIsNotNone(record)
        self.assertEqual(record.name_hash, tes4_file_hash("rock_n.dds"))
        self.assertEqual(record.folder_hash, tes4_folder_hash("textures\\rocks"))
        self.assertEqual(read_entry(archive, record), FILES["textures/rocks/rock_n.dds"])

    def test_hash_only_miss_returns_none(self):
        archive = parse_archive(self._build(version=105, names=False))
        self.assertIsNone(find_entry(archive, "textures/rocks/missing.dds"))

    def test_read_entry_head_compressed(self):
        archive = parse_archive(self._build(version=105, compress=True))
        record = find_entry(archive, "textures/rocks/rock.dds")
        head = read_entry_head(archive, record, 16)
        self.assertEqual(head, FILES["textures/rocks/rock.dds"][:16])

    def test_read_entry_head_uncompressed(self):
        archive = parse_archive(self._build(version=104))
        record = find_entry(archive, "textures/rocks/rock.dds")
        self.assertEqual(read_entry_head(archive, record, 4), b"DDS ")

    def test_unsupported_version(self):
        path = self._build(version=104)
        with open(path, "r+b") as fh:
            fh.seek(4)
            fh.write(struct.pack("<I", 106))
        with self.assertRaises(ArchiveError) as ctx:
            parse_archive(path)
        self.assertEqual(ctx.exception.kind, ArchiveErrorKind.UNSUPPORTED_VERSION)

    def test_truncated_file_is_rejected_whole(self):
        path = self._build(version=104)
        size = os.path.getsize(path)
        with open(path, "r+b") as fh:
            fh.truncate(size - 10)
        with self.assertRaises(ArchiveError) as ctx:
            parse_archive(path)
        self.assertEqual(ctx.exception.kind, ArchiveErrorKind.TRUNCATED_RECORD)

    def test_corrupt_payload_is_entry_scoped(self):
        path = self._build(version=104, compress=True)
        archive = parse_archive(path)
        bad = find_entry(archive, "meshes/rock.nif")
        with open(path, "r+b") as fh:
            fh.seek(bad.offset + 4)
            fh.write(b"\xff" * 8)
        with self.assertRaises(DecodeError):
            read_entry(archive, bad)
        good = find_entry(archive, "textures/rocks/rock.dds")
        self.assertEqual(read_entry(archive, good), FILES["textures/rocks/rock.dds"])


class TestBA2(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_general_archive_uncompressed(self):
        path = build_ba2(os.path.join(self.tmp.name, "a.ba2"), FILES, version=1)
        archive = parse_archive(path)
        self.assertEqual(archive.variant, ArchiveVariant.BA2_GENERAL)
        self.assertTrue(archive.names_stored)
        for name, payload in FILES.items():
            self.assertEqual(read_entry(archive, find_entry(archive, name)), payload)

    def test_general_archive_zlib(self):
        path = build_ba2(os.path.join(self.tmp.name, "a.ba2"), FILES, version=8, compress=True)
        archive = parse_archive(path)
        record = find_entry(archive, "textures/rocks/rock_n.dds")
        self.assertEqual(record.compression, CompressionKind.ZLIB)
        self.assertEqual(read_entry(archive, record), FILES["textures/rocks/rock_n.dds"])
        self.assertEqual(read_entry_head(archive, record, 4), b"DDS ")

    def test_texture_archive_is_unsupported(self):
        path = build_ba2(os.path.join(self.tmp.name, "t.ba2"), FILES, archive_type=b"DX10")
        with self.assertRaises(ArchiveError) as ctx:
            parse_archive(path)
        self.assertEqual(ctx.exception.kind, ArchiveErrorKind.UNSUPPORTED_VERSION)

    def test_unknown_version(self):
        path = build_ba2(os.path.join(self.tmp.name, "v.ba2"), FILES, version=3)
        with self.assertRaises(ArchiveError) as ctx:
            parse_archive(path)
        self.assertEqual(ctx.exception.kind, ArchiveErrorKind.UNSUPPORTED_VERSION)


def test_bad_magic(tmp_dir):
    path = write_file(os.path.join(tmp_dir, "junk.bsa"), b"JUNK" + b"\0" * 64)
    with pytest.raises(ArchiveError) as ctx:
        parse_archive(path)
    assert ctx.value.kind is ArchiveErrorKind.BAD_MAGIC


def test_missing_file_is_unreadable(tmp_dir):
    with pytest.raises(ArchiveError) as ctx:
        parse_archive(os.path.join(tmp_dir, "nope.bsa"))
    assert ctx.value.kind is ArchiveErrorKind.UNREADABLE


def test_list_entries_is_restartable(tmp_dir):
    archive = parse_archive(build_tes3(os.path.join(tmp_dir, "a.bsa"), FILES))
    first = list(list_entries(archive))
    second = list(list_entries(archive))
    assert first == second
    assert len(first) == len(FILES)


def test_unknown_compression_raises_decode_error(tmp_dir):
    archive = parse_archive(build_tes3(os.path.join(tmp_dir, "a.bsa"), FILES))
    record = archive.records[0]
    weird = FileRecord(
        name=record.name, name_hash=record.name_hash, offset=record.offset,
        compressed_size=record.compressed_size, uncompressed_size=record.uncompressed_size,
        compression=CompressionKind.UNKNOWN,
    )
    with pytest.raises(DecodeError):
        read_entry(archive, weird)
    # The archive itself is still usable.
    assert read_entry(archive, record) == FILES[record.name]


def test_sniff_variant():
    assert sniff_variant(b"BSA\x00rest") is ArchiveVariant.TES4
    assert sniff_variant(b"\x00\x01\x00\x00") is ArchiveVariant.TES3
    assert sniff_variant(b"BTDXGNRL") is ArchiveVariant.BA2_GENERAL
    assert sniff_variant(b"PK\x03\x04") is None
