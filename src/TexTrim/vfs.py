"""Virtual file system: merge prioritized mods into one logical tree.

Mods are applied from lowest to highest priority. Among mods sharing a
priority the archive contents are inserted before the loose files, so at
equal priority a loose file overrides an archived one. Each insertion carries a
sequence number; the highest sequence wins a logical path.

Archives that only store hashes cannot be enumerated by name. Their
records are kept per hash scheme and consulted when a path is resolved,
again choosing the highest sequence among all candidates.
"""

import logging
import os
from itertools import groupby
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .archives import (
    ArchiveFile,
    ArchiveVariant,
    parse_archive,
    read_entry,
    read_entry_head,
    variant_lookup_key,
)
from .config import VFSConfig
from .errors import ArchiveError, ConfigError, DecodeError
from .core.hashing import archive_entry_fingerprint, loose_fingerprint
from .core.paths import get_staging_path, normalize_logical_path
from .core.profiles import discover_archives
from .core.records import FileRecord, ModEntry, SourceKind, VirtualFileEntry

logger = logging.getLogger("texture_optimizer.vfs")

BASE_LAYER_NAME = "<data>"

# (sequence, entry) for named sources
_Slot = Tuple[int, VirtualFileEntry]
# (sequence, mod, archive, record, archive fingerprint) for hash-only records
_HashSlot = Tuple[int, ModEntry, ArchiveFile, FileRecord, str]


class VirtualFileSystem:
    """Immutable logical path -> winning source mapping.

    Build with `VirtualFileSystem.build`; the instance never changes
    afterwards.
    """

    def __init__(self, index: Dict[str, _Slot],
                 hashed: Dict[ArchiveVariant, Dict[object, _HashSlot]],
                 archives: Dict[str, ArchiveFile],
                 archive_errors: List[ArchiveError],
                 mods: List[ModEntry]):
        self._index = MappingProxyType(index)
        self._hashed = MappingProxyType(
            {variant: MappingProxyType(table) for variant, table in hashed.items()}
        )
        self._archives = MappingProxyType(archives)
        self.archive_errors: Tuple[ArchiveError, ...] = tuple(archive_errors)
        self.mods: Tuple[ModEntry, ...] = tuple(mods)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, mods: Sequence[ModEntry], data_root: str,
              config: Optional[VFSConfig] = None,
              fingerprint_mode: str = "stat") -> "VirtualFileSystem":
        """Resolve ``mods`` on top of ``data_root`` into one logical tree.

        Raises:
            ConfigError: ``data_root`` is missing or not a readable directory.
        """
        config = config or VFSConfig()
        if not data_root or not os.path.isdir(data_root):
            raise ConfigError(f"Data root does not exist or is not a directory: {data_root!r}")
        if not os.access(data_root, os.R_OK | os.X_OK):
            raise ConfigError(f"Data root is not readable: {data_root!r}")

        layers: List[ModEntry] = []
        if config.include_base_layer:
            base_priority = min((m.priority for m in mods), default=0) - 1
            layers.append(ModEntry(
                name=BASE_LAYER_NAME, enabled=True, priority=base_priority,
                root=os.path.abspath(data_root),
            ))
        # sorted() is stable: equal priorities keep profile order.
        layers.extend(sorted((m for m in mods if m.enabled), key=lambda m: m.priority))
        skipped = sum(1 for m in mods if not m.enabled)
        if skipped:
            logger.debug("Ignoring %d disabled mod(s)", skipped)

        builder = _Builder(config, fingerprint_mode)
        # Within one priority every archive goes in before any loose file,
        # so loose beats archive on a tie even across mods.
        for _, group in groupby(layers, key=lambda m: m.priority):
            group = [m for m in group if builder.has_root(m)]
            for mod in group:
                builder.add_archives(mod)
            for mod in group:
                builder.add_loose(mod)

        vfs = cls(builder.index, builder.hashed, builder.archives,
                  builder.archive_errors, layers)
        logger.info(
            "VFS built: %d named paths, %d hash-only records, %d archives "
            "(%d failed), %d layers",
            len(builder.index), sum(len(t) for t in builder.hashed.values()),
            len(builder.archives), len(builder.archive_errors), len(layers),
        )
        return vfs

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, logical_path: str) -> Optional[VirtualFileEntry]:
        """Return the winning source of ``logical_path``, or None."""
        try:
            path = normalize_logical_path(logical_path)
        except ValueError:
            return None

        best_seq = -1
        best: Optional[VirtualFileEntry] = None
        slot = self._index.get(path)
        if slot is not None:
            best_seq, best = slot

        for variant, table in self._hashed.items():
            hit = table.get(variant_lookup_key(variant, path))
            if hit is not None and hit[0] > best_seq:
                seq, mod, archive, record, archive_fp = hit
                best_seq = seq
                best = _archive_entry(path, mod, archive, record, archive_fp)
        return best

    def __contains__(self, logical_path) -> bool:
        return self.resolve(logical_path) is not None

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self) -> Iterator[VirtualFileEntry]:
        for path in self.paths():
            yield self.resolve(path)

    def paths(self) -> List[str]:
        """Named logical paths, sorted."""
        return sorted(self._index)

    def entries(self) -> List[VirtualFileEntry]:
        return list(self)

    def archive(self, entry: VirtualFileEntry) -> ArchiveFile:
        return self._archives[entry.source_path]

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    def open(self, entry: VirtualFileEntry) -> bytes:
        """Return the full (decompressed) bytes of ``entry``.

        Raises:
            DecodeError: the source could not be read or decompressed.
        """
        if entry.is_loose:
            try:
                with open(entry.source_path, "rb") as fh:
                    return fh.read()
            except OSError as exc:
                raise DecodeError(f"{entry.logical_path}: {exc}") from exc
        return read_entry(self.archive(entry), entry.record)

    def read_head(self, entry: VirtualFileEntry, size: int) -> bytes:
        """Return at most ``size`` leading bytes of ``entry``."""
        if entry.is_loose:
            try:
                with open(entry.source_path, "rb") as fh:
                    return fh.read(size)
            except OSError as exc:
                raise DecodeError(f"{entry.logical_path}: {exc}") from exc
        return read_entry_head(self.archive(entry), entry.record, size)

    def materialize(self, entry: VirtualFileEntry, dest_dir: str) -> str:
        """Return a path on disk holding the bytes of ``entry``.

        Loose files are used in place; archived entries are extracted under
        ``dest_dir`` mirroring their logical path.
        """
        if entry.is_loose:
            return os.path.abspath(entry.source_path)
        data = self.open(entry)
        target = get_staging_path(entry.logical_path, dest_dir)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        tmp = target + ".tmp"
        with open(tmp, "wb") as fh:
            fh.write(data)
        os.replace(tmp, target)
        return os.path.abspath(target)


def _archive_entry(path: str, mod: ModEntry, archive: ArchiveFile,
                   record: FileRecord, archive_fp: str) -> VirtualFileEntry:
    return VirtualFileEntry(
        logical_path=path,
        kind=SourceKind.ARCHIVE,
        mod=mod,
        size=record.uncompressed_size or record.compressed_size,
        fingerprint=archive_entry_fingerprint(
            archive_fp, record.offset, record.compressed_size
        ),
        source_path=archive.path,
        record=record,
    )


class _Builder:
    """Mutable state while a VFS is assembled."""

    def __init__(self, config: VFSConfig, fingerprint_mode: str):
        self.config = config
        self.fingerprint_mode = fingerprint_mode
        self.index: Dict[str, _Slot] = {}
        self.hashed: Dict[ArchiveVariant, Dict[object, _HashSlot]] = {}
        self.archives: Dict[str, ArchiveFile] = {}
        self.archive_errors: List[ArchiveError] = []
        self.seq = 0
        self._archive_exts = {e.lower() for e in config.archive_extensions}
        self._ignored = {n.lower() for n in config.ignored_files}

    def _next(self) -> int:
        self.seq += 1
        return self.seq

    def has_root(self, mod: ModEntry) -> bool:
        if not os.path.isdir(mod.root):
            logger.warning("Mod '%s' root not found, skipping: %s", mod.name, mod.root)
            return False
        return True

    def add_archives(self, mod: ModEntry) -> None:
        archives = [
            a if os.path.isabs(a) else os.path.join(mod.root, a) for a in mod.archives
        ]
        if not archives and self.config.auto_register_archives:
            archives = discover_archives(mod.root, self.config.archive_extensions)
        for archive_path in archives:
            self.add_archive(mod, archive_path)

    def add_archive(self, mod: ModEntry, archive_path: str) -> None:
        try:
            archive = parse_archive(archive_path)
        except ArchiveError as exc:
            logger.error("Skipping archive in mod '%s': %s", mod.name, exc)
            self.archive_errors.append(exc)
            return

        # Entry fingerprints derive from the archive's own fingerprint so a
        # repacked archive invalidates every entry it holds.
        archive_fp = loose_fingerprint(archive.path, self.fingerprint_mode)
        self.archives[archive.path] = archive
        for record in archive.records:
            if record.name is None:
                key = (record.folder_hash, record.name_hash) \
                    if archive.variant is ArchiveVariant.TES4 else record.name_hash
                table = self.hashed.setdefault(archive.variant, {})
                table[key] = (self._next(), mod, archive, record, archive_fp)
                continue
            self.index[record.name] = (
                self._next(), _archive_entry(record.name, mod, archive, record, archive_fp)
            )
        logger.debug("Registered %d records from %s", len(archive), archive.path)

    def add_loose(self, mod: ModEntry) -> None:
        root_real = os.path.realpath(mod.root)
        count = 0
        for dirpath, dirnames, filenames in os.walk(mod.root):
            dirnames.sort(key=str.lower)
            for fname in sorted(filenames, key=str.lower):
                lower = fname.lower()
                if lower in self._ignored:
                    continue
                if Path(lower).suffix in self._archive_exts:
                    continue
                fpath = os.path.join(dirpath, fname)

                # Guard against symlink/path escapes outside the mod root.
                real = os.path.realpath(fpath)
                try:
                    if os.path.commonpath([root_real, real]) != root_real:
                        logger.warning("Skipping file outside mod root: %s", fpath)
                        continue
                except ValueError:
                    logger.warning("Skipping file with incompatible path root: %s", fpath)
                    continue

                try:
                    logical = normalize_logical_path(os.path.relpath(fpath, mod.root))
                    size = os.path.getsize(fpath)
                except (OSError, ValueError) as exc:
                    logger.warning("Skipping unreadable loose file %s: %s", fpath, exc)
                    continue
                entry = VirtualFileEntry(
                    logical_path=logical,
                    kind=SourceKind.LOOSE,
                    mod=mod,
                    size=size,
                    fingerprint=loose_fingerprint(fpath, self.fingerprint_mode),
                    source_path=os.path.abspath(fpath),
                )
                self.index[logical] = (self._next(), entry)
                count += 1
        logger.debug("Registered %d loose files from mod '%s'", count, mod.name)
