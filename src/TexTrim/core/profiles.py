"""Load the ordered mod list from a YAML profile or an MO2 ``modlist.txt``."""

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

import yaml

from ..errors import ConfigError
from .records import ModEntry

logger = logging.getLogger("texture_optimizer.profiles")

DEFAULT_ARCHIVE_EXTENSIONS = (".bsa", ".ba2")
MO2_SEPARATOR_SUFFIX = "_separator"


def discover_archives(root: str, extensions: Sequence[str] = DEFAULT_ARCHIVE_EXTENSIONS) -> List[str]:
    """Return archive files directly inside ``root``, sorted by name."""
    exts = {e.lower() for e in extensions}
    try:
        names = sorted(os.listdir(root), key=str.lower)
    except OSError as exc:
        logger.warning("Cannot list archives in %s: %s", root, exc)
        return []
    return [
        os.path.join(root, n) for n in names
        if Path(n).suffix.lower() in exts and os.path.isfile(os.path.join(root, n))
    ]


def _default_mods_dir(profile_path: str) -> str:
    # <instance>/profiles/<profile>/modlist.txt -> <instance>/mods
    return str(Path(profile_path).resolve().parent.parent.parent / "mods")


def load_modlist(path: str, mods_dir: Optional[str] = None,
                 archive_extensions: Sequence[str] = DEFAULT_ARCHIVE_EXTENSIONS) -> List[ModEntry]:
    """Parse a Mod Organizer 2 ``modlist.txt``.

    ``+name`` is enabled, ``-name`` disabled and ``*name`` (unmanaged)
    is ignored. The first line has the highest priority.
    """
    mods_dir = mods_dir or _default_mods_dir(path)
    try:
        lines = Path(path).read_text(encoding="utf-8-sig").splitlines()
    except OSError as exc:
        raise ConfigError(f"Failed to read mod list '{path}': {exc}") from exc

    parsed = []
    for lineno, line in enumerate(lines, 1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        marker, name = text[0], text[1:].strip()
        if marker == "*":
            continue
        if marker not in "+-" or not name:
            raise ConfigError(f"{path}:{lineno}: unrecognized mod list line '{text}'")
        if name.lower().endswith(MO2_SEPARATOR_SUFFIX):
            continue
        parsed.append((name, marker == "+"))

    mods = []
    for index, (name, enabled) in enumerate(parsed):
        root = os.path.join(mods_dir, name)
        mods.append(ModEntry(
            name=name,
            enabled=enabled,
            priority=len(parsed) - index,
            root=root,
            archives=discover_archives(root, archive_extensions) if enabled else [],
        ))
    logger.info(
        "Loaded %d mods from %s (%d enabled)",
        len(mods), path, sum(1 for m in mods if m.enabled),
    )
    return mods


def load_yaml_profile(path: str, mods_dir: Optional[str] = None) -> List[ModEntry]:
    """Parse a YAML profile::

        mods:
          - name: Better Rocks
            enabled: true
            priority: 10
            root: mods/Better Rocks     # relative to the profile file
            archives: [BetterRocks.bsa]

    Missing ``priority`` defaults to list position (later wins) and a
    missing ``root`` to ``<mods_dir>/<name>``.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse profile '{path}': {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read profile '{path}': {exc}") from exc

    items = data.get("mods") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise ConfigError(f"Profile '{path}' must contain a 'mods' list")

    base = os.path.dirname(os.path.abspath(path))
    mods = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("name"):
            raise ConfigError(f"Profile '{path}': mod #{index + 1} needs a 'name'")
        name = str(item["name"])
        priority = item.get("priority", index)
        if not isinstance(priority, int) or isinstance(priority, bool):
            raise ConfigError(f"Profile '{path}': priority of '{name}' must be an integer")
        archives = item.get("archives") or []
        if not isinstance(archives, list):
            raise ConfigError(f"Profile '{path}': archives of '{name}' must be a list")

        root = item.get("root")
        if root:
            root = str(root) if os.path.isabs(str(root)) else os.path.join(base, str(root))
        elif mods_dir:
            root = os.path.join(mods_dir, name)
        else:
            root = os.path.join(base, name)
        mods.append(ModEntry(
            name=name,
            enabled=bool(item.get("enabled", True)),
            priority=priority,
            root=root,
            archives=[str(a) for a in archives],
        ))
    logger.info("Loaded %d mods from profile %s", len(mods), path)
    return mods


def load_profile(path: str, mods_dir: Optional[str] = None,
                 archive_extensions: Sequence[str] = DEFAULT_ARCHIVE_EXTENSIONS) -> List[ModEntry]:
    """Load mods from ``path``; ``.txt`` is read as an MO2 mod list.

    Raises:
        ConfigError: the profile is missing or malformed.
    """
    if not path or not os.path.isfile(path):
        raise ConfigError(f"Profile not found: {path!r}")
    if Path(path).suffix.lower() == ".txt":
        return load_modlist(path, mods_dir, archive_extensions)
    return load_yaml_profile(path, mods_dir)
