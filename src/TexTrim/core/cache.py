"""Thread-safe completion cache keyed by (content fingerprint, recipe id)."""

import hashlib
import json
import logging
import os
import threading
import time
from typing import Dict, Iterable, Optional, Tuple

from ..config import CacheConfig, PipelineConfig
from ..errors import CacheError
from .records import JobResult

logger = logging.getLogger("texture_optimizer.cache")
CACHE_SCHEMA_VERSION = 1


def settings_fingerprint(config: "PipelineConfig") -> str:
    """Short hash of the settings that change converter output.

    Paths, worker counts and logging do not affect the bytes a converter
    produces, so they are left out. The recipe id is part of every cache
    key and covers the preset.
    """
    import dataclasses as _dc
    d = {
        "converter": {
            "tool": config.converter.tool,
            "extra_args": list(config.converter.extra_args),
        },
        "cache_schema_version": CACHE_SCHEMA_VERSION,
        "fingerprint_mode": config.cache.fingerprint_mode,
        "classify": _dc.asdict(config.classify),
    }
    from .. import __version__ as textrim_version
    d["textrim_version"] = textrim_version
    raw = json.dumps(d, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def _key(fingerprint: str, recipe_id: str) -> str:
    return f"{fingerprint}|{recipe_id}"


class CompletionCache:
    """Persistent map of (fingerprint, recipe id) to the last JobResult.

    Writes are serialized by one lock and persisted by atomic replace.
    Load problems never fail a run: the cache simply starts empty.
    """

    def __init__(self, cfg: CacheConfig, settings_fp: str = ""):
        self.cfg = cfg
        self._settings_fp = settings_fp
        self._entries: Dict[str, dict] = {}
        self._counter = 0
        self._lock = threading.RLock()
        self._consecutive_failures = 0
        self.load_error: Optional[CacheError] = None

        if self.cfg.enabled and os.path.exists(self.cfg.cache_path):
            try:
                self._load()
            except CacheError as exc:
                logger.warning("Completion cache unusable, starting empty: %s", exc)
                self.load_error = exc
                self._entries = {}

    @property
    def enabled(self) -> bool:
        return self.cfg.enabled

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _validate_schema(data) -> bool:
        if not isinstance(data, dict):
            return False
        entries = data.get("entries", {})
        if not isinstance(entries, dict):
            return False
        for key, entry in entries.items():
            if not isinstance(key, str) or not isinstance(entry, dict):
                return False
            if not isinstance(entry.get("status"), str):
                return False
        return True

    def _load(self):
        try:
            with open(self.cfg.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
            raise CacheError(f"Failed to load {self.cfg.cache_path}: {exc}") from exc
        if not self._validate_schema(data):
            raise CacheError(f"{self.cfg.cache_path} has an invalid structure")

        saved_fp = data.get("settings_fingerprint", "")
        if saved_fp and self._settings_fp and saved_fp != self._settings_fp:
            logger.warning(
                "Converter settings changed since last run (was %s, now %s). "
                "Invalidating %d cached results.",
                saved_fp, self._settings_fp, len(data.get("entries", {})),
            )
            return
        self._entries = dict(data.get("entries", {}))
        logger.info("Loaded completion cache: %d entries", len(self._entries))

    def save(self, _auto: bool = False):
        """Write the cache to disk (atomic replace).

        Raises:
            CacheError: the write failed and this was an explicit save.
        """
        if not self.cfg.enabled:
            return
        with self._lock:
            os.makedirs(os.path.dirname(self.cfg.cache_path) or ".", exist_ok=True)
            payload = {
                "schema_version": CACHE_SCHEMA_VERSION,
                "settings_fingerprint": self._settings_fp,
                "last_saved": time.strftime("%Y-%m-%dT%H:%M:%S"),
                "entries": self._entries,
            }
            tmp_path = f"{self.cfg.cache_path}.tmp.{os.getpid()}.{threading.get_ident()}"
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.cfg.cache_path)
                self._consecutive_failures = 0
            except OSError as exc:
                self._consecutive_failures += 1
                logger.error("Failed to save completion cache: %s", exc)
                if not _auto:
                    raise CacheError(f"Failed to save {self.cfg.cache_path}: {exc}") from exc
            finally:
                if os.path.exists(tmp_path):
                    try:
                        os.remove(tmp_path)
                    except OSError:
                        pass

    def get(self, fingerprint: str, recipe_id: str) -> Optional[JobResult]:
        """Return the stored result for this key, or None."""
        if not self.cfg.enabled:
            return None
        with self._lock:
            entry = self._entries.get(_key(fingerprint, recipe_id))
        if entry is None:
            return None
        try:
            return JobResult.from_dict(entry)
        except (TypeError, ValueError) as exc:
            logger.debug("Discarding malformed cache entry %s: %s", fingerprint, exc)
            return None

    def put(self, fingerprint: str, recipe_id: str, result: JobResult):
        """Record ``result``; autosaves every ``save_interval`` puts."""
        if not self.cfg.enabled:
            return
        with self._lock:
            self._entries[_key(fingerprint, recipe_id)] = result.to_dict()
            self._counter += 1
            should_save = self._counter % self.cfg.save_interval == 0
        if should_save:
            self.save(_auto=True)
            if self._consecutive_failures >= 3:
                logger.warning(
                    "Completion cache save has failed %d consecutive times.",
                    self._consecutive_failures,
                )

    def prune(self, active_keys: Iterable[Tuple[str, str]]) -> int:
        """Drop entries whose (fingerprint, recipe id) is not active."""
        if not self.cfg.enabled:
            return 0
        keep = {_key(fp, rid) for fp, rid in active_keys}
        with self._lock:
            stale = [k for k in self._entries if k not in keep]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.info("Pruned %d stale cache entries", len(stale))
        return len(stale)

    def clear(self):
        """Forget every entry and remove the cache file."""
        with self._lock:
            self._entries = {}
            self._counter = 0
            try:
                os.remove(self.cfg.cache_path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to remove cache file: %s", exc)
        logger.info("Completion cache cleared")
