"""Orchestrate one texture optimization run end-to-end.

`TexturePipeline` loads the mod profile, builds the VFS, classifies and
filters textures, and hands them to the batch scheduler. Every run ends
with an explicit `RunSummary`.
"""

import json
import logging
import os
import shutil
import threading
import time
from typing import Callable, List, Optional

from .config import PipelineConfig
from .errors import ConfigError, DecodeError
from .core.cache import CompletionCache, settings_fingerprint
from .core.classify import classify
from .core.exclusions import ExclusionMatcher, load as load_exclusions
from .core.profiles import load_profile
from .core.records import ModEntry, ProgressEvent, RunSummary, TextureAsset
from .phases.convert import Converter
from .phases.optimize import BatchScheduler
from .vfs import VirtualFileSystem

logger = logging.getLogger("texture_optimizer")

REPORT_NAME = "textrim_report.json"


def _get_version() -> str:
    from . import __version__
    return __version__


class TexturePipeline:
    """Master run orchestrator.

    Stages:
    1. Load profile and exclusion rules
    2. Build the VFS
    3. Classify textures (decode errors are counted and skipped)
    4. Schedule conversions
    5. Write the run report
    """

    def __init__(
        self,
        config: PipelineConfig,
        observer: Optional[Callable[[ProgressEvent], None]] = None,
        converter: Optional[Converter] = None,
    ):
        self.config = config
        self.observer = observer
        self.converter = converter or Converter(config.converter)
        self._cancel_event = threading.Event()
        self.vfs: Optional[VirtualFileSystem] = None
        self.assets: List[TextureAsset] = []
        self.decode_errors: List[str] = []
        self.scheduler: Optional[BatchScheduler] = None

    def request_cancel(self):
        """Request cooperative cancellation for the active run."""
        self._cancel_event.set()

    def open_cache(self) -> Optional[CompletionCache]:
        if not self.config.cache.enabled:
            return None
        return CompletionCache(self.config.cache, settings_fingerprint(self.config))

    def reset_cache(self):
        cache = CompletionCache(self.config.cache, settings_fingerprint(self.config))
        cache.clear()

    def load_mods(self) -> List[ModEntry]:
        if not self.config.profile_path:
            logger.info("No profile given; using the data root only")
            return []
        return load_profile(
            self.config.profile_path,
            self.config.mods_dir or None,
            self.config.vfs.archive_extensions,
        )

    def load_exclusions(self) -> ExclusionMatcher:
        ex = self.config.exclusions
        return load_exclusions(ex.game, ex.rules_dir or None, ex.extra_patterns)

    def build_vfs(self, mods: List[ModEntry]) -> VirtualFileSystem:
        self.vfs = VirtualFileSystem.build(
            mods, self.config.data_root, self.config.vfs,
            self.config.cache.fingerprint_mode,
        )
        return self.vfs

    def classify_all(self, vfs: VirtualFileSystem) -> List[TextureAsset]:
        """Classify every VFS entry; bad headers are logged and skipped."""
        assets = []
        self.decode_errors = []
        for entry in vfs:
            try:
                asset = classify(entry, vfs, self.config.classify)
            except DecodeError as exc:
                logger.warning("Skipping undecodable texture %s: %s", entry.logical_path, exc)
                self.decode_errors.append(entry.logical_path)
                continue
            if asset is not None:
                assets.append(asset)
        logger.info(
            "Classified %d texture(s) from %d path(s); %d decode error(s)",
            len(assets), len(vfs), len(self.decode_errors),
        )
        self.assets = assets
        return assets

    def run(self) -> RunSummary:
        """Run all stages.

        Raises:
            ConfigError: invalid configuration, missing data root or
                profile, unknown game, or no converter for a real run.
        """
        self._cancel_event.clear()
        start_time = time.time()
        self.config.validate()

        logger.info("=" * 60)
        logger.info("TEXTRIM TEXTURE OPTIMIZER v%s", _get_version())
        logger.info("=" * 60)
        logger.info("Data root: %s", self.config.data_root)
        logger.info("Profile:   %s", self.config.profile_path or "-")
        logger.info("Output:    %s", self.config.output_dir)
        logger.info("Preset:    %s", self.config.optimize.preset)
        logger.info("Workers:   %d", self.config.resolve_workers())
        logger.info("Cache:     %s", "enabled" if self.config.cache.enabled else "disabled")

        mods = self.load_mods()
        exclusions = self.load_exclusions()
        vfs = self.build_vfs(mods)

        if not self.config.dry_run and not self.converter.resolve_tool():
            raise ConfigError(
                f"Converter '{self.config.converter.tool}' not found; set "
                "converter.tool_path or use --dry-run"
            )

        assets = self.classify_all(vfs)
        cache = self.open_cache()
        self.scheduler = BatchScheduler(
            self.config, vfs,
            converter=self.converter,
            cache=cache,
            exclusions=exclusions,
            observer=self.observer,
            cancel_event=self._cancel_event,
        )
        summary = self.scheduler.run(assets)
        summary.decode_errors = len(self.decode_errors)
        summary.archive_errors = len(vfs.archive_errors)
        for err in vfs.archive_errors:
            summary.failures.append((err.path, str(err)))
        for path in self.decode_errors:
            summary.failures.append((path, "undecodable texture header"))

        if not self.config.optimize.staging_dir:
            shutil.rmtree(self.scheduler.staging_dir, ignore_errors=True)
        if not self.config.dry_run:
            self.write_report(summary)

        elapsed = time.time() - start_time
        logger.info("Run finished in %.1fs: %s", elapsed, summary.describe())
        if not summary.is_complete:
            for path, reason in summary.failures[:20]:
                logger.warning("  %s: %s", path, reason)
            if len(summary.failures) > 20:
                logger.warning("  ... %d more", len(summary.failures) - 20)
        return summary

    def write_report(self, summary: RunSummary) -> str:
        """Persist the summary as JSON next to the outputs (atomic write)."""
        report_path = os.path.join(self.config.output_dir, REPORT_NAME)
        os.makedirs(os.path.dirname(report_path) or ".", exist_ok=True)
        report = summary.to_dict()
        report["version"] = _get_version()
        report["preset"] = self.config.optimize.preset
        report["finished"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        tmp_report_path = f"{report_path}.tmp.{os.getpid()}.{threading.get_ident()}"
        try:
            with open(tmp_report_path, "w", encoding="utf-8") as f:
                json.dump(report, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_report_path, report_path)
        except OSError as exc:
            logger.error("Failed to write run report %s: %s", report_path, exc)
        finally:
            if os.path.exists(tmp_report_path):
                try:
                    os.remove(tmp_report_path)
                except OSError:
                    pass
        return report_path
