"""Core utilities -- re-exports all public symbols for convenience."""

from .records import (
    SourceKind,
    CompressionKind,
    JobStatus,
    ModEntry,
    FileRecord,
    VirtualFileEntry,
    TextureHeader,
    TextureAsset,
    ExclusionRule,
    ResizePolicy,
    Recipe,
    OptimizationJob,
    JobResult,
    ProgressEvent,
    RunSummary,
)
from .paths import (
    normalize_logical_path,
    to_archive_path,
    get_output_path,
    get_staging_path,
)
from .hashing import (
    file_hash,
    stat_fingerprint,
    loose_fingerprint,
    archive_entry_fingerprint,
)
from .classify import classify, classify_path, decode_dds_header, is_texture_path
from .exclusions import ExclusionMatcher, load as load_exclusions
from .cache import CompletionCache, settings_fingerprint
from .profiles import load_profile, discover_archives
from .logging import default_log_path, setup_logging

__all__ = [
    "SourceKind", "CompressionKind", "JobStatus",
    "ModEntry", "FileRecord", "VirtualFileEntry",
    "TextureHeader", "TextureAsset", "ExclusionRule",
    "ResizePolicy", "Recipe", "OptimizationJob", "JobResult",
    "ProgressEvent", "RunSummary",
    "normalize_logical_path", "to_archive_path", "get_output_path", "get_staging_path",
    "file_hash", "stat_fingerprint", "loose_fingerprint",
    "archive_entry_fingerprint",
    "classify", "classify_path", "decode_dds_header", "is_texture_path",
    "ExclusionMatcher", "load_exclusions",
    "CompletionCache", "settings_fingerprint",
    "load_profile", "discover_archives",
    "default_log_path", "setup_logging",
]
