"""Record dataclasses passed between the resolver, classifier and scheduler."""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional, Tuple

from ..config import TextureType, TargetFormat
from .paths import normalize_logical_path


class SourceKind(Enum):
    """Where a virtual file's bytes live."""

    LOOSE = "loose"
    ARCHIVE = "archive"


class CompressionKind(Enum):
    """Per-record compression of an archive entry."""

    NONE = "none"
    ZLIB = "zlib"
    LZ4 = "lz4"
    UNKNOWN = "unknown"


class JobStatus(Enum):
    """Final status of one optimization job."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ModEntry:
    """One mod of the active profile."""

    name: str
    enabled: bool
    priority: int
    root: str
    archives: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FileRecord:
    """Single entry in an archive's record table.

    ``name`` is ``None`` when the container only stores hashes.
    """

    name: Optional[str]
    name_hash: int
    offset: int
    compressed_size: int
    uncompressed_size: int
    compression: CompressionKind
    index: int = 0
    folder_hash: int = 0


@dataclass(frozen=True)
class VirtualFileEntry:
    """Winning source for one logical path."""

    logical_path: str
    kind: SourceKind
    mod: ModEntry = field(hash=False, compare=False)
    size: int
    fingerprint: str
    source_path: str
    record: Optional[FileRecord] = None

    @property
    def is_loose(self) -> bool:
        return self.kind is SourceKind.LOOSE


@dataclass(frozen=True)
class TextureHeader:
    """Fields decoded from the leading bytes of a texture."""

    width: int
    height: int
    pixel_format: str
    mip_count: int
    has_alpha: bool = False


@dataclass(frozen=True)
class TextureAsset:
    """A classified texture backed by a VFS entry."""

    logical_path: str
    texture_type: TextureType
    header: TextureHeader
    source: VirtualFileEntry


@dataclass(frozen=True)
class ExclusionRule:
    """Wildcard path pattern that keeps a texture out of optimization."""

    pattern: str
    game: str


@dataclass(frozen=True)
class ResizePolicy:
    """Size limits of a recipe."""

    max_dimension: int
    min_dimension: int
    keep_mips: bool = True

    def target_size(self, width: int, height: int) -> Tuple[int, int]:
        """Halve dimensions until the longest side fits ``max_dimension``.

        Halving stops once the shortest side would drop below
        ``min_dimension``, so small textures are never shrunk further.
        """
        w, h = width, height
        while max(w, h) > self.max_dimension and min(w, h) // 2 >= self.min_dimension:
            w, h = max(w // 2, 1), max(h // 2, 1)
        return w, h


@dataclass(frozen=True)
class Recipe:
    """Target format plus resize policy; the grouping key of a batch."""

    target_format: TargetFormat
    resize: ResizePolicy

    @property
    def recipe_id(self) -> str:
        rid = (
            f"{self.target_format.value}"
            f"@{self.resize.max_dimension}/{self.resize.min_dimension}"
        )
        return rid if self.resize.keep_mips else rid + "/nomips"


@dataclass
class OptimizationJob:
    """One converter invocation to perform."""

    asset: TextureAsset
    recipe: Recipe
    output_path: str

    @property
    def fingerprint(self) -> str:
        return self.asset.source.fingerprint


@dataclass
class JobResult:
    """Outcome of one job, also the value stored in the completion cache."""

    logical_path: str
    status: JobStatus
    fingerprint: str
    recipe_id: str
    error: str = ""
    attempts: int = 0
    output_path: str = ""
    cached: bool = False

    def __post_init__(self) -> None:
        self.logical_path = normalize_logical_path(self.logical_path)
        if isinstance(self.status, str):
            self.status = JobStatus(self.status)

    @property
    def cache_key(self) -> Tuple[str, str]:
        return (self.fingerprint, self.recipe_id)

    def to_dict(self) -> dict:
        """Return fields as a JSON-friendly dictionary."""
        d = asdict(self)
        d["status"] = self.status.value
        d.pop("cached", None)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "JobResult":
        known = {
            "logical_path", "status", "fingerprint", "recipe_id",
            "error", "attempts", "output_path",
        }
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification delivered to an injected observer."""

    completed: int
    total: int
    current_asset: str
    errors: Tuple[str, ...] = ()


@dataclass
class RunSummary:
    """Explicit end-of-run report."""

    total_jobs: int = 0
    succeeded: int = 0
    skipped: int = 0
    cached: int = 0
    failed: int = 0
    excluded: int = 0
    decode_errors: int = 0
    archive_errors: int = 0
    cancelled: bool = False
    failures: List[Tuple[str, str]] = field(default_factory=list)
    results: List[JobResult] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """True only when nothing failed, nothing was dropped and no cancel happened."""
        return (
            self.failed == 0
            and self.decode_errors == 0
            and self.archive_errors == 0
            and not self.cancelled
        )

    def to_dict(self) -> dict:
        return {
            "complete": self.is_complete,
            "cancelled": self.cancelled,
            "total_jobs": self.total_jobs,
            "succeeded": self.succeeded,
            "cached": self.cached,
            "skipped": self.skipped,
            "failed": self.failed,
            "excluded": self.excluded,
            "decode_errors": self.decode_errors,
            "archive_errors": self.archive_errors,
            "failures": [{"path": p, "error": e} for p, e in self.failures],
            "results": [r.to_dict() for r in self.results],
        }

    def describe(self) -> str:
        status = "complete" if self.is_complete else (
            "cancelled" if self.cancelled else "partial"
        )
        return (
            f"{status}: jobs={self.total_jobs} succeeded={self.succeeded} "
            f"cached={self.cached} skipped={self.skipped} failed={self.failed} "
            f"excluded={self.excluded} decode_errors={self.decode_errors} "
            f"archive_errors={self.archive_errors}"
        )
