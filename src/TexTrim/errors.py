"""Error taxonomy shared by the resolver, classifier and scheduler."""

from enum import Enum


class TexTrimError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(TexTrimError, ValueError):
    """Run-scoped configuration problem. Always fatal."""


class ArchiveErrorKind(Enum):
    """Reasons an archive container is rejected as a whole."""

    BAD_MAGIC = "bad_magic"
    UNSUPPORTED_VERSION = "unsupported_version"
    TRUNCATED_RECORD = "truncated_record"
    UNREADABLE = "unreadable"


class ArchiveError(TexTrimError):
    """Archive failed validation; none of its entries may be used."""

    def __init__(self, kind: ArchiveErrorKind, path: str, detail: str = ""):
        self.kind = kind
        self.path = str(path)
        self.detail = detail
        msg = f"{self.path}: {kind.value}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class DecodeError(TexTrimError):
    """One entry or asset could not be decoded. Skip it and continue."""


class ConversionError(TexTrimError):
    """External converter failed for one job (nonzero exit or timeout)."""

    def __init__(self, message: str, returncode=None, timed_out: bool = False):
        super().__init__(message)
        self.returncode = returncode
        self.timed_out = timed_out


class CacheError(TexTrimError):
    """Completion cache could not be read or written. Treated as a miss."""
