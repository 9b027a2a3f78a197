"""Provide package metadata and shared paths for `TexTrim`."""

import logging as _logging
import os as _os
from pathlib import Path as _Path

__version__ = "0.4.0"
_logger = _logging.getLogger("texture_optimizer")


def _bin_dir_candidates():
    env = _os.environ.get("TEXTRIM_BIN_DIR")
    if env:
        yield _Path(env).expanduser()

    pkg_dir = _Path(__file__).resolve().parent
    # Wheel/package-data layout (if bundled).
    yield pkg_dir / "bin"
    # Editable/repo layout: src/TexTrim -> project_root/bin.
    yield pkg_dir.parent.parent / "bin"
    # Working-directory fallback for external deployments.
    yield _Path.cwd() / "bin"


def _resolve_bin_dir() -> _Path:
    for candidate in _bin_dir_candidates():
        if candidate.is_dir():
            return candidate
    # Deterministic fallback even when missing; the converter reports a
    # missing tool when it is actually needed.
    return _Path(__file__).resolve().parent / "bin"


BIN_DIR = _resolve_bin_dir()
DATA_DIR = _Path(__file__).resolve().parent / "data"
EXCLUSIONS_DIR = DATA_DIR / "exclusions"

__all__ = ["__version__", "BIN_DIR", "DATA_DIR", "EXCLUSIONS_DIR"]
