"""Define typed configuration models for the texture optimizer.

Use `PipelineConfig` to load, validate, and persist runtime settings.
"""

import os
import logging
import re
import yaml
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Tuple
from enum import Enum

from .errors import ConfigError

logger = logging.getLogger("texture_optimizer.config")

_SUPPORTED_CONFIG_VERSION = 1


class TextureType(Enum):
    """Enumerate semantic texture types assigned from the logical path."""

    DIFFUSE = "diffuse"
    NORMAL = "normal"
    SPECULAR = "specular"
    GLOSS = "gloss"
    HEIGHT = "height"
    EMISSIVE = "emissive"
    PBR_PACKED = "pbr_packed"
    OTHER = "other"


class TargetFormat(Enum):
    """Converter output formats (texconv/DXGI names)."""

    BC1 = "BC1_UNORM"
    BC3 = "BC3_UNORM"
    BC4 = "BC4_UNORM"
    BC5 = "BC5_UNORM"
    BC7 = "BC7_UNORM"
    RGBA = "R8G8B8A8_UNORM"


# Ordered stem rules, first match wins. Longer suffixes are listed before
# the single-letter ones they would otherwise shadow.
TEXTURE_SUFFIX_RULES: List[Tuple[str, TextureType]] = [
    (r"_rmaos$", TextureType.PBR_PACKED),
    (r"_(orm|rma|arm)$", TextureType.PBR_PACKED),
    (r"_(msn|nrm|normal)$", TextureType.NORMAL),
    (r"_(gloss|glossiness)$", TextureType.GLOSS),
    (r"_(glow|emit|emissive)$", TextureType.EMISSIVE),
    (r"_(spec|specular)$", TextureType.SPECULAR),
    (r"_(height|parallax|disp)$", TextureType.HEIGHT),
    (r"_(em|envmask|cube)$", TextureType.OTHER),
    (r"_n$", TextureType.NORMAL),
    (r"_s$", TextureType.SPECULAR),
    (r"_g$", TextureType.EMISSIVE),
    (r"_[ph]$", TextureType.HEIGHT),
    (r"_[me]$", TextureType.OTHER),
]

# Logical path prefixes that never describe a material layer.
OTHER_PATH_PREFIXES: List[str] = [
    "textures/interface/",
    "textures/lod/",
    "textures/terrain/",
]

# preset -> texture type -> max dimension (pixels, longest side)
QUALITY_PRESETS: Dict[str, Dict[str, int]] = {
    "high": {
        "diffuse": 4096, "normal": 4096, "specular": 2048, "gloss": 2048,
        "height": 2048, "emissive": 2048, "pbr_packed": 4096, "other": 2048,
    },
    "quality": {
        "diffuse": 2048, "normal": 2048, "specular": 1024, "gloss": 1024,
        "height": 1024, "emissive": 1024, "pbr_packed": 2048, "other": 1024,
    },
    "optimum": {
        "diffuse": 2048, "normal": 1024, "specular": 1024, "gloss": 1024,
        "height": 512, "emissive": 1024, "pbr_packed": 2048, "other": 1024,
    },
    "performance": {
        "diffuse": 1024, "normal": 1024, "specular": 512, "gloss": 512,
        "height": 512, "emissive": 512, "pbr_packed": 1024, "other": 512,
    },
    "potato": {
        "diffuse": 512, "normal": 512, "specular": 256, "gloss": 256,
        "height": 256, "emissive": 256, "pbr_packed": 512, "other": 256,
    },
}

# Mips below this size are never dropped, regardless of the preset cap.
PRESET_MIN_DIMENSION: Dict[str, int] = {
    "high": 256, "quality": 256, "optimum": 128, "performance": 128, "potato": 64,
}

# Presets that trade quality for size in the format table.
LOW_FORMAT_PRESETS = frozenset({"performance", "potato"})

# preset -> texture types written as a single level, without a mip chain.
# Interface and composite art is drawn at a fixed scale.
SINGLE_MIP_TYPES: Dict[str, FrozenSet[TextureType]] = {
    "high": frozenset(),
    "quality": frozenset(),
    "optimum": frozenset(),
    "performance": frozenset({TextureType.OTHER}),
    "potato": frozenset({TextureType.OTHER}),
}

# type -> (format on regular presets, format on low presets)
FORMAT_BY_TYPE: Dict[TextureType, Tuple[TargetFormat, TargetFormat]] = {
    TextureType.DIFFUSE: (TargetFormat.BC7, TargetFormat.BC3),
    TextureType.NORMAL: (TargetFormat.BC7, TargetFormat.BC1),
    TextureType.SPECULAR: (TargetFormat.BC7, TargetFormat.BC1),
    TextureType.GLOSS: (TargetFormat.BC4, TargetFormat.BC4),
    TextureType.HEIGHT: (TargetFormat.BC4, TargetFormat.BC4),
    TextureType.EMISSIVE: (TargetFormat.BC7, TargetFormat.BC1),
    TextureType.PBR_PACKED: (TargetFormat.BC7, TargetFormat.BC7),
    TextureType.OTHER: (TargetFormat.BC7, TargetFormat.BC3),
}

SUPPORTED_GAMES = ("morrowind", "oblivion", "fallout3", "falloutnv",
                   "skyrim", "skyrimse", "fallout4")


@dataclass
class VFSConfig:
    """Store settings for virtual filesystem construction."""

    include_base_layer: bool = True
    archive_extensions: List[str] = field(default_factory=lambda: [".bsa", ".ba2"])
    auto_register_archives: bool = True
    ignored_files: List[str] = field(default_factory=lambda: [
        "meta.ini", "desktop.ini", "thumbs.db",
    ])


@dataclass
class ClassifyConfig:
    """Store settings for the texture classification pass."""

    texture_extensions: List[str] = field(default_factory=lambda: [".dds"])
    max_dimension: int = 16384
    skip_prefixes: List[str] = field(default_factory=list)


@dataclass
class ExclusionConfig:
    """Store settings for per-game exclusion rules."""

    game: str = "skyrimse"
    rules_dir: str = ""
    extra_patterns: List[str] = field(default_factory=list)


@dataclass
class OptimizeConfig:
    """Store settings for batch scheduling."""

    preset: str = "optimum"
    max_workers: int = 0  # 0 = os.cpu_count()
    retries: int = 1
    skip_optimal: bool = True
    staging_dir: str = ""


@dataclass
class ConverterConfig:
    """Store settings for the external format converter."""

    tool: str = "texconv"
    tool_path: str = ""
    timeout_seconds: int = 120
    extra_args: List[str] = field(default_factory=list)


@dataclass
class CacheConfig:
    """Store settings for the completion cache."""

    enabled: bool = True
    cache_path: str = "./.textrim/completion_cache.json"
    save_interval: int = 25
    fingerprint_mode: str = "stat"  # "stat" | "content"


@dataclass
class PipelineConfig:
    """Master configuration."""

    data_root: str = ""
    profile_path: str = ""
    mods_dir: str = ""
    output_dir: str = "./output"
    log_level: str = "INFO"
    dry_run: bool = False

    vfs: VFSConfig = field(default_factory=VFSConfig)
    classify: ClassifyConfig = field(default_factory=ClassifyConfig)
    exclusions: ExclusionConfig = field(default_factory=ExclusionConfig)
    optimize: OptimizeConfig = field(default_factory=OptimizeConfig)
    converter: ConverterConfig = field(default_factory=ConverterConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load configuration from YAML, falling back to defaults."""
        config = cls()
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            return config

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(
                f"Failed to parse YAML config '{path}': {exc}"
            ) from exc
        except OSError as exc:
            raise ConfigError(f"Failed to read config '{path}': {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(
                f"Config root in '{path}' must be a mapping, got {type(data).__name__}"
            )

        yaml_version = data.pop("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config '%s' declares config_version=%s; this build understands "
                "version %d. Newer keys will be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        _merge_dict_to_dataclass(config, data)
        return config

    def to_yaml(self, path: str):
        """Write configuration to YAML."""
        import dataclasses
        data = {"config_version": _SUPPORTED_CONFIG_VERSION}
        data.update(dataclasses.asdict(self))
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        logger.debug("Config written to %s", path)

    def resolve_workers(self) -> int:
        """Return the effective worker count."""
        if self.optimize.max_workers > 0:
            return self.optimize.max_workers
        return max(os.cpu_count() or 1, 1)

    def validate(self):
        """Check every field and raise ConfigError listing all problems."""
        errors = []

        if not self.data_root:
            errors.append("data_root must be set")
        if not self.output_dir:
            errors.append("output_dir must be set")
        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            errors.append(f"log_level '{self.log_level}' is not a logging level")

        for ext in self.vfs.archive_extensions:
            if not ext.startswith("."):
                errors.append(f"vfs.archive_extensions entry '{ext}' must start with '.'")
        for ext in self.classify.texture_extensions:
            if not ext.startswith("."):
                errors.append(f"classify.texture_extensions entry '{ext}' must start with '.'")
        if self.classify.max_dimension < 1:
            errors.append("classify.max_dimension must be >= 1")

        if self.exclusions.game.lower() not in SUPPORTED_GAMES:
            errors.append(
                f"exclusions.game must be one of {list(SUPPORTED_GAMES)}, "
                f"got '{self.exclusions.game}'"
            )
        for pattern in self.exclusions.extra_patterns:
            if any(seg.count("*") > 1 for seg in pattern.replace("\\", "/").split("/")):
                errors.append(
                    f"exclusions.extra_patterns '{pattern}' uses more than one "
                    "wildcard in a segment"
                )

        if self.optimize.preset not in QUALITY_PRESETS:
            errors.append(
                f"optimize.preset must be one of {sorted(QUALITY_PRESETS)}, "
                f"got '{self.optimize.preset}'"
            )
        if self.optimize.max_workers < 0:
            errors.append("optimize.max_workers must be >= 0 (0 = cpu count)")
        if self.optimize.max_workers > 128:
            errors.append("optimize.max_workers must be <= 128")
        if self.optimize.retries < 0:
            errors.append("optimize.retries must be >= 0")

        if not self.converter.tool:
            errors.append("converter.tool must be set")
        if self.converter.timeout_seconds < 1:
            errors.append("converter.timeout_seconds must be >= 1")
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", self.converter.tool or "x"):
            errors.append(f"converter.tool '{self.converter.tool}' is not a plain tool name")

        if self.cache.save_interval < 1:
            errors.append("cache.save_interval must be >= 1")
        if self.cache.fingerprint_mode not in {"stat", "content"}:
            errors.append("cache.fingerprint_mode must be 'stat' or 'content'")
        if self.cache.enabled and not self.cache.cache_path:
            errors.append("cache.cache_path must be set when the cache is enabled")

        if errors:
            raise ConfigError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    import dataclasses
    for key, value in data.items():
        if hasattr(obj, key):
            field_val = getattr(obj, key)
            if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
                _merge_dict_to_dataclass(field_val, value, f"{_path}{key}.")
            else:
                full_key = f"{_path}{key}"
                if value is None and field_val is not None:
                    logger.warning(
                        "Config key '%s' is null but field default is %s. "
                        "Using default value.",
                        full_key, type(field_val).__name__,
                    )
                    continue
                expected_type = type(field_val)
                # Allow int->float and integral float->int promotion.
                if (field_val is not None
                        and not isinstance(value, expected_type)
                        and not (expected_type is float
                                 and isinstance(value, int))
                        and not (expected_type is int
                                 and isinstance(value, float)
                                 and value == int(value))):
                    logger.warning(
                        "Config type mismatch for '%s': expected %s, got %s (%r). "
                        "Using default value.",
                        full_key, expected_type.__name__, type(value).__name__, value,
                    )
                    continue
                if (expected_type is int and isinstance(value, float)
                        and value == int(value)):
                    value = int(value)
                if isinstance(field_val, dict) and isinstance(value, dict):
                    field_val.update(value)
                else:
                    setattr(obj, key, value)
        else:
            full_key = f"{_path}{key}"
            logger.warning("Unknown config key ignored: '%s'", full_key)
