"""Define typed configuration models for every conversion stage.

Use `PipelineConfig` to load, validate, and persist runtime settings.
"""

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List

import yaml

from .core.kernels import KERNELS, WRAP_MODES

logger = logging.getLogger("texture_pipeline.config")


class TextureType(Enum):
    """Enumerate supported texture semantic types."""

    ALBEDO = "albedo"
    NORMAL = "normal"
    ROUGHNESS = "roughness"
    GLOSS = "gloss"
    METALNESS = "metalness"
    AO = "ao"
    HEIGHT = "height"
    EMISSIVE = "emissive"
    OPACITY = "opacity"
    MASK = "mask"
    UNKNOWN = "unknown"


TEXTURE_PATTERNS: Dict[TextureType, List[str]] = {
    TextureType.ALBEDO:    [
        "_albedo", "_alb", "_diff", "_diffuse", "_color", "_col", "_basecolor",
        "_base", "_bc", "_d",
    ],
    TextureType.NORMAL:    ["_norm", "_normal", "_nrm", "_n"],
    TextureType.ROUGHNESS: ["_rough", "_roughness", "_r"],
    TextureType.GLOSS:     ["_gloss", "_glossiness", "_g"],
    TextureType.METALNESS: ["_metal", "_metalness", "_metallic", "_met"],
    TextureType.AO:        ["_ao", "_ambient", "_occlusion", "_ambientocclusion"],
    TextureType.HEIGHT:    ["_height", "_h", "_disp", "_displacement", "_bump"],
    TextureType.EMISSIVE:  ["_emissive", "_emit", "_glow"],
    TextureType.OPACITY:   ["_opacity", "_alpha", "_transparency"],
    TextureType.MASK:      ["_mask", "_msk"],
}

HISTOGRAM_MODES = ("off", "fast", "high_quality")
CHANNEL_MODES = ("combined", "per_channel")
ENCODE_MODES = ("uastc", "etc1s")
AO_MODES = ("none", "biased_darkening", "percentile")
PACKING_MODES = ("auto", "og", "ogm", "ogmh")
MIPMAP_TOOL_FILTERS = ("box", "tent", "bell", "b-spline", "mitchell", "lanczos3",
                       "lanczos4", "lanczos6", "lanczos12", "blackman", "kaiser",
                       "gaussian", "catmullrom", "quadratic_interp",
                       "quadratic_approx", "quadratic_mix")


@dataclass
class MipmapConfig:
    """Store settings for mip chain generation.

    ``enabled`` is the manual-vs-automatic mip policy: when False the
    external tool generates mips and the chain/Toksvig/normalize stages
    are skipped.
    """

    enabled: bool = True
    kernel: str = "auto"  # "auto" = per-texture-type profile
    gamma_correct: bool = True
    gamma: float = 2.2
    wrap_mode: str = "mirror"
    renormalize_normals: bool = True
    energy_preserving: bool = True
    max_workers: int = 1
    blur_radius: float = 0.0  # gaussian sigma applied before each reduction
    min_mip_size: int = 1
    include_last_level: bool = True
    auto_mipmap_filter: str = "lanczos4"


@dataclass
class ToksvigConfig:
    """Store settings for Toksvig roughness correction."""

    enabled: bool = False
    composite_power: float = 1.0
    min_mip_level: int = 1
    smooth_variance: bool = True
    normal_map_path: str = ""  # empty = match by filename


@dataclass
class AOConfig:
    """Store settings for ambient-occlusion mip darkening."""

    mode: str = "none"
    bias: float = 0.5
    percentile: float = 10.0
    start_level: int = 1


@dataclass
class HistogramConfig:
    """Store settings for percentile range analysis and normalization."""

    mode: str = "off"
    channel_mode: str = "combined"
    low_percentile: float = 0.5
    high_percentile: float = 99.5
    knee_width: float = 0.02
    bins: int = 4096
    min_range: float = 1e-3
    tail_threshold: float = 0.005
    per_level: bool = False


@dataclass
class CompressionConfig:
    """Store settings for the external ``ktx create`` encoder."""

    tool_path: str = ""
    tool_timeout_seconds: int = 300
    encode: str = "uastc"
    uastc_quality: int = 2
    uastc_rdo: bool = False
    uastc_rdo_lambda: float = 1.0
    etc1s_compression_level: int = 1
    etc1s_quality: int = 128
    supercompression: bool = True
    zstd_level: int = 15
    threads: int = 0  # 0 = tool default
    intermediate_bits: int = 8
    srgb_texture_types: List[str] = field(default_factory=lambda: [
        "albedo", "emissive",
    ])


@dataclass
class MetadataConfig:
    """Store settings for the KTX2 key/value metadata entry."""

    enabled: bool = True
    key: str = "pc.meta"
    write_normal_layout: bool = True


@dataclass
class PackingConfig:
    """Store settings for ORM channel packing.

    ``ao_mode`` overrides ``ao.mode`` for the packed occlusion channel.
    """

    mode: str = "auto"  # auto = pick from the maps that were found
    ao_mode: str = "biased_darkening"
    toksvig_gloss: bool = True
    validate_dimensions: bool = True


_SUPPORTED_CONFIG_VERSION = 1


@dataclass
class PipelineConfig:
    """Master conversion configuration."""

    config_version: int = 1
    log_level: str = "INFO"
    log_file: str = ""
    scratch_dir: str = "./.ktxforge_scratch"
    keep_scratch: bool = False
    max_image_pixels: int = 67108864  # 8192x8192

    mipmap: MipmapConfig = field(default_factory=MipmapConfig)
    toksvig: ToksvigConfig = field(default_factory=ToksvigConfig)
    ao: AOConfig = field(default_factory=AOConfig)
    histogram: HistogramConfig = field(default_factory=HistogramConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    packing: PackingConfig = field(default_factory=PackingConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load configuration from YAML or return defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(
                f"Failed to parse YAML config '{path}': {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Config file '{path}' must contain a YAML mapping, "
                f"got {type(data).__name__}"
            )
        yaml_version = data.get("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config file '%s' has config_version=%d, but this build only "
                "supports up to version %d. Some settings may be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        config = cls()
        _merge_dict_to_dataclass(config, data)
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc
        return config

    def to_yaml(self, path: str):
        """Write configuration to a YAML file atomically."""
        data = dataclasses.asdict(self)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        ext = os.path.splitext(path)[1]
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def validate(self):
        """Validate configuration values. Raises ValueError on invalid config."""
        errors = []

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(self.log_level).upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_log_levels)}, "
                f"got '{self.log_level}'"
            )
        if self.max_image_pixels < 0:
            errors.append("max_image_pixels must be >= 0 (0 = unlimited)")
        if not str(self.scratch_dir).strip():
            errors.append("scratch_dir must not be empty")

        # Mipmap
        mip = self.mipmap
        if mip.kernel != "auto" and mip.kernel not in KERNELS:
            errors.append(
                f"mipmap.kernel must be 'auto' or one of {sorted(KERNELS)}, "
                f"got '{mip.kernel}'"
            )
        if not (1.0 <= mip.gamma <= 3.0):
            errors.append(f"mipmap.gamma must be in [1.0, 3.0], got {mip.gamma}")
        if mip.wrap_mode not in WRAP_MODES:
            errors.append(
                f"mipmap.wrap_mode must be one of {list(WRAP_MODES)}, got '{mip.wrap_mode}'"
            )
        if not (1 <= mip.max_workers <= 64):
            errors.append("mipmap.max_workers must be in [1, 64]")
        if mip.blur_radius < 0:
            errors.append(f"mipmap.blur_radius must be >= 0, got {mip.blur_radius}")
        if mip.min_mip_size < 1:
            errors.append(f"mipmap.min_mip_size must be >= 1, got {mip.min_mip_size}")
        if mip.auto_mipmap_filter not in MIPMAP_TOOL_FILTERS:
            errors.append(
                f"mipmap.auto_mipmap_filter must be one of {list(MIPMAP_TOOL_FILTERS)}, "
                f"got '{mip.auto_mipmap_filter}'"
            )

        # Toksvig
        tk = self.toksvig
        if not (0.5 <= tk.composite_power <= 8.0):
            errors.append(
                f"toksvig.composite_power must be in [0.5, 8.0], got {tk.composite_power}"
            )
        if tk.min_mip_level < 1:
            errors.append("toksvig.min_mip_level must be >= 1 (level 0 is never corrected)")
        if tk.enabled and not mip.enabled:
            logger.warning(
                "toksvig.enabled has no effect when mipmap.enabled is False "
                "(automatic mip generation)."
            )

        # AO
        ao = self.ao
        if ao.mode not in AO_MODES:
            errors.append(f"ao.mode must be one of {list(AO_MODES)}, got '{ao.mode}'")
        if not (0.0 <= ao.bias <= 1.0):
            errors.append(f"ao.bias must be in [0, 1], got {ao.bias}")
        if not (0.0 <= ao.percentile <= 100.0):
            errors.append(f"ao.percentile must be in [0, 100], got {ao.percentile}")
        if ao.start_level < 1:
            errors.append("ao.start_level must be >= 1 (level 0 is never darkened)")

        # Histogram
        hist = self.histogram
        if hist.mode not in HISTOGRAM_MODES:
            errors.append(
                f"histogram.mode must be one of {list(HISTOGRAM_MODES)}, got '{hist.mode}'"
            )
        if hist.channel_mode not in CHANNEL_MODES:
            errors.append(
                f"histogram.channel_mode must be one of {list(CHANNEL_MODES)}, "
                f"got '{hist.channel_mode}'"
            )
        if not (0.0 <= hist.low_percentile < hist.high_percentile <= 100.0):
            errors.append(
                "histogram percentiles must satisfy 0 <= low_percentile < "
                f"high_percentile <= 100, got ({hist.low_percentile}, "
                f"{hist.high_percentile})"
            )
        if not (0.0 <= hist.knee_width <= 0.5):
            errors.append(f"histogram.knee_width must be in [0, 0.5], got {hist.knee_width}")
        if not (16 <= hist.bins <= 65536):
            errors.append(f"histogram.bins must be in [16, 65536], got {hist.bins}")
        if not (0.0 < hist.min_range <= 1.0):
            errors.append(f"histogram.min_range must be in (0, 1], got {hist.min_range}")
        if not (0.0 <= hist.tail_threshold <= 1.0):
            errors.append("histogram.tail_threshold must be in [0, 1]")

        # Compression
        comp = self.compression
        if comp.encode not in ENCODE_MODES:
            errors.append(
                f"compression.encode must be one of {list(ENCODE_MODES)}, got '{comp.encode}'"
            )
        if comp.tool_timeout_seconds < 1:
            errors.append("compression.tool_timeout_seconds must be >= 1")
        if not (0 <= comp.uastc_quality <= 4):
            errors.append("compression.uastc_quality must be in [0, 4]")
        if not (0.001 <= comp.uastc_rdo_lambda <= 10.0):
            errors.append("compression.uastc_rdo_lambda must be in [0.001, 10.0]")
        if not (0 <= comp.etc1s_compression_level <= 5):
            errors.append("compression.etc1s_compression_level must be in [0, 5]")
        if not (1 <= comp.etc1s_quality <= 255):
            errors.append("compression.etc1s_quality must be in [1, 255]")
        if not (1 <= comp.zstd_level <= 22):
            errors.append("compression.zstd_level must be in [1, 22]")
        if comp.threads < 0:
            errors.append("compression.threads must be >= 0 (0 = tool default)")
        if comp.intermediate_bits not in (8, 16):
            errors.append("compression.intermediate_bits must be 8 or 16")
        valid_types = {t.value for t in TextureType}
        unknown_srgb = sorted(set(comp.srgb_texture_types) - valid_types)
        if unknown_srgb:
            errors.append(
                f"compression.srgb_texture_types has unknown types: {unknown_srgb}"
            )
        if comp.supercompression and comp.encode == "etc1s":
            logger.warning(
                "compression.supercompression is ignored for etc1s: BasisLZ is "
                "already supercompressed."
            )

        # Packing
        pack = self.packing
        if pack.mode not in PACKING_MODES:
            errors.append(
                f"packing.mode must be one of {list(PACKING_MODES)}, got '{pack.mode}'"
            )
        if pack.ao_mode not in AO_MODES:
            errors.append(
                f"packing.ao_mode must be one of {list(AO_MODES)}, got '{pack.ao_mode}'"
            )

        # Metadata
        key = self.metadata.key
        if not key or "\x00" in key:
            errors.append("metadata.key must be a non-empty string without NUL bytes")
        elif key.lower().startswith("ktx"):
            errors.append(
                f"metadata.key '{key}' uses the reserved 'KTX'/'ktx' prefix"
            )

        if errors:
            raise ValueError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    for key, value in data.items():
        full_key = f"{_path}{key}"
        if not hasattr(obj, key):
            logger.warning("Unknown config key ignored: '%s'", full_key)
            continue
        field_val = getattr(obj, key)
        if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
            _merge_dict_to_dataclass(field_val, value, f"{full_key}.")
            continue
        if value is None and field_val is not None:
            logger.warning(
                "Config key '%s' is null but field default is %s. Using default value.",
                full_key, type(field_val).__name__,
            )
            continue
        expected_type = type(field_val)
        # Allow int->float and exact float->int promotion; bool is never numeric.
        if (field_val is not None
                and not isinstance(value, expected_type)
                and not (expected_type is float and isinstance(value, int)
                         and not isinstance(value, bool))
                and not (expected_type is int and isinstance(value, float)
                         and value == int(value))):
            logger.warning(
                "Config type mismatch for '%s': expected %s, got %s (%r). "
                "Using default value.",
                full_key, expected_type.__name__, type(value).__name__, value,
            )
            continue
        if expected_type is int and isinstance(value, float):
            value = int(value)
        elif expected_type is float and isinstance(value, int):
            value = float(value)
        setattr(obj, key, value)
