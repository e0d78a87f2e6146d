"""Define typed configuration models for texture conversion.

Use `PipelineConfig` to load, validate, and persist runtime settings.  The
per-texture `MipGenerationProfile` defaults live in a dispatch table keyed
by `TextureType` so generators never infer intent from filenames.
"""

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import yaml

from .errors import ConfigurationError

logger = logging.getLogger("texture_conversion.config")

_SUPPORTED_CONFIG_VERSION = 1


class TextureType(Enum):
    """Enumerate supported texture semantic types."""

    ALBEDO = "albedo"
    NORMAL = "normal"
    GLOSS = "gloss"
    ROUGHNESS = "roughness"
    METALLIC = "metallic"
    AMBIENT_OCCLUSION = "ao"
    HEIGHT = "height"
    EMISSIVE = "emissive"
    GENERIC = "generic"


class FilterType(Enum):
    """Enumerate mip downsampling filters."""

    BOX = "box"
    BILINEAR = "bilinear"
    BICUBIC = "bicubic"
    LANCZOS3 = "lanczos3"
    MITCHELL = "mitchell"
    KAISER = "kaiser"
    GAUSSIAN = "gaussian"
    MIN = "min"
    MAX = "max"


class CompressionFormat(Enum):
    ETC1S = "etc1s"
    UASTC = "uastc"


class SupercompressionScheme(Enum):
    NONE = "none"
    ZSTD = "zstd"
    ZLIB = "zlib"


class ColorSpace(Enum):
    AUTO = "auto"
    LINEAR = "linear"
    SRGB = "srgb"


class AlphaPolicy(Enum):
    AUTO = "auto"
    KEEP = "keep"
    STRIP = "strip"


class ChannelPackingMode(Enum):
    """Enumerate packed-channel layouts (Occlusion, Gloss, Metallic, Height)."""

    NONE = "none"
    OG = "og"
    OGM = "ogm"
    OGMH = "ogmh"


class ChannelType(Enum):
    AO = "ao"
    GLOSS = "gloss"
    METALLIC = "metallic"
    HEIGHT = "height"


class ToksvigCalculationMode(Enum):
    CLASSIC = "classic"
    SIMPLIFIED = "simplified"


class AOProcessingMode(Enum):
    NONE = "none"
    BIASED_DARKENING = "biased_darkening"
    PERCENTILE = "percentile"


# Filename suffixes used by name-based classification (longest match wins).
TEXTURE_PATTERNS: Dict[TextureType, List[str]] = {
    TextureType.ALBEDO: [
        "_albedo", "_alb", "_diffuse", "_diff", "_basecolor", "_base_color",
        "_color", "_col", "_d", "_c",
    ],
    TextureType.NORMAL: ["_normal", "_norm", "_nrm", "_n"],
    TextureType.GLOSS: ["_gloss", "_glossiness", "_smoothness", "_g"],
    TextureType.ROUGHNESS: ["_roughness", "_rough", "_r"],
    TextureType.METALLIC: ["_metallic", "_metalness", "_metal", "_met", "_m"],
    TextureType.AMBIENT_OCCLUSION: ["_ao", "_occlusion", "_ambientocclusion"],
    TextureType.HEIGHT: ["_height", "_h", "_disp", "_displacement", "_bump"],
    TextureType.EMISSIVE: ["_emissive", "_emission", "_emit", "_e"],
}

_CHANNEL_TEXTURE_TYPES = {
    ChannelType.AO: TextureType.AMBIENT_OCCLUSION,
    ChannelType.GLOSS: TextureType.GLOSS,
    ChannelType.METALLIC: TextureType.METALLIC,
    ChannelType.HEIGHT: TextureType.HEIGHT,
}


def channel_texture_type(channel: ChannelType) -> TextureType:
    return _CHANNEL_TEXTURE_TYPES[channel]


@dataclass
class MipGenerationProfile:
    """Per-texture mip generation behavior with explicit flags."""

    texture_type: TextureType = TextureType.GENERIC
    filter: FilterType = FilterType.KAISER
    apply_gamma_correction: bool = False
    gamma: float = 2.2
    blur_radius: float = 0.0
    min_mip_size: int = 1
    normalize_normals: bool = False
    energy_preserving: bool = False
    is_gloss: bool = False

    @classmethod
    def for_texture_type(cls, tex_type: TextureType, **overrides) -> "MipGenerationProfile":
        """Build the default profile for `tex_type`, with optional field overrides."""
        try:
            defaults = _PROFILE_DEFAULTS[tex_type]
        except KeyError:
            raise ConfigurationError(f"No mip profile for texture type {tex_type!r}") from None
        profile = cls(texture_type=tex_type, **defaults)
        return dataclasses.replace(profile, **overrides) if overrides else profile

    def copy(self, **changes) -> "MipGenerationProfile":
        return dataclasses.replace(self, **changes)

    def validate(self):
        errors = []
        if self.min_mip_size < 1:
            errors.append(f"min_mip_size must be >= 1, got {self.min_mip_size}")
        if self.gamma <= 0:
            errors.append(f"gamma must be > 0, got {self.gamma}")
        if self.blur_radius < 0:
            errors.append(f"blur_radius must be >= 0, got {self.blur_radius}")
        if errors:
            raise ConfigurationError(
                f"Invalid mip profile for {self.texture_type.value}: " + "; ".join(errors)
            )


_PROFILE_DEFAULTS: Dict[TextureType, dict] = {
    TextureType.ALBEDO: {"filter": FilterType.KAISER, "apply_gamma_correction": True},
    TextureType.EMISSIVE: {"filter": FilterType.KAISER, "apply_gamma_correction": True},
    TextureType.NORMAL: {"filter": FilterType.KAISER, "normalize_normals": True},
    TextureType.GLOSS: {"filter": FilterType.KAISER, "is_gloss": True},
    TextureType.ROUGHNESS: {"filter": FilterType.KAISER},
    TextureType.METALLIC: {"filter": FilterType.BOX},
    TextureType.AMBIENT_OCCLUSION: {"filter": FilterType.KAISER},
    TextureType.HEIGHT: {"filter": FilterType.KAISER},
    TextureType.GENERIC: {"filter": FilterType.KAISER},
}


@dataclass
class ToksvigSettings:
    """Specular anti-aliasing (Toksvig) settings for gloss/roughness maps."""

    enabled: bool = False
    composite_power: float = 1.0
    min_mip_level: int = 0
    smooth_variance: bool = True
    normal_map_path: str = ""  # empty = resolve by filename convention
    calculation_mode: str = "classic"  # classic | simplified
    variance_threshold: float = 0.002

    @property
    def mode(self) -> ToksvigCalculationMode:
        return ToksvigCalculationMode(self.calculation_mode)

    def validate(self) -> List[str]:
        errors = []
        if not (0.5 <= self.composite_power <= 8.0):
            errors.append(
                f"toksvig.composite_power must be in [0.5, 8.0], got {self.composite_power}"
            )
        if self.min_mip_level < 0:
            errors.append("toksvig.min_mip_level must be >= 0")
        if not (0.0 <= self.variance_threshold <= 1.0):
            errors.append("toksvig.variance_threshold must be in [0, 1]")
        valid_modes = {m.value for m in ToksvigCalculationMode}
        if self.calculation_mode not in valid_modes:
            errors.append(
                f"toksvig.calculation_mode must be one of {sorted(valid_modes)}, "
                f"got '{self.calculation_mode}'"
            )
        return errors


@dataclass
class ChannelSourceSettings:
    """One packing slot: which map feeds it and how its mips are processed."""

    channel_type: str = ""  # ao | gloss | metallic | height; empty = unconfigured
    source_path: str = ""
    filter: str = ""  # empty = texture type default
    apply_toksvig: bool = False
    ao_processing: str = "none"  # none | biased_darkening | percentile
    ao_bias: float = 0.5
    ao_percentile: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.channel_type and self.source_path)

    @property
    def channel(self) -> ChannelType:
        return ChannelType(self.channel_type)

    @classmethod
    def create_default(cls, channel: ChannelType, source_path: str = "") -> "ChannelSourceSettings":
        if channel == ChannelType.AO:
            return cls(channel_type=channel.value, source_path=source_path,
                       ao_processing=AOProcessingMode.BIASED_DARKENING.value)
        if channel == ChannelType.GLOSS:
            return cls(channel_type=channel.value, source_path=source_path,
                       apply_toksvig=True)
        return cls(channel_type=channel.value, source_path=source_path)

    def validate(self, slot: str) -> List[str]:
        errors = []
        prefix = f"packing.{slot}"
        valid_channels = {c.value for c in ChannelType}
        if self.channel_type not in valid_channels:
            errors.append(
                f"{prefix}.channel_type must be one of {sorted(valid_channels)}, "
                f"got '{self.channel_type}'"
            )
            return errors
        if not self.source_path:
            errors.append(f"{prefix}: source_path is required for {self.channel_type}")
        elif not os.path.isfile(self.source_path):
            errors.append(f"{prefix}: texture file not found: {self.source_path}")
        if self.filter and self.filter not in {f.value for f in FilterType}:
            errors.append(f"{prefix}.filter '{self.filter}' is not a known filter")
        if self.apply_toksvig and self.channel != ChannelType.GLOSS:
            errors.append(f"{prefix}: Toksvig correction can only be applied to gloss")
        valid_ao = {m.value for m in AOProcessingMode}
        if self.ao_processing not in valid_ao:
            errors.append(f"{prefix}.ao_processing must be one of {sorted(valid_ao)}")
        elif (self.ao_processing != AOProcessingMode.NONE.value
              and self.channel not in (ChannelType.AO, ChannelType.METALLIC)):
            errors.append(f"{prefix}: AO processing only applies to ao or metallic")
        if not (0.0 <= self.ao_bias <= 1.0):
            errors.append(f"{prefix}.ao_bias must be in [0, 1], got {self.ao_bias}")
        if not (0.0 <= self.ao_percentile <= 100.0):
            errors.append(f"{prefix}.ao_percentile must be in [0, 100], got {self.ao_percentile}")
        return errors


_SLOTS = ("red", "green", "blue", "alpha")

# mode -> {slot: required channel}
_MODE_LAYOUTS: Dict[ChannelPackingMode, Dict[str, ChannelType]] = {
    ChannelPackingMode.OG: {"red": ChannelType.AO, "alpha": ChannelType.GLOSS},
    ChannelPackingMode.OGM: {
        "red": ChannelType.AO, "green": ChannelType.GLOSS, "blue": ChannelType.METALLIC,
    },
    ChannelPackingMode.OGMH: {
        "red": ChannelType.AO, "green": ChannelType.GLOSS,
        "blue": ChannelType.METALLIC, "alpha": ChannelType.HEIGHT,
    },
}

_MODE_DESCRIPTIONS = {
    ChannelPackingMode.NONE: "None - independent single-channel textures",
    ChannelPackingMode.OG: "OG (RGB=AO, A=Gloss) - non-metallic materials",
    ChannelPackingMode.OGM: "OGM (R=AO, G=Gloss, B=Metallic)",
    ChannelPackingMode.OGMH: "OGMH (R=AO, G=Gloss, B=Metallic, A=Height)",
}


@dataclass
class ChannelPackingSettings:
    """Packed-texture layout: up to four single-channel sources in R/G/B/A."""

    mode: str = "none"
    red: ChannelSourceSettings = field(default_factory=ChannelSourceSettings)
    green: ChannelSourceSettings = field(default_factory=ChannelSourceSettings)
    blue: ChannelSourceSettings = field(default_factory=ChannelSourceSettings)
    alpha: ChannelSourceSettings = field(default_factory=ChannelSourceSettings)
    default_fill_value: int = 255
    toksvig: ToksvigSettings = field(
        default_factory=lambda: ToksvigSettings(enabled=True)
    )

    @property
    def packing_mode(self) -> ChannelPackingMode:
        return ChannelPackingMode(self.mode)

    @classmethod
    def create_default(cls, mode: ChannelPackingMode,
                       paths: Optional[Dict[ChannelType, str]] = None) -> "ChannelPackingSettings":
        """Build the canonical slot layout for `mode`, filling in source paths."""
        paths = paths or {}
        settings = cls(mode=mode.value)
        for slot, channel in _MODE_LAYOUTS.get(mode, {}).items():
            setattr(settings, slot, ChannelSourceSettings.create_default(
                channel, paths.get(channel, "")
            ))
        return settings

    def describe(self) -> str:
        return _MODE_DESCRIPTIONS.get(self.packing_mode, "Unknown mode")

    def slot(self, name: str) -> ChannelSourceSettings:
        return getattr(self, name)

    def active_channels(self) -> List[Tuple[str, ChannelSourceSettings]]:
        return [(name, self.slot(name)) for name in _SLOTS if self.slot(name).is_configured]

    def validate(self) -> List[str]:
        errors = []
        valid_modes = {m.value for m in ChannelPackingMode}
        if self.mode not in valid_modes:
            return [f"packing.mode must be one of {sorted(valid_modes)}, got '{self.mode}'"]
        if not (0 <= self.default_fill_value <= 255):
            errors.append("packing.default_fill_value must be in [0, 255]")
        if self.packing_mode == ChannelPackingMode.NONE:
            return errors

        active = self.active_channels()
        if len(active) < 2:
            errors.append(
                f"Packing mode {self.mode} needs at least 2 configured channels, "
                f"got {len(active)}"
            )
        for slot, source in active:
            errors.extend(source.validate(slot))
        # Unconfigured slots are filled with default_fill_value when packing.
        layout = _MODE_LAYOUTS[self.packing_mode]
        for slot, source in active:
            required = layout.get(slot)
            if required is None:
                errors.append(f"{self.mode.upper()} mode does not use the {slot} channel")
            elif source.channel_type != required.value:
                errors.append(
                    f"{self.mode.upper()} mode requires {slot} channel to be {required.value}"
                )
        errors.extend(self.toksvig.validate())
        return errors


def determine_packing_mode(ao: Optional[str] = None, gloss: Optional[str] = None,
                           metallic: Optional[str] = None,
                           height: Optional[str] = None) -> ChannelPackingMode:
    """Pick a packing layout from which channel source files exist."""
    present = {
        name: bool(path) and os.path.isfile(path)
        for name, path in (("ao", ao), ("gloss", gloss),
                           ("metallic", metallic), ("height", height))
    }
    if sum(present.values()) < 2:
        return ChannelPackingMode.NONE
    if present["height"] and present["metallic"]:
        return ChannelPackingMode.OGMH
    if present["metallic"]:
        return ChannelPackingMode.OGM
    if present["ao"] and present["gloss"]:
        return ChannelPackingMode.OG
    return ChannelPackingMode.NONE


@dataclass
class CompressionSettings:
    """Settings forwarded to the external KTX2 encoder."""

    format: str = "etc1s"  # etc1s | uastc
    quality_level: int = 128  # ETC1S qlevel 1..255
    compression_level: int = 1  # ETC1S clevel 0..6
    uastc_quality: int = 2  # 0 (fastest) .. 4 (slowest)
    use_rdo: bool = True
    rdo_lambda: float = 1.0
    supercompression: str = "none"  # none | zstd | zlib (UASTC only)
    supercompression_level: int = 15
    color_space: str = "auto"  # auto | linear | srgb
    alpha_policy: str = "auto"  # auto | keep | strip
    threads: int = 0  # 0 = encoder default
    use_custom_mipmaps: bool = True
    keep_debug_mipmaps: bool = False

    @property
    def compression_format(self) -> CompressionFormat:
        return CompressionFormat(self.format)

    @property
    def supercompression_scheme(self) -> SupercompressionScheme:
        return SupercompressionScheme(self.supercompression)

    @classmethod
    def etc1s_default(cls) -> "CompressionSettings":
        return cls(format="etc1s", quality_level=128, compression_level=1)

    @classmethod
    def uastc_default(cls) -> "CompressionSettings":
        return cls(format="uastc", uastc_quality=2, use_rdo=True, rdo_lambda=1.0,
                   supercompression="zstd", supercompression_level=15)

    @classmethod
    def high_quality(cls) -> "CompressionSettings":
        return cls(format="uastc", uastc_quality=4, use_rdo=True, rdo_lambda=0.5,
                   supercompression="zstd", supercompression_level=18)

    @classmethod
    def min_size(cls) -> "CompressionSettings":
        return cls(format="etc1s", quality_level=64, compression_level=2)

    def resolve_srgb(self, profile: MipGenerationProfile) -> bool:
        """Return True when the output should carry the sRGB transfer function."""
        space = ColorSpace(self.color_space)
        if space == ColorSpace.AUTO:
            return profile.apply_gamma_correction
        return space == ColorSpace.SRGB

    def validate(self) -> List[str]:
        errors = []
        valid_formats = {f.value for f in CompressionFormat}
        if self.format not in valid_formats:
            errors.append(
                f"compression.format must be one of {sorted(valid_formats)}, got '{self.format}'"
            )
        if not (1 <= self.quality_level <= 255):
            errors.append("compression.quality_level must be in [1, 255]")
        if not (0 <= self.compression_level <= 6):
            errors.append("compression.compression_level must be in [0, 6]")
        if not (0 <= self.uastc_quality <= 4):
            errors.append("compression.uastc_quality must be in [0, 4]")
        if self.rdo_lambda <= 0:
            errors.append("compression.rdo_lambda must be > 0")
        valid_schemes = {s.value for s in SupercompressionScheme}
        if self.supercompression not in valid_schemes:
            errors.append(
                f"compression.supercompression must be one of {sorted(valid_schemes)}, "
                f"got '{self.supercompression}'"
            )
        else:
            scheme = self.supercompression_scheme
            if scheme != SupercompressionScheme.NONE and self.format == "etc1s":
                errors.append(
                    "compression.supercompression applies to UASTC only "
                    "(ETC1S output is already BasisLZ supercompressed)"
                )
            if scheme == SupercompressionScheme.ZSTD and not (1 <= self.supercompression_level <= 22):
                errors.append("compression.supercompression_level must be in [1, 22] for zstd")
            if scheme == SupercompressionScheme.ZLIB and not (1 <= self.supercompression_level <= 9):
                errors.append("compression.supercompression_level must be in [1, 9] for zlib")
        if self.color_space not in {c.value for c in ColorSpace}:
            errors.append(f"compression.color_space '{self.color_space}' is invalid")
        if self.alpha_policy not in {a.value for a in AlphaPolicy}:
            errors.append(f"compression.alpha_policy '{self.alpha_policy}' is invalid")
        if self.threads < 0:
            errors.append("compression.threads must be >= 0")
        return errors


@dataclass
class EncoderConfig:
    """External KTX2 encoder lookup and process limits."""

    tool: str = "auto"  # auto | toktx | ktx
    tool_path: str = ""
    timeout_seconds: int = 300
    max_attempts: int = 3


@dataclass
class PipelineConfig:
    """Master texture conversion configuration."""

    config_version: int = 1
    input_dir: str = "./textures"
    output_dir: str = "./textures_ktx2"
    scratch_dir: str = ""  # empty = system temp
    log_level: str = "INFO"
    max_workers: int = 4
    max_image_pixels: int = 67108864  # 8192x8192
    output_extension: str = ".ktx2"
    save_separate_mipmaps: bool = False
    mipmap_bit_depth: int = 8  # PNG depth for mipmaps-only output (8 or 16)
    supported_formats: List[str] = field(default_factory=lambda: [
        ".png", ".jpg", ".jpeg", ".tga", ".bmp", ".tif", ".tiff",
    ])

    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    compression: CompressionSettings = field(default_factory=CompressionSettings)
    toksvig: ToksvigSettings = field(default_factory=ToksvigSettings)
    packing: ChannelPackingSettings = field(default_factory=ChannelPackingSettings)
    # texture type value -> MipGenerationProfile field overrides
    profiles: Dict[str, Dict] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load configuration from YAML, or return validated defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Failed to parse YAML config '{path}': {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file '{path}' must contain a YAML mapping, got {type(data).__name__}"
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
        except ConfigurationError as exc:
            raise ConfigurationError(f"{path}: {exc}") from exc
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

    def profile_for(self, tex_type: TextureType) -> MipGenerationProfile:
        """Return the dispatch-table profile for `tex_type` with YAML overrides."""
        overrides = dict(self.profiles.get(tex_type.value, {}))
        if "filter" in overrides:
            overrides["filter"] = FilterType(overrides["filter"])
        return MipGenerationProfile.for_texture_type(tex_type, **overrides)

    def validate(self):
        """Collect every configuration problem and raise them together."""
        errors = []

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_log_levels)}, got '{self.log_level}'"
            )
        if self.max_workers < 1:
            errors.append("max_workers must be >= 1")
        if self.max_workers > 128:
            errors.append("max_workers must be <= 128")
        if self.max_image_pixels < 0:
            errors.append("max_image_pixels must be >= 0 (0 = unlimited)")
        if not self.supported_formats:
            errors.append("supported_formats must not be empty -- no files would be processed")
        if not self.output_extension.startswith("."):
            errors.append("output_extension must start with '.'")
        if self.mipmap_bit_depth not in (8, 16):
            errors.append(f"mipmap_bit_depth must be 8 or 16, got {self.mipmap_bit_depth}")

        valid_tools = {"auto", "toktx", "ktx"}
        if self.encoder.tool not in valid_tools:
            errors.append(
                f"encoder.tool must be one of {sorted(valid_tools)}, got '{self.encoder.tool}'"
            )
        if self.encoder.timeout_seconds < 1:
            errors.append("encoder.timeout_seconds must be >= 1")
        if self.encoder.max_attempts < 1:
            errors.append("encoder.max_attempts must be >= 1")

        errors.extend(self.compression.validate())
        errors.extend(self.toksvig.validate())
        errors.extend(self.packing.validate())

        profile_fields = {f.name for f in dataclasses.fields(MipGenerationProfile)} - {"texture_type"}
        valid_types = {t.value for t in TextureType}
        for type_name, overrides in self.profiles.items():
            if type_name not in valid_types:
                errors.append(f"profiles.{type_name}: unknown texture type")
                continue
            if not isinstance(overrides, dict):
                errors.append(f"profiles.{type_name} must be a mapping")
                continue
            unknown = set(overrides) - profile_fields
            if unknown:
                errors.append(f"profiles.{type_name}: unknown fields {sorted(unknown)}")
                continue
            if "filter" in overrides and overrides["filter"] not in {f.value for f in FilterType}:
                errors.append(f"profiles.{type_name}.filter '{overrides['filter']}' is invalid")
                continue
            try:
                self.profile_for(TextureType(type_name)).validate()
            except (ConfigurationError, TypeError) as exc:
                errors.append(f"profiles.{type_name}: {exc}")

        if self.toksvig.enabled and not self.compression.use_custom_mipmaps:
            logger.warning(
                "toksvig.enabled is set but compression.use_custom_mipmaps is off; "
                "Toksvig correction will be skipped because the encoder generates mips."
            )

        if errors:
            raise ConfigurationError(
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
        # Allow int->float and exact float->int promotion.
        if (field_val is not None
                and not isinstance(value, expected_type)
                and not (expected_type is float and isinstance(value, int))
                and not (expected_type is int and isinstance(value, float)
                         and value == int(value))):
            logger.warning(
                "Config type mismatch for '%s': expected %s, got %s (%r). Using default value.",
                full_key, expected_type.__name__, type(value).__name__, value,
            )
            continue
        if expected_type is int and isinstance(value, float):
            value = int(value)
        if expected_type is float and isinstance(value, int):
            value = float(value)
        if isinstance(field_val, dict) and isinstance(value, dict):
            field_val.update(value)
        else:
            setattr(obj, key, value)
