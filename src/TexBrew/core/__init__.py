"""Core utilities -- re-exports all public symbols for convenience."""

from .io import (
    load_image,
    save_image,
    has_alpha,
    red_channel,
    to_uint8,
)
from .classify import classify_texture, classify_texture_by_content, is_gloss_by_name
from .resolve import (
    NormalMapResolver,
    ExplicitNormalMapResolver,
    FilenameNormalMapResolver,
    ChainedNormalMapResolver,
    default_normal_map_resolver,
    strip_texture_suffix,
)
from .diagnostics import DiagnosticEvent, DiagnosticCallback, Diagnostics
from .logging import setup_logging

__all__ = [
    "load_image", "save_image", "has_alpha",
    "red_channel", "to_uint8",
    "classify_texture", "classify_texture_by_content", "is_gloss_by_name",
    "NormalMapResolver", "ExplicitNormalMapResolver", "FilenameNormalMapResolver",
    "ChainedNormalMapResolver", "default_normal_map_resolver", "strip_texture_suffix",
    "DiagnosticEvent", "DiagnosticCallback", "Diagnostics",
    "setup_logging",
]
