"""Texture classification by filename suffix patterns and content analysis."""

import logging
import re
from pathlib import Path
from typing import Optional

import numpy as np

from ..config import TEXTURE_PATTERNS, TextureType

logger = logging.getLogger("texture_conversion.classify")

_GLOSS_TOKEN = re.compile(r"(^|[_\-.])g($|[_\-.])")
_ROUGH_TOKEN = re.compile(r"(^|[_\-.])r($|[_\-.])")


def classify_texture(filepath: str) -> TextureType:
    """Classify texture type based on filename suffix patterns.

    Uses longest-match suffix strategy to avoid false positives from
    short patterns matching mid-word substrings.
    """
    name = Path(filepath).stem.lower()
    best_type = TextureType.GENERIC
    best_len = 0
    for tex_type, patterns in TEXTURE_PATTERNS.items():
        for pattern in patterns:
            if name.endswith(pattern) and len(pattern) > best_len:
                best_len = len(pattern)
                best_type = tex_type
    logger.debug("Classified %s as %s", filepath, best_type.value)
    return best_type


def classify_texture_by_content(arr: np.ndarray) -> TextureType:
    """Content fallback used when the filename says nothing.

    Only distinguishes tangent-space normal maps (RGB centered near
    (0.5, 0.5, 1.0)) from everything else, which stays GENERIC.
    """
    if arr.ndim != 3 or arr.shape[-1] < 3:
        return TextureType.GENERIC
    r, g, b = arr[:, :, 0], arr[:, :, 1], arr[:, :, 2]
    if (b.mean() > 0.7
            and abs(float(r.mean()) - 0.5) < 0.15
            and abs(float(g.mean()) - 0.5) < 0.15
            and b.std() < 0.15):
        logger.debug("Content-based classification: normal-map statistics -> NORMAL")
        return TextureType.NORMAL
    return TextureType.GENERIC


def is_gloss_by_name(filepath: str) -> Optional[bool]:
    """Return True for gloss-like names, False for roughness-like, else None."""
    name = Path(filepath).stem.lower()
    if "gloss" in name or "smoothness" in name or _GLOSS_TOKEN.search(name):
        return True
    if "rough" in name or _ROUGH_TOKEN.search(name):
        return False
    return None
