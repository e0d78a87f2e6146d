"""Toksvig specular anti-aliasing for gloss and roughness mip chains.

Averaging a bumpy normal map shortens the mean normal.  That shortening
(``L = |avg(n)|``) is a measure of the normal variance lost at each mip
level, and is folded back into the specular map: gloss is attenuated,
roughness is raised.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np
from scipy.ndimage import gaussian_filter

from ..config import ToksvigCalculationMode, ToksvigSettings

logger = logging.getLogger("texture_conversion.toksvig")

_MIN_LENGTH = 1e-4
_SMOOTH_SIGMA = 0.5
_SMOOTH_MIN_SIZE = 4


@dataclass
class ToksvigLevelStats:
    level: int
    mean_length: float
    mean_factor: float
    mean_input: float
    mean_output: float


@dataclass
class ToksvigResult:
    """Corrected chain plus optional per-level factor maps and stats."""

    levels: List[np.ndarray]
    factors: Optional[List[np.ndarray]] = None
    stats: List[ToksvigLevelStats] = field(default_factory=list)


def compute_toksvig_factor(length: np.ndarray, settings: ToksvigSettings) -> np.ndarray:
    """Map average normal length to a specular attenuation factor in [0, 1]."""
    length = np.clip(length, _MIN_LENGTH, 1.0)
    k = settings.composite_power
    if settings.mode == ToksvigCalculationMode.SIMPLIFIED:
        factor = np.power(length, k)
    else:
        factor = length / (length + k * (1.0 - length))
    if settings.variance_threshold > 0:
        variance = (1.0 - length) / length
        factor = np.where(variance < settings.variance_threshold, 1.0, factor)
    return np.clip(factor, 0.0, 1.0).astype(np.float32)


def _decode_normals(normal_map: np.ndarray) -> np.ndarray:
    if normal_map.ndim != 3 or normal_map.shape[-1] < 3:
        raise ValueError(
            f"Normal map must be an RGB image, got shape {normal_map.shape}"
        )
    return np.clip(normal_map[:, :, :3], 0.0, 1.0).astype(np.float32) * 2.0 - 1.0


class ToksvigProcessor:
    """Apply Toksvig correction level-by-level against a normal mip chain."""

    def build_normal_chain(self, normal_map: np.ndarray, chain: List[np.ndarray]) -> List[np.ndarray]:
        """Box-average decoded normals to each level's size without renormalizing."""
        h0, w0 = chain[0].shape[:2]
        decoded = _decode_normals(normal_map)
        if decoded.shape[:2] != (h0, w0):
            logger.info(
                "Rescaling normal map from %dx%d to %dx%d to match texture",
                decoded.shape[1], decoded.shape[0], w0, h0,
            )
            decoded = cv2.resize(decoded, (w0, h0), interpolation=cv2.INTER_AREA)
        normals = [decoded]
        for level in chain[1:]:
            h, w = level.shape[:2]
            normals.append(cv2.resize(normals[-1], (w, h), interpolation=cv2.INTER_AREA))
        return normals

    def average_normal_length(self, normals: np.ndarray, smooth: bool) -> np.ndarray:
        length = np.sqrt(np.sum(normals ** 2, axis=-1))
        length = np.clip(length, _MIN_LENGTH, 1.0)
        h, w = length.shape
        if smooth and h >= _SMOOTH_MIN_SIZE and w >= _SMOOTH_MIN_SIZE:
            length = np.clip(gaussian_filter(length, sigma=_SMOOTH_SIGMA), _MIN_LENGTH, 1.0)
        return length.astype(np.float32)

    def apply_toksvig_correction(self, chain: List[np.ndarray], normal_map: np.ndarray,
                                 settings: ToksvigSettings, is_gloss: bool,
                                 capture_factors: bool = False) -> ToksvigResult:
        """Return a corrected copy of `chain`; level 0 is never modified."""
        passthrough = ToksvigResult(levels=[lvl.copy() for lvl in chain])
        if not chain:
            return passthrough
        if not settings.enabled:
            logger.debug("Toksvig disabled; chain returned unchanged")
            return passthrough
        problems = settings.validate()
        if problems:
            logger.warning("Invalid Toksvig settings, skipping correction: %s",
                           "; ".join(problems))
            return passthrough

        normals = self.build_normal_chain(normal_map, chain)
        levels: List[np.ndarray] = []
        factors: List[np.ndarray] = []
        stats: List[ToksvigLevelStats] = []

        for i, (mip, normal_mip) in enumerate(zip(chain, normals)):
            h, w = mip.shape[:2]
            if i == 0 or i < settings.min_mip_level:
                out = mip.copy()
                factor = np.ones((h, w), dtype=np.float32)
                length = np.ones((h, w), dtype=np.float32)
            else:
                length = self.average_normal_length(normal_mip, settings.smooth_variance)
                factor = compute_toksvig_factor(length, settings)
                out = self._apply_factor(mip, factor, is_gloss)

            levels.append(out)
            if capture_factors:
                factors.append(factor)
            stats.append(ToksvigLevelStats(
                level=i,
                mean_length=float(length.mean()),
                mean_factor=float(factor.mean()),
                mean_input=float(_color(mip).mean()),
                mean_output=float(_color(out).mean()),
            ))
            logger.debug(
                "Toksvig mip %d (%dx%d): |N|=%.4f factor=%.4f value %.4f -> %.4f",
                i, w, h, stats[-1].mean_length, stats[-1].mean_factor,
                stats[-1].mean_input, stats[-1].mean_output,
            )

        logger.info("Applied Toksvig correction to %d levels (%s, k=%.2f)",
                    len(levels), "gloss" if is_gloss else "roughness",
                    settings.composite_power)
        return ToksvigResult(levels=levels, factors=factors if capture_factors else None,
                             stats=stats)

    @staticmethod
    def _apply_factor(mip: np.ndarray, factor: np.ndarray, is_gloss: bool) -> np.ndarray:
        out = mip.astype(np.float32, copy=True)
        color = _color(out)
        f = factor if color.ndim == 2 else factor[:, :, None]
        if is_gloss:
            color[...] = color * f
        else:
            color[...] = 1.0 - (1.0 - color) * f
        np.clip(out, 0.0, 1.0, out=out)
        return out


def _color(arr: np.ndarray) -> np.ndarray:
    """View of the color channels (alpha excluded)."""
    if arr.ndim == 2:
        return arr
    if arr.shape[-1] == 4:
        return arr[:, :, :3]
    return arr
