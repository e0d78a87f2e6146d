"""Per-mip darkening for ambient-occlusion and metallic chains.

Downsampling averages away thin occluded crevices; these passes push the
smaller levels back toward their darker values.
"""

import logging
from typing import List

import numpy as np

from ..config import AOProcessingMode

logger = logging.getLogger("texture_conversion.ao")

_PERCENTILE_PULL = 0.3


class AOProcessor:
    """Apply an `AOProcessingMode` to every level from 1 upward."""

    def process(self, chain: List[np.ndarray], mode: AOProcessingMode,
                bias: float = 0.5, percentile: float = 10.0) -> List[np.ndarray]:
        if mode == AOProcessingMode.NONE or len(chain) < 2:
            return [lvl.copy() for lvl in chain]
        out = [chain[0].copy()]
        for level in chain[1:]:
            if mode == AOProcessingMode.BIASED_DARKENING:
                out.append(self.biased_darkening(level, bias))
            elif mode == AOProcessingMode.PERCENTILE:
                out.append(self.percentile_darkening(level, percentile))
            else:
                raise ValueError(f"Unsupported AO processing mode: {mode}")
        logger.debug("AO processing (%s) applied to %d levels", mode.value, len(chain) - 1)
        return out

    @staticmethod
    def biased_darkening(level: np.ndarray, bias: float) -> np.ndarray:
        mean = float(level.mean())
        target = mean + (float(level.min()) - mean) * bias
        pull = bias * 0.5
        return np.clip(level + (target - level) * pull, 0.0, 1.0).astype(np.float32)

    @staticmethod
    def percentile_darkening(level: np.ndarray, percentile: float) -> np.ndarray:
        threshold = float(np.percentile(level, percentile))
        out = level.astype(np.float32, copy=True)
        below = out < threshold
        out[below] += (threshold - out[below]) * _PERCENTILE_PULL
        return np.clip(out, 0.0, 1.0)
