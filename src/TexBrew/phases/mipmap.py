"""Generate mipmap pyramids with per-texture-type filtering.

Each level is produced from the previous one by halving both dimensions
(floor, minimum 1) with the profile's filter.  Gamma, normal and
energy-preserving transforms wrap the resample step so filtering always
happens in the space the data lives in physically.
"""

import logging
from typing import List, Tuple

import cv2
import numpy as np
from scipy import sparse
from scipy.ndimage import gaussian_filter

from ..config import FilterType, MipGenerationProfile
from ..errors import InputError

logger = logging.getLogger("texture_conversion.mipmap")

_CV2_FILTERS = {
    FilterType.BOX: cv2.INTER_AREA,  # INTER_AREA is the box filter equivalent
    FilterType.BILINEAR: cv2.INTER_LINEAR,
    FilterType.BICUBIC: cv2.INTER_CUBIC,
    FilterType.LANCZOS3: cv2.INTER_LANCZOS4,
}

_KAISER_SUPPORT = 3.0
_KAISER_ALPHA = 4.0
_MITCHELL_SUPPORT = 2.0
_GAUSSIAN_SUPPORT = 2.0
_GAUSSIAN_SIGMA = 0.5


def calculate_mip_levels(width: int, height: int, min_mip_size: int = 1) -> int:
    """Number of levels produced by halving until max(w, h) <= min_mip_size."""
    if width <= 0 or height <= 0:
        raise InputError(f"Cannot build mips for a {width}x{height} image")
    return len(mip_dimensions(width, height, min_mip_size))


def mip_dimensions(width: int, height: int, min_mip_size: int = 1) -> List[Tuple[int, int]]:
    """Return (width, height) for every level of the chain, level 0 first."""
    dims = [(width, height)]
    while max(width, height) > max(1, min_mip_size):
        width = max(1, width // 2)
        height = max(1, height // 2)
        dims.append((width, height))
    return dims


def _kaiser(x: np.ndarray) -> np.ndarray:
    inside = np.abs(x) < _KAISER_SUPPORT
    ratio = np.clip(x / _KAISER_SUPPORT, -1.0, 1.0)
    window = np.i0(_KAISER_ALPHA * np.sqrt(1.0 - ratio * ratio)) / np.i0(_KAISER_ALPHA)
    return np.where(inside, np.sinc(x) * window, 0.0)


def _mitchell(x: np.ndarray) -> np.ndarray:
    b = c = 1.0 / 3.0
    ax = np.abs(x)
    ax2 = ax * ax
    ax3 = ax2 * ax
    near = ((12 - 9 * b - 6 * c) * ax3 + (-18 + 12 * b + 6 * c) * ax2 + (6 - 2 * b)) / 6.0
    far = ((-b - 6 * c) * ax3 + (6 * b + 30 * c) * ax2
           + (-12 * b - 48 * c) * ax + (8 * b + 24 * c)) / 6.0
    return np.where(ax < 1.0, near, np.where(ax < 2.0, far, 0.0))


def _gaussian(x: np.ndarray) -> np.ndarray:
    return np.where(np.abs(x) < _GAUSSIAN_SUPPORT,
                    np.exp(-(x * x) / (2.0 * _GAUSSIAN_SIGMA ** 2)), 0.0)


_KERNELS = {
    FilterType.KAISER: (_kaiser, _KAISER_SUPPORT),
    FilterType.MITCHELL: (_mitchell, _MITCHELL_SUPPORT),
    FilterType.GAUSSIAN: (_gaussian, _GAUSSIAN_SUPPORT),
}


def _weight_matrix(n_in: int, n_out: int, kernel, support: float) -> sparse.csr_matrix:
    """Sparse (n_out, n_in) resampling matrix with clamped edges."""
    scale = n_in / float(n_out)
    # Widen the kernel when minifying so it acts as a low-pass filter.
    filter_scale = max(scale, 1.0)
    radius = support * filter_scale
    rows, cols, vals = [], [], []
    for j in range(n_out):
        center = (j + 0.5) * scale - 0.5
        lo = int(np.floor(center - radius))
        hi = int(np.ceil(center + radius))
        taps = np.arange(lo, hi + 1)
        weights = kernel((taps - center) / filter_scale)
        total = weights.sum()
        if abs(total) < 1e-12:
            taps = np.array([int(round(center))])
            weights = np.ones(1)
            total = 1.0
        rows.extend([j] * len(taps))
        cols.extend(np.clip(taps, 0, n_in - 1).tolist())
        vals.extend((weights / total).tolist())
    # Duplicate (row, col) entries from edge clamping are summed.
    return sparse.coo_matrix((vals, (rows, cols)), shape=(n_out, n_in)).tocsr()


def _apply_separable(arr: np.ndarray, rows: sparse.csr_matrix,
                     cols: sparse.csr_matrix) -> np.ndarray:
    squeeze = arr.ndim == 2
    if squeeze:
        arr = arr[:, :, None]
    h, w, c = arr.shape
    out = rows @ arr.reshape(h, w * c)
    out = out.reshape(rows.shape[0], w, c).transpose(1, 0, 2).reshape(w, -1)
    out = (cols @ out).reshape(cols.shape[0], rows.shape[0], c).transpose(1, 0, 2)
    out = np.ascontiguousarray(out, dtype=np.float32)
    return out[:, :, 0] if squeeze else out


def _block_reduce(arr: np.ndarray, out_w: int, out_h: int, op) -> np.ndarray:
    h, w = arr.shape[:2]
    row_starts = (np.arange(out_h) * h) // out_h
    col_starts = (np.arange(out_w) * w) // out_w
    out = op.reduceat(arr, row_starts, axis=0)
    return op.reduceat(out, col_starts, axis=1).astype(np.float32)


def resample(arr: np.ndarray, out_w: int, out_h: int, filter_type: FilterType) -> np.ndarray:
    """Resample a float image (HxW or HxWxC) to out_w x out_h."""
    arr = np.ascontiguousarray(arr, dtype=np.float32)
    h, w = arr.shape[:2]
    if (w, h) == (out_w, out_h):
        return arr.copy()

    if filter_type in _CV2_FILTERS:
        single = arr.ndim == 3 and arr.shape[-1] == 1
        src = arr[:, :, 0] if single else arr
        out = cv2.resize(src, (out_w, out_h), interpolation=_CV2_FILTERS[filter_type])
        return out[:, :, None] if single else out
    if filter_type == FilterType.MIN:
        return _block_reduce(arr, out_w, out_h, np.minimum)
    if filter_type == FilterType.MAX:
        return _block_reduce(arr, out_w, out_h, np.maximum)

    kernel, support = _KERNELS[filter_type]
    return _apply_separable(
        arr,
        _weight_matrix(h, out_h, kernel, support),
        _weight_matrix(w, out_w, kernel, support),
    )


def _color_count(arr: np.ndarray) -> int:
    """How many leading channels carry color (alpha is excluded)."""
    if arr.ndim == 2:
        return 1
    return 3 if arr.shape[-1] >= 4 else arr.shape[-1]


class MipGenerator:
    """Build mip chains under a `MipGenerationProfile`."""

    def generate_mipmaps(self, source: np.ndarray,
                         profile: MipGenerationProfile) -> List[np.ndarray]:
        """Return the full chain; level 0 is a copy of `source`."""
        if source is None or source.size == 0 or source.ndim < 2:
            raise InputError("Cannot generate mipmaps from an empty image")
        h, w = source.shape[:2]
        if w <= 0 or h <= 0:
            raise InputError(f"Cannot generate mipmaps from a {w}x{h} image")
        profile.validate()

        dims = mip_dimensions(w, h, profile.min_mip_size)
        chain = [source.astype(np.float32, copy=True)]
        for mip_w, mip_h in dims[1:]:
            chain.append(self._next_level(chain[-1], mip_w, mip_h, profile))
        logger.debug(
            "Generated %d mip levels from %dx%d (type=%s, filter=%s)",
            len(chain), w, h, profile.texture_type.value, profile.filter.value,
        )
        return chain

    def _next_level(self, prev: np.ndarray, mip_w: int, mip_h: int,
                    profile: MipGenerationProfile) -> np.ndarray:
        if profile.normalize_normals and prev.ndim == 3 and prev.shape[-1] >= 3:
            mip = self._downsample_normals(prev, mip_w, mip_h, profile.filter)
        else:
            work = self._to_filter_space(prev, profile)
            mip = resample(work, mip_w, mip_h, profile.filter)
            mip = self._from_filter_space(mip, profile)

        if profile.blur_radius > 0:
            sigma = (profile.blur_radius, profile.blur_radius, 0) if mip.ndim == 3 \
                else profile.blur_radius
            mip = gaussian_filter(mip, sigma=sigma)
        return np.clip(mip, 0.0, 1.0).astype(np.float32)

    @staticmethod
    def _to_filter_space(arr: np.ndarray, profile: MipGenerationProfile) -> np.ndarray:
        out = np.clip(arr, 0.0, 1.0).astype(np.float32, copy=True)
        n = _color_count(out)
        color = out if out.ndim == 2 else out[:, :, :n]
        if profile.apply_gamma_correction:
            color[...] = np.power(color, profile.gamma)
        if profile.energy_preserving:
            # Filter GGX alpha (roughness^2) instead of perceptual roughness.
            rough = 1.0 - color if profile.is_gloss else color
            color[...] = rough * rough
        return out

    @staticmethod
    def _from_filter_space(arr: np.ndarray, profile: MipGenerationProfile) -> np.ndarray:
        out = np.clip(arr, 0.0, 1.0).astype(np.float32, copy=True)
        n = _color_count(out)
        color = out if out.ndim == 2 else out[:, :, :n]
        if profile.energy_preserving:
            rough = np.sqrt(color)
            color[...] = 1.0 - rough if profile.is_gloss else rough
        if profile.apply_gamma_correction:
            color[...] = np.power(color, 1.0 / profile.gamma)
        return out

    def _downsample_normals(self, prev: np.ndarray, mip_w: int, mip_h: int,
                            filter_type: FilterType) -> np.ndarray:
        # Downsample in vector space, not encoded [0,1] color space.
        decoded = np.clip(prev[:, :, :3], 0.0, 1.0) * 2.0 - 1.0
        decoded = resample(decoded, mip_w, mip_h, filter_type)
        rgb = self._renormalize_normal_decoded(decoded) * 0.5 + 0.5
        if prev.shape[-1] > 3:
            rest = resample(prev[:, :, 3:], mip_w, mip_h, filter_type)
            if rest.ndim == 2:
                rest = rest[:, :, None]
            return np.concatenate([rgb, rest], axis=2).astype(np.float32)
        return rgb.astype(np.float32)

    @staticmethod
    def _renormalize_normal_decoded(decoded: np.ndarray) -> np.ndarray:
        length = np.sqrt(np.sum(decoded**2, axis=-1, keepdims=True))
        length = np.maximum(length, 1e-8)
        return (decoded / length).astype(np.float32)
