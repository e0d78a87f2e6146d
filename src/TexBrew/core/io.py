"""Image I/O utilities -- load/save numpy arrays with explicit bit-depth handling."""

import logging
import os
import threading
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from ..errors import InputError

# Pixel-count limits are enforced per call in load_image() instead.
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger("texture_conversion.io")


def _infer_integer_mode_bit_depth(img: Image.Image, ext: str) -> int:
    """Infer bit depth for Pillow mode ``I`` images from metadata."""
    bits_info = img.info.get("bits")
    if isinstance(bits_info, int) and bits_info > 0:
        return bits_info
    tag_v2 = getattr(img, "tag_v2", None)
    if tag_v2 is not None:
        bits_tag = tag_v2.get(258)
        if isinstance(bits_tag, tuple) and bits_tag:
            bits_tag = bits_tag[0]
        if isinstance(bits_tag, int) and bits_tag > 0:
            return bits_tag
    # PNG/TIFF "I" is almost always 16-bit data promoted by Pillow.
    if ext in (".png", ".tif", ".tiff"):
        return 16
    return 32


def load_image(path: str, max_pixels: int = 0) -> np.ndarray:
    """Load an image as a float32 HxWxC array normalized to [0, 1].

    Grayscale sources are expanded to RGB; alpha is preserved as a fourth
    channel.  Anything that cannot be decoded into at least a 1x1 raster
    raises `InputError`.
    """
    ext = Path(path).suffix.lower()
    if not os.path.isfile(path):
        raise InputError(f"Source image not found: {path}")
    if os.path.getsize(path) == 0:
        raise InputError(f"Source image is empty (0 bytes): {path}")

    try:
        with Image.open(path) as img:
            if img.width <= 0 or img.height <= 0:
                raise InputError(
                    f"Source image has zero dimension: {img.width}x{img.height} ({path})"
                )
            if max_pixels > 0 and img.width * img.height > max_pixels:
                raise InputError(
                    f"Image too large: {img.width}x{img.height} = "
                    f"{img.width * img.height:,} pixels (max {max_pixels:,})"
                )

            if img.mode in ("I;16", "I;16B", "I;16L", "I;16N"):
                arr = np.asarray(img, dtype=np.float32) / 65535.0
            elif img.mode == "I":
                arr = np.asarray(img, dtype=np.float32)
                bit_depth = _infer_integer_mode_bit_depth(img, ext)
                arr = np.clip(arr / float((1 << min(bit_depth, 32)) - 1), 0.0, 1.0)
            elif img.mode == "F":
                arr = np.asarray(img, dtype=np.float32)
                if float(arr.max(initial=0.0)) > 1.0:
                    logger.warning(
                        "Float image '%s' exceeds [0, 1]; clipping for texture use.", path
                    )
                arr = np.clip(arr, 0.0, 1.0)
            elif img.mode in ("P", "LA", "PA"):
                with img.convert("RGBA") as converted:
                    arr = np.asarray(converted, dtype=np.float32) / 255.0
            elif img.mode in ("1", "L", "CMYK", "YCbCr", "HSV"):
                with img.convert("RGB") as converted:
                    arr = np.asarray(converted, dtype=np.float32) / 255.0
            else:
                arr = np.asarray(img, dtype=np.float32) / 255.0
            logger.debug("Loaded %s (mode=%s, %dx%d)", path, img.mode, img.width, img.height)
    except InputError:
        raise
    except Exception as e:
        logger.error("Failed to open image '%s' (ext=%s): %s", path, ext, e)
        raise InputError(f"Failed to open image: {path} ({e})") from e

    if arr.ndim == 2:
        arr = np.stack([arr] * 3, axis=-1)
    if arr.size == 0:
        raise InputError(f"Decoded image is empty: {path}")
    return arr.astype(np.float32, copy=False)


def save_image(arr: np.ndarray, path: str, bits: int = 8):
    """Save a float32 [0,1] (or uint8) array as an image.

    Handles RGB, RGBA, and grayscale (2D).  Uses atomic write (temp file +
    ``os.replace``) so a crash never leaves a truncated file behind.
    16-bit output is only supported for PNG and goes through cv2.
    """
    if arr.size == 0 or arr.ndim < 2:
        raise ValueError(
            f"Cannot save empty or degenerate array (shape={arr.shape}) to {path}"
        )
    if arr.ndim == 3 and arr.shape[-1] == 1:
        arr = arr[:, :, 0]

    ext = Path(path).suffix.lower()
    use_16bit = bits == 16 and ext == ".png"

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    # Keep original extension so Pillow/cv2 can infer the format.
    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"

    try:
        if use_16bit:
            arr_16 = np.round(np.clip(arr, 0, 1) * 65535.0).astype(np.uint16)
            if arr_16.ndim == 3 and arr_16.shape[-1] == 4:
                arr_16 = arr_16[:, :, [2, 1, 0, 3]]  # RGBA -> BGRA
            elif arr_16.ndim == 3:
                arr_16 = arr_16[:, :, :3][:, :, ::-1]  # RGB -> BGR
            if not cv2.imwrite(tmp_path, np.ascontiguousarray(arr_16)):
                raise IOError(f"cv2.imwrite failed for 16-bit PNG: {path}")
        else:
            arr_out = to_uint8(arr)
            with Image.fromarray(arr_out) as img:
                if ext in (".jpg", ".jpeg") and img.mode == "RGBA":
                    with img.convert("RGB") as converted:
                        converted.save(tmp_path, quality=95)
                else:
                    img.save(tmp_path)
        os.replace(tmp_path, path)
        logger.debug("Saved: %s (%s, %dbit)", path, arr.shape, 16 if use_16bit else 8)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def to_uint8(arr: np.ndarray) -> np.ndarray:
    """Quantize a float [0,1] array to uint8 (uint8 input passes through)."""
    if arr.dtype == np.uint8:
        return arr
    return np.round(np.clip(arr, 0.0, 1.0) * 255.0).astype(np.uint8)


def has_alpha(arr: np.ndarray) -> bool:
    return arr.ndim == 3 and arr.shape[-1] == 4


def red_channel(arr: np.ndarray) -> np.ndarray:
    """Return the reference (red) channel of an image as a 2D array."""
    if arr.ndim == 2:
        return arr
    return arr[:, :, 0]
