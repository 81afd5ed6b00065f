"""Image I/O utilities -- load/save numpy arrays with explicit bit-depth handling."""

import logging
import os
import threading
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from .errors import IOFailureError

# Pixel-count limits are validated per call in load_image() after the
# header is read, so Pillow's global bomb check is disabled.
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger("texture_pipeline.io")

BT709_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float32)


def _bits_from_metadata(img: Image.Image):
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
    return None


def _decode(img: Image.Image, path: str, ext: str) -> np.ndarray:
    if img.mode in ("I;16", "I;16B", "I;16L", "I;16N"):
        logger.debug("Loading %s as 16-bit integer mode %s", path, img.mode)
        return np.asarray(img, dtype=np.float32) / 65535.0

    if img.mode == "I":
        arr = np.asarray(img, dtype=np.float32)
        bit_depth = _bits_from_metadata(img)
        if bit_depth is None:
            # TIFF "I" is frequently 16-bit data promoted to "I".
            bit_depth = 16 if ext in (".tif", ".tiff") else 32
        max_value = float((1 << min(bit_depth, 32)) - 1)
        logger.debug("Loading %s as mode I with %d-bit depth", path, bit_depth)
        return np.clip(arr / max_value, 0.0, 1.0)

    if img.mode == "F":
        # Absolute values are preserved; the histogram stage measures the
        # real range rather than assuming [0, 1].
        arr = np.asarray(img, dtype=np.float32)
        bits_info = _bits_from_metadata(img)
        if bits_info in (8, 16) and float(arr.min()) >= 0.0 and float(arr.max()) > 1.0:
            arr = arr / float((1 << bits_info) - 1)
        return arr

    if img.mode == "P":
        with img.convert("RGBA") as converted:
            return np.asarray(converted, dtype=np.float32) / 255.0
    if img.mode == "CMYK":
        with img.convert("RGB") as converted:
            return np.asarray(converted, dtype=np.float32) / 255.0
    if img.mode == "1":
        with img.convert("L") as converted:
            return np.asarray(converted, dtype=np.float32) / 255.0
    return np.asarray(img, dtype=np.float32) / 255.0


def load_image(path: str, max_pixels: int = 0) -> np.ndarray:
    """Load an image as a float32 ``(H, W, C)`` array.

    Channel count is preserved (grayscale stays single-channel). Integer
    formats are normalized to [0, 1]; float TIFF/EXR-like data keeps its
    absolute values.
    """
    ext = Path(path).suffix.lower()
    try:
        with Image.open(path) as img:
            if max_pixels > 0 and img.width * img.height > max_pixels:
                raise IOFailureError(
                    "Image exceeds max_image_pixels",
                    stage="load", path=path,
                    expected=f"<= {max_pixels:,} pixels",
                    actual=f"{img.width}x{img.height}",
                )
            arr = _decode(img, path, ext)
    except IOFailureError:
        raise
    except (OSError, ValueError) as e:
        logger.error("Failed to open image '%s' (ext=%s): %s", path, ext, e)
        raise IOFailureError(
            f"Failed to open image: {e}", stage="load", path=path
        ) from e

    if arr.ndim == 2:
        arr = arr[:, :, np.newaxis]
    logger.debug("Loaded %s shape=%s", path, arr.shape)
    return np.ascontiguousarray(arr, dtype=np.float32)


def save_image(arr: np.ndarray, path: str, bits: int = 8):
    """Save a float32 [0,1] array as an image.

    Uses an atomic write (temp file + ``os.replace``) so a crash never
    leaves a truncated file behind.

    Args:
        arr: float32 array in [0, 1], shaped (H, W) or (H, W, C) with C in 1..4.
        path: Output file path.
        bits: 8 or 16. 16-bit output is PNG only and is written with OpenCV.

    """
    arr = np.clip(np.asarray(arr, dtype=np.float32), 0.0, 1.0)
    if arr.size == 0 or arr.ndim < 2:
        raise ValueError(
            f"Cannot save empty or degenerate array (shape={arr.shape}) to {path}"
        )
    if arr.ndim == 3 and arr.shape[-1] == 1:
        arr = arr[:, :, 0]

    ext = Path(path).suffix.lower()
    if bits not in (8, 16):
        raise ValueError(f"bits must be 8 or 16, got {bits}")
    if bits == 16 and ext != ".png":
        raise ValueError(f"16-bit output is only supported for PNG, got {ext}")

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    # Keep the original extension so Pillow/cv2 can infer the format.
    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"

    try:
        if bits == 16:
            arr_16 = np.round(arr * 65535.0).astype(np.uint16)
            if arr_16.ndim == 2:
                png_data = arr_16
            elif arr_16.shape[-1] == 4:
                png_data = arr_16[:, :, [2, 1, 0, 3]]  # RGBA -> BGRA
            elif arr_16.shape[-1] == 3:
                png_data = arr_16[:, :, ::-1]  # RGB -> BGR
            else:
                raise ValueError(f"Unsupported shape for 16-bit PNG save: {arr_16.shape}")
            if not cv2.imwrite(tmp_path, np.ascontiguousarray(png_data)):
                raise IOFailureError(
                    "cv2.imwrite failed for 16-bit PNG", stage="save", path=path
                )
        else:
            arr_out = np.round(arr * 255.0).astype(np.uint8)
            with Image.fromarray(arr_out) as img:
                if ext == ".png":
                    img.save(tmp_path, optimize=False)
                else:
                    img.save(tmp_path)
        os.replace(tmp_path, path)
        logger.debug("Saved: %s (%s, %dbit)", path, arr.shape, bits)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def luminance_bt709(arr: np.ndarray) -> np.ndarray:
    """Return the BT.709 luminance of an (H, W, >=3) array, or channel 0 otherwise."""
    if arr.ndim == 2:
        return arr.astype(np.float32, copy=False)
    if arr.shape[-1] >= 3:
        return np.tensordot(arr[..., :3], BT709_WEIGHTS, axes=([-1], [0])).astype(
            np.float32, copy=False
        )
    return arr[..., 0].astype(np.float32, copy=False)


def gamma_to_linear(arr: np.ndarray, gamma: float = 2.2) -> np.ndarray:
    """Decode gamma-encoded values with a pure power curve."""
    return np.power(np.clip(arr, 0.0, None), gamma).astype(np.float32, copy=False)


def linear_to_gamma(arr: np.ndarray, gamma: float = 2.2) -> np.ndarray:
    """Encode linear values with the inverse power curve."""
    return np.power(np.clip(arr, 0.0, None), 1.0 / gamma).astype(np.float32, copy=False)
