"""Continuous resampling kernels and separable weight-matrix resampling.

Each kernel is a weight function of the distance (in destination-pixel
units) from the sample center plus a support radius. When downsampling,
the kernel is stretched by the scale factor so every destination pixel
integrates its full fractional footprint in the source.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict

import numpy as np
from scipy import sparse
from scipy.special import i0

WRAP_MODES = ("mirror", "clamp", "repeat")


@dataclass(frozen=True)
class ResampleKernel:
    name: str
    support: float
    weight: Callable[[np.ndarray], np.ndarray]


def _box(x: np.ndarray) -> np.ndarray:
    return ((x >= -0.5) & (x < 0.5)).astype(np.float64)


def _triangle(x: np.ndarray) -> np.ndarray:
    return np.clip(1.0 - np.abs(x), 0.0, None)


def _keys_cubic(x: np.ndarray, a: float = -0.5) -> np.ndarray:
    ax = np.abs(x)
    ax2 = ax * ax
    ax3 = ax2 * ax
    near = (a + 2.0) * ax3 - (a + 3.0) * ax2 + 1.0
    far = a * ax3 - 5.0 * a * ax2 + 8.0 * a * ax - 4.0 * a
    return np.where(ax < 1.0, near, np.where(ax < 2.0, far, 0.0))


def _mitchell(x: np.ndarray, b: float = 1.0 / 3.0, c: float = 1.0 / 3.0) -> np.ndarray:
    ax = np.abs(x)
    ax2 = ax * ax
    ax3 = ax2 * ax
    near = ((12 - 9 * b - 6 * c) * ax3 + (-18 + 12 * b + 6 * c) * ax2 + (6 - 2 * b)) / 6.0
    far = (
        (-b - 6 * c) * ax3 + (6 * b + 30 * c) * ax2
        + (-12 * b - 48 * c) * ax + (8 * b + 24 * c)
    ) / 6.0
    return np.where(ax < 1.0, near, np.where(ax < 2.0, far, 0.0))


def _lanczos3(x: np.ndarray) -> np.ndarray:
    return np.where(np.abs(x) < 3.0, np.sinc(x) * np.sinc(x / 3.0), 0.0)


_KAISER_ALPHA = 4.0
_KAISER_RADIUS = 3.0


def _kaiser(x: np.ndarray) -> np.ndarray:
    ratio = np.clip(x / _KAISER_RADIUS, -1.0, 1.0)
    window = i0(_KAISER_ALPHA * np.sqrt(1.0 - ratio * ratio)) / i0(_KAISER_ALPHA)
    return np.where(np.abs(x) < _KAISER_RADIUS, np.sinc(x) * window, 0.0)


KERNELS: Dict[str, ResampleKernel] = {
    "box": ResampleKernel("box", 0.5, _box),
    "bilinear": ResampleKernel("bilinear", 1.0, _triangle),
    "bicubic": ResampleKernel("bicubic", 2.0, _keys_cubic),
    "lanczos3": ResampleKernel("lanczos3", 3.0, _lanczos3),
    "mitchell": ResampleKernel("mitchell", 2.0, _mitchell),
    "kaiser": ResampleKernel("kaiser", _KAISER_RADIUS, _kaiser),
}


def get_kernel(name: str) -> ResampleKernel:
    """Look up a kernel by (case-insensitive) name."""
    key = str(name).strip().lower()
    try:
        return KERNELS[key]
    except KeyError:
        raise ValueError(
            f"Unknown resampling kernel '{name}'. Valid: {sorted(KERNELS)}"
        ) from None


def resample_weights(src_size: int, dst_size: int, kernel: ResampleKernel,
                     wrap: str = "mirror") -> sparse.csr_matrix:
    """Build the ``(dst_size, src_size)`` weight matrix for one axis.

    Rows sum to exactly one, so a constant signal is reproduced exactly.
    ``mirror`` reflects out-of-range taps about the edge (half-sample
    symmetric), which keeps the image mean when halving; ``clamp`` folds
    them onto the edge sample; ``repeat`` wraps around.
    """
    if wrap not in WRAP_MODES:
        raise ValueError(f"wrap must be one of {WRAP_MODES}, got '{wrap}'")
    scale = src_size / dst_size
    filter_scale = max(scale, 1.0)
    support = kernel.support * filter_scale

    centers = (np.arange(dst_size, dtype=np.float64) + 0.5) * scale - 0.5
    taps = int(math.ceil(2.0 * support)) + 2
    first = np.floor(centers - support).astype(np.int64)
    cols = first[:, np.newaxis] + np.arange(taps, dtype=np.int64)[np.newaxis, :]
    weights = kernel.weight((cols - centers[:, np.newaxis]) / filter_scale)

    totals = weights.sum(axis=1)
    empty = np.abs(totals) < 1e-12
    if empty.any():
        # Nothing under the kernel: take the nearest source sample.
        nearest = np.clip(np.round(centers[empty]), 0, src_size - 1).astype(np.int64)
        weights[empty] = 0.0
        cols[empty, 0] = nearest
        weights[empty, 0] = 1.0
        totals = weights.sum(axis=1)
    weights = weights / totals[:, np.newaxis]

    if wrap == "repeat":
        cols = np.mod(cols, src_size)
    elif wrap == "mirror":
        period = np.mod(cols, 2 * src_size)
        cols = np.where(period >= src_size, 2 * src_size - 1 - period, period)
    else:
        cols = np.clip(cols, 0, src_size - 1)

    rows = np.repeat(np.arange(dst_size, dtype=np.int64), taps)
    # Duplicate (row, col) pairs from edge handling are summed by scipy.
    matrix = sparse.csr_matrix(
        (weights.ravel(), (rows, cols.ravel())), shape=(dst_size, src_size)
    )
    matrix.eliminate_zeros()
    return matrix


def resample(pixels: np.ndarray, dst_w: int, dst_h: int, kernel: ResampleKernel,
             wrap: str = "mirror") -> np.ndarray:
    """Separably resample an ``(H, W, C)`` array to ``(dst_h, dst_w, C)``."""
    src = np.asarray(pixels, dtype=np.float64)
    if src.ndim == 2:
        src = src[:, :, np.newaxis]
    h, w, c = src.shape

    out = src
    if dst_h != h:
        wy = resample_weights(h, dst_h, kernel, wrap)
        out = (wy @ out.reshape(h, w * c)).reshape(dst_h, w, c)
    if dst_w != w:
        wx = resample_weights(w, dst_w, kernel, wrap)
        rows = out.shape[0]
        cols_major = out.transpose(1, 0, 2).reshape(w, rows * c)
        out = (wx @ cols_major).reshape(dst_w, rows, c).transpose(1, 0, 2)
    return np.ascontiguousarray(out, dtype=np.float32)
