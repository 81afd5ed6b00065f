"""Forward/inverse range transforms and the mip-chain normalizer.

`forward_transform` and `inverse_transform` are pure functions of one
`RangeStatistics` value, so a decoder (CPU or shader) can mirror them
exactly from the two numbers stored in the container metadata.
"""

import logging

import numpy as np

from ..core import InvalidDimensionError, MipChain
from .histogram import InverseTransform, RangeStatistics

logger = logging.getLogger("texture_pipeline.normalize")


def _knee_curve(t: np.ndarray, knee: float) -> np.ndarray:
    # Integral of smoothstep, scaled so slope and value meet the identity at t=1.
    return 2.0 * knee * (t ** 3 - 0.5 * t ** 4)


def soft_knee(x: np.ndarray, knee: float) -> np.ndarray:
    """Map normalized values into [0, 1] with smooth shoulders of width *knee*.

    Values in ``[knee, 1 - knee]`` are unchanged; below/above, the curve
    eases into 0 at ``-knee`` and 1 at ``1 + knee`` (C1-continuous).
    """
    x = np.asarray(x, dtype=np.float64)
    if knee <= 0.0:
        return np.clip(x, 0.0, 1.0)
    y = x.copy()
    low = x < knee
    if low.any():
        t = np.clip((x[low] + knee) / (2.0 * knee), 0.0, 1.0)
        y[low] = _knee_curve(t, knee)
    high = x > 1.0 - knee
    if high.any():
        t = np.clip((1.0 - x[high] + knee) / (2.0 * knee), 0.0, 1.0)
        y[high] = 1.0 - _knee_curve(t, knee)
    return np.clip(y, 0.0, 1.0)


def forward_transform(values: np.ndarray, stats: RangeStatistics) -> np.ndarray:
    """Map raw values to [0, 1]: ``v * scale + offset`` then clamp or soft-knee.

    In high_quality mode the percentile range lands on
    ``[knee_fraction, 1 - knee_fraction]``, where the knee is the identity,
    so only samples outside ``[lo, hi]`` are bent.

    The trailing axis of *values* must match the channel count of *stats*
    in per-channel mode; combined statistics broadcast over any shape.
    """
    scale = np.asarray(stats.scale, dtype=np.float64)
    offset = np.asarray(stats.offset, dtype=np.float64)
    normalized = np.asarray(values, dtype=np.float64) * scale + offset
    if stats.quality == "high_quality":
        normalized = soft_knee(normalized, stats.knee_fraction)
    else:
        normalized = np.clip(normalized, 0.0, 1.0)
    return normalized.astype(np.float32)


def inverse_transform(values: np.ndarray, stats) -> np.ndarray:
    """Recover raw values: ``v * scale_inv + offset_inv``.

    Accepts either `RangeStatistics` or an `InverseTransform` (for example
    one decoded from container metadata).
    """
    scale_inv = np.asarray(stats.scale_inv, dtype=np.float64)
    offset_inv = np.asarray(stats.offset_inv, dtype=np.float64)
    return (np.asarray(values, dtype=np.float64) * scale_inv + offset_inv).astype(np.float32)


def analyzed_channels(channels: int) -> int:
    """Color channels covered by the transform; any alpha passes through."""
    return 3 if channels >= 3 else 1


class RangeNormalizer:
    """Apply one forward transform to every level of a mip chain."""

    def normalize(self, chain: MipChain, stats: RangeStatistics) -> InverseTransform:
        for level in chain:
            pixels = np.array(level.plane.pixels, dtype=np.float32)
            n = analyzed_channels(pixels.shape[-1])
            if len(stats.lo) == 3 and n != 3:
                raise InvalidDimensionError(
                    f"Per-channel statistics need 3 color channels on mip {level.index}",
                    stage="normalize", expected=3, actual=pixels.shape[-1],
                )
            pixels[..., :n] = forward_transform(pixels[..., :n], stats)
            chain.replace_level(level.index, level.plane.with_pixels(pixels))
        inverse = stats.inverse
        logger.info(
            "Normalized %d mip level(s); inverse scale=%s offset=%s",
            len(chain),
            "/".join(f"{v:.5g}" for v in inverse.scale_inv),
            "/".join(f"{v:.5g}" for v in inverse.offset_inv),
        )
        return inverse
