"""Toksvig roughness correction for downsampled roughness/gloss mips.

Averaging normals shortens them; the lost length is a measure of the
sub-pixel normal variance that the coarser mip can no longer represent.
That variance is folded back into roughness so specular highlights keep
their apparent size at distance.
"""

import logging
from typing import List

import numpy as np
from scipy.ndimage import gaussian_filter

from ..config import ToksvigConfig
from ..core import MipChain

logger = logging.getLogger("texture_pipeline.toksvig")

_VARIANCE_BIAS = 0.00004
_MIN_SMOOTH_DIM = 4


def normal_variance(encoded_normals: np.ndarray, smooth: bool = False) -> np.ndarray:
    """Per-pixel variance estimate from filtered (un-renormalized) normals."""
    decoded = encoded_normals[..., :3].astype(np.float64) * 2.0 - 1.0
    length = np.sqrt(np.sum(decoded * decoded, axis=-1))
    length = np.clip(length, 1e-8, 1.0)
    variance = np.maximum(0.0, (1.0 - length) / length - _VARIANCE_BIAS)
    h, w = variance.shape
    if smooth and h >= _MIN_SMOOTH_DIM and w >= _MIN_SMOOTH_DIM:
        variance = gaussian_filter(variance, sigma=0.5, mode="nearest")
    return variance


def toksvig_roughness(roughness: np.ndarray, variance: np.ndarray,
                      composite_power: float = 1.0) -> np.ndarray:
    """Widen GGX alpha by the normal variance; monotonic in *variance*."""
    r = np.clip(roughness.astype(np.float64), 0.0, 1.0)
    a2 = (r * r) ** 2
    var = variance[..., np.newaxis] if variance.ndim < r.ndim else variance
    b = 2.0 * composite_power * var * (a2 - 1.0)
    a2_corrected = np.clip((b - a2) / (b - 1.0), 1e-8, 1.0)
    corrected = np.power(a2_corrected, 0.25)
    return np.maximum(corrected, r).astype(np.float32)


class ToksvigCorrector:
    """Apply Toksvig correction in place to a roughness/gloss `MipChain`."""

    def __init__(self, config: ToksvigConfig, is_gloss: bool = False):
        self.cfg = config
        self.is_gloss = is_gloss

    def apply(self, roughness_chain: MipChain, normal_chain: MipChain) -> List[int]:
        """Correct levels >= ``min_mip_level``; return the corrected indices.

        *normal_chain* must hold filtered, not renormalized, encoded normals.
        """
        start = max(1, self.cfg.min_mip_level)
        corrected = []
        for index in range(start, min(len(roughness_chain), len(normal_chain))):
            level = roughness_chain[index]
            normals = normal_chain[index]
            if level.plane.size != normals.plane.size:
                logger.warning(
                    "Skipping Toksvig on mip %d: roughness %s vs normal %s size mismatch",
                    index, level.plane.size, normals.plane.size,
                )
                continue
            if normals.plane.channels < 3:
                logger.warning(
                    "Skipping Toksvig on mip %d: normal map has %d channels",
                    index, normals.plane.channels,
                )
                continue

            variance = normal_variance(normals.plane.pixels, self.cfg.smooth_variance)
            pixels = np.array(level.plane.pixels, dtype=np.float32)
            n = 3 if pixels.shape[-1] >= 4 else pixels.shape[-1]
            values = pixels[..., :n]
            if self.is_gloss:
                values = 1.0 - values
            values = toksvig_roughness(values, variance, self.cfg.composite_power)
            pixels[..., :n] = 1.0 - values if self.is_gloss else values

            roughness_chain.replace_level(index, level.plane.with_pixels(pixels))
            corrected.append(index)
            logger.debug(
                "Toksvig mip %d: mean variance %.5f, max %.5f",
                index, float(variance.mean()), float(variance.max()),
            )
        if corrected:
            logger.info("Toksvig corrected %d mip level(s): %s", len(corrected), corrected)
        return corrected
