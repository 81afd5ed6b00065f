"""Ambient-occlusion mip darkening.

Plain filtering averages contact shadows away, so distant AO looks flatter
than it should. Two corrections pull the downsampled levels back toward
their dark end; both read the first channel and write the result to every
color channel, leaving alpha untouched.
"""

import logging
from typing import List

import numpy as np

from ..config import AOConfig
from ..core import MipChain

logger = logging.getLogger("texture_pipeline.ao")

# Share of the distance to the percentile that sub-percentile texels move.
_PERCENTILE_BLEND = 0.3


def _lerp(a, b, t):
    return a + (b - a) * t


def biased_darkening(values: np.ndarray, bias: float) -> np.ndarray:
    """Blend toward ``lerp(mean, min, bias)`` by ``bias / 2``."""
    target = _lerp(float(values.mean()), float(values.min()), bias)
    return np.clip(_lerp(values, target, bias * 0.5), 0.0, 1.0)


def percentile_darkening(values: np.ndarray, percentile: float) -> np.ndarray:
    """Lift texels below the *percentile* value part of the way toward it."""
    threshold = float(np.percentile(values, percentile, method="inverted_cdf"))
    blended = np.where(values < threshold,
                       _lerp(values, threshold, _PERCENTILE_BLEND), values)
    return np.clip(blended, 0.0, 1.0)


class AOProcessor:
    """Apply the configured AO correction in place to a `MipChain`."""

    def __init__(self, config: AOConfig, mode: str = None):
        self.cfg = config
        self.mode = mode or config.mode

    def apply(self, chain: MipChain) -> List[int]:
        """Process levels >= ``start_level``; return the processed indices."""
        if self.mode == "none":
            return []
        processed = []
        for index in range(max(1, self.cfg.start_level), len(chain)):
            plane = chain[index].plane
            pixels = np.array(plane.pixels, dtype=np.float32)
            values = pixels[..., 0]
            if self.mode == "biased_darkening":
                out = biased_darkening(values, self.cfg.bias)
            else:
                out = percentile_darkening(values, self.cfg.percentile)
            channels = pixels.shape[-1]
            n = 3 if channels >= 4 else (1 if channels == 2 else channels)
            pixels[..., :n] = out[..., np.newaxis]
            chain.replace_level(index, plane.with_pixels(pixels))
            logger.debug(
                "AO mip %d (%dx%d): min=%.3f mean=%.3f -> mean=%.3f (%s)",
                index, plane.width, plane.height, float(values.min()),
                float(values.mean()), float(out.mean()), self.mode,
            )
            processed.append(index)
        logger.info("AO %s applied to %d mip level(s)", self.mode, len(processed))
        return processed
