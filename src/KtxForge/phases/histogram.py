"""Percentile-based dynamic range analysis.

The analyzer measures where the bulk of the samples lie (``lo``/``hi`` at
the requested cumulative percentiles) so the normalizer can stretch that
span to [0, 1] and the decoder can undo it with a single scale/offset.
"""

import logging
import math
import warnings
from dataclasses import dataclass
from typing import List, Tuple, Union

import numpy as np

from ..config import HistogramConfig
from ..core import DegenerateRangeWarning, ImagePlane, MipChain, luminance_bt709

logger = logging.getLogger("texture_pipeline.histogram")

_NEAR_FULL_RANGE = 0.95


@dataclass(frozen=True)
class InverseTransform:
    """Decoder-side parameters: ``original = v * scale_inv + offset_inv``."""

    scale_inv: Tuple[float, ...]
    offset_inv: Tuple[float, ...]


@dataclass(frozen=True)
class RangeStatistics:
    """Low/high percentile values and the transforms derived from them.

    ``lo``/``hi`` hold one entry in combined mode and three in per-channel
    mode. ``degenerate`` marks a range that was clamped to ``min_range``.

    With a knee, the linear transform spans ``[lo - knee*(hi-lo), hi + knee*(hi-lo)]``
    so the percentile range maps to ``[knee_fraction, 1 - knee_fraction]`` and
    the tails have room for the soft shoulders.
    """

    lo: Tuple[float, ...]
    hi: Tuple[float, ...]
    channel_mode: str = "combined"
    quality: str = "fast"
    knee_width: float = 0.0
    low_percentile: float = 0.5
    high_percentile: float = 99.5
    degenerate: bool = False
    tail_fraction: float = 0.0
    warnings: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "lo", tuple(float(v) for v in self.lo))
        object.__setattr__(self, "hi", tuple(float(v) for v in self.hi))
        if len(self.lo) != len(self.hi) or len(self.lo) not in (1, 3):
            raise ValueError(
                f"lo/hi must both hold 1 or 3 values, got {len(self.lo)}/{len(self.hi)}"
            )
        for lo, hi in zip(self.lo, self.hi):
            if not (math.isfinite(lo) and math.isfinite(hi)) or hi <= lo:
                raise ValueError(f"Range statistics require finite hi > lo, got [{lo}, {hi}]")
        for scale in self.scale:
            if not math.isfinite(scale) or scale <= 0:
                raise ValueError(f"Range statistics produced invalid scale {scale}")

    @property
    def _knee(self) -> float:
        return self.knee_width if self.quality == "high_quality" else 0.0

    @property
    def transform_lo(self) -> Tuple[float, ...]:
        return tuple(lo - self._knee * (hi - lo) for lo, hi in zip(self.lo, self.hi))

    @property
    def transform_hi(self) -> Tuple[float, ...]:
        return tuple(hi + self._knee * (hi - lo) for lo, hi in zip(self.lo, self.hi))

    @property
    def knee_fraction(self) -> float:
        """Knee width measured in normalized output units."""
        return self._knee / (1.0 + 2.0 * self._knee)

    @property
    def scale(self) -> Tuple[float, ...]:
        return tuple(1.0 / (hi - lo) for lo, hi in zip(self.transform_lo, self.transform_hi))

    @property
    def offset(self) -> Tuple[float, ...]:
        return tuple(-lo * s for lo, s in zip(self.transform_lo, self.scale))

    @property
    def scale_inv(self) -> Tuple[float, ...]:
        return tuple(1.0 / s for s in self.scale)

    @property
    def offset_inv(self) -> Tuple[float, ...]:
        return tuple(-o / s for o, s in zip(self.offset, self.scale))

    @property
    def inverse(self) -> InverseTransform:
        return InverseTransform(self.scale_inv, self.offset_inv)


def percentile_from_histogram(counts: np.ndarray, edges: np.ndarray, percentile: float) -> float:
    """Value at *percentile* (0-100) of the cumulative count, interpolated within a bin."""
    cdf = np.cumsum(counts, dtype=np.float64)
    total = cdf[-1]
    target = percentile / 100.0 * total
    k = int(np.searchsorted(cdf, target, side="left"))
    k = min(k, len(counts) - 1)
    before = cdf[k - 1] if k > 0 else 0.0
    in_bin = counts[k]
    frac = (target - before) / in_bin if in_bin > 0 else 0.0
    frac = min(max(frac, 0.0), 1.0)
    return float(edges[k] + frac * (edges[k + 1] - edges[k]))


class HistogramAnalyzer:
    """Compute `RangeStatistics` from an image plane or a whole mip chain."""

    def __init__(self, config: HistogramConfig):
        self.cfg = config

    def _channel_samples(self, source: Union[ImagePlane, MipChain]) -> Tuple[str, List[np.ndarray]]:
        if isinstance(source, MipChain):
            planes = [lvl.plane for lvl in source] if self.cfg.per_level else [source[0].plane]
        else:
            planes = [source]

        channel_mode = self.cfg.channel_mode
        if channel_mode == "per_channel" and planes[0].channels < 3:
            logger.warning(
                "Per-channel analysis needs 3 color channels, image has %d; "
                "falling back to combined.", planes[0].channels,
            )
            channel_mode = "combined"

        if channel_mode == "per_channel":
            samples = [
                np.concatenate([p.pixels[..., c].ravel() for p in planes]).astype(np.float64)
                for c in range(3)
            ]
        else:
            samples = [
                np.concatenate([luminance_bt709(p.pixels).ravel() for p in planes])
                .astype(np.float64)
            ]
        return channel_mode, [s[np.isfinite(s)] for s in samples]

    def _channel_range(self, values: np.ndarray) -> Tuple[float, float, float, float]:
        if values.size == 0:
            return 0.0, 0.0, 0.0, 0.0
        vmin = float(values.min())
        vmax = float(values.max())
        if vmax <= vmin:
            return vmin, vmin, vmin, vmax
        counts, edges = np.histogram(values, bins=self.cfg.bins, range=(vmin, vmax))
        lo = percentile_from_histogram(counts, edges, self.cfg.low_percentile)
        hi = percentile_from_histogram(counts, edges, self.cfg.high_percentile)
        return lo, hi, vmin, vmax

    def analyze(self, source: Union[ImagePlane, MipChain]) -> RangeStatistics:
        cfg = self.cfg
        channel_mode, samples = self._channel_samples(source)
        los, his, notes = [], [], []
        degenerate = False
        outside = 0
        total = 0

        for channel, values in enumerate(samples):
            lo, hi, vmin, vmax = self._channel_range(values)
            if hi - lo < cfg.min_range:
                degenerate = True
                message = (
                    f"Degenerate histogram range on channel {channel}: "
                    f"[{lo:.6g}, {hi:.6g}] clamped to span {cfg.min_range:g}"
                )
                warnings.warn(message, DegenerateRangeWarning, stacklevel=2)
                logger.warning(message)
                notes.append(message)
                hi = lo + cfg.min_range
            elif vmax > vmin and (hi - lo) / (vmax - vmin) > _NEAR_FULL_RANGE:
                notes.append(
                    f"Channel {channel} already spans {100.0 * (hi - lo) / (vmax - vmin):.1f}% "
                    "of its range; normalization gains little"
                )
            outside += int(np.count_nonzero((values < lo) | (values > hi)))
            total += values.size
            los.append(lo)
            his.append(hi)

        tail_fraction = outside / total if total else 0.0
        if tail_fraction > cfg.tail_threshold:
            notes.append(
                f"{100.0 * tail_fraction:.2f}% of samples fall outside [lo, hi] "
                f"(threshold {100.0 * cfg.tail_threshold:.2f}%)"
            )
        for note in notes:
            logger.debug(note)

        stats = RangeStatistics(
            lo=tuple(los),
            hi=tuple(his),
            channel_mode=channel_mode,
            quality=cfg.mode,
            knee_width=cfg.knee_width if cfg.mode == "high_quality" else 0.0,
            low_percentile=cfg.low_percentile,
            high_percentile=cfg.high_percentile,
            degenerate=degenerate,
            tail_fraction=tail_fraction,
            warnings=tuple(notes),
        )
        logger.info(
            "Histogram (%s, %s): lo=%s hi=%s scale=%s%s",
            channel_mode, cfg.mode,
            _fmt(stats.lo), _fmt(stats.hi), _fmt(stats.scale),
            " [degenerate]" if degenerate else "",
        )
        return stats


def _fmt(values) -> str:
    return "/".join(f"{v:.4g}" for v in values)
