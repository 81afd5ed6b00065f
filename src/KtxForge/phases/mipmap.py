"""Build mip chains with gamma-correct, type-aware resampling.

Each level is filtered from the previous one, so every step is a 2:1
reduction whose kernel footprint stays small. Edges default to mirror
extension, which keeps the mean of every level equal to the mean of
level 0 for the symmetric kernels in `core.kernels`.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

import numpy as np
from scipy.ndimage import gaussian_filter

from ..config import MipmapConfig, TextureType
from ..core import (
    ImagePlane, MipChain, MipLevel, gamma_to_linear, get_kernel,
    linear_to_gamma, mip_dimensions, resample,
)
from ..core.kernels import WRAP_MODES

logger = logging.getLogger("texture_pipeline.mipmap")

CHANNEL_HANDLING = ("none", "vector", "binary")

_BLUR_MODES = {"mirror": "reflect", "clamp": "nearest", "repeat": "wrap"}


@dataclass(frozen=True)
class MipBuildOptions:
    """Per-texture resampling options.

    ``blur_radius`` applies a gaussian prefilter (sigma in pixels) to the
    parent level before each reduction. ``min_mip_size`` stops the chain at
    the first level whose sides are both <= that size; with
    ``include_last_level`` off that final level is dropped.
    """

    kernel: str = "kaiser"
    gamma_correct: bool = False
    gamma: float = 2.2
    channel_handling: str = "none"
    energy_preserving: bool = False
    is_gloss: bool = False
    wrap_mode: str = "mirror"
    max_workers: int = 1
    blur_radius: float = 0.0
    min_mip_size: int = 1
    include_last_level: bool = True

    def __post_init__(self):
        if self.channel_handling not in CHANNEL_HANDLING:
            raise ValueError(
                f"channel_handling must be one of {CHANNEL_HANDLING}, "
                f"got '{self.channel_handling}'"
            )
        if self.gamma <= 0:
            raise ValueError(f"gamma must be > 0, got {self.gamma}")
        if self.wrap_mode not in WRAP_MODES:
            raise ValueError(
                f"wrap_mode must be one of {WRAP_MODES}, got '{self.wrap_mode}'"
            )
        if self.blur_radius < 0:
            raise ValueError(f"blur_radius must be >= 0, got {self.blur_radius}")
        if self.min_mip_size < 1:
            raise ValueError(f"min_mip_size must be >= 1, got {self.min_mip_size}")


# Defaults per texture type; mipmap.kernel/gamma_correct in the config
# override the kernel and the gamma flag.
_PROFILES = {
    TextureType.ALBEDO: MipBuildOptions(kernel="kaiser", gamma_correct=True),
    TextureType.EMISSIVE: MipBuildOptions(kernel="kaiser", gamma_correct=True),
    TextureType.NORMAL: MipBuildOptions(kernel="kaiser", channel_handling="vector"),
    TextureType.METALNESS: MipBuildOptions(kernel="box", channel_handling="binary"),
    TextureType.MASK: MipBuildOptions(kernel="box", channel_handling="binary"),
    TextureType.OPACITY: MipBuildOptions(kernel="box", channel_handling="binary"),
    TextureType.ROUGHNESS: MipBuildOptions(kernel="kaiser", energy_preserving=True),
    TextureType.GLOSS: MipBuildOptions(
        kernel="kaiser", energy_preserving=True, is_gloss=True
    ),
}


def profile_for(tex_type: TextureType, cfg: Optional[MipmapConfig] = None) -> MipBuildOptions:
    """Resolve build options for *tex_type*, applying config overrides."""
    options = _PROFILES.get(tex_type, MipBuildOptions(kernel="kaiser"))
    if cfg is None:
        return options
    kernel = options.kernel if cfg.kernel == "auto" else cfg.kernel
    channel_handling = options.channel_handling
    if channel_handling == "vector" and not cfg.renormalize_normals:
        channel_handling = "none"
    return replace(
        options,
        kernel=kernel,
        gamma_correct=options.gamma_correct and cfg.gamma_correct,
        gamma=cfg.gamma,
        channel_handling=channel_handling,
        energy_preserving=options.energy_preserving and cfg.energy_preserving,
        wrap_mode=cfg.wrap_mode,
        max_workers=cfg.max_workers,
        blur_radius=cfg.blur_radius,
        min_mip_size=cfg.min_mip_size,
        include_last_level=cfg.include_last_level,
    )


def renormalize_decoded(decoded: np.ndarray) -> np.ndarray:
    length = np.sqrt(np.sum(decoded ** 2, axis=-1, keepdims=True))
    length = np.maximum(length, 1e-8)
    return (decoded / length).astype(np.float32)


def chain_dimensions(width: int, height: int, min_mip_size: int = 1,
                     include_last_level: bool = True) -> List[Tuple[int, int]]:
    """Floor-halving dimensions, truncated at *min_mip_size*.

    Level 0 is always kept, even when it is already below the minimum.
    """
    dims = mip_dimensions(width, height)
    if min_mip_size > 1:
        for position, (w, h) in enumerate(dims):
            if w <= min_mip_size and h <= min_mip_size:
                dims = dims[:position + 1]
                break
    if not include_last_level and len(dims) > 1:
        dims = dims[:-1]
    return dims


class MipChainBuilder:
    """Produce a `MipChain` from a level-0 `ImagePlane`."""

    def __init__(self, options: MipBuildOptions = None):
        self.options = options or MipBuildOptions()
        kernel_name = "box" if self.options.channel_handling == "binary" else self.options.kernel
        self.kernel = get_kernel(kernel_name)

    def build(self, source: ImagePlane) -> MipChain:
        opts = self.options
        dims = chain_dimensions(source.width, source.height,
                                opts.min_mip_size, opts.include_last_level)
        logger.debug(
            "Building %d mip levels from %dx%d (kernel=%s, handling=%s, gamma=%s, wrap=%s)",
            len(dims), source.width, source.height, self.kernel.name,
            opts.channel_handling,
            opts.gamma if self._uses_gamma(source) else "off",
            opts.wrap_mode,
        )
        chain = MipChain([MipLevel(0, source)])
        if len(dims) == 1:
            return chain

        pool = None
        if opts.max_workers > 1 and source.channels > 1:
            pool = ThreadPoolExecutor(max_workers=min(opts.max_workers, source.channels))
        try:
            previous = source
            for index, (width, height) in enumerate(dims[1:], start=1):
                previous = self._reduce(previous, width, height, pool)
                chain.levels.append(MipLevel(index, previous))
        finally:
            if pool is not None:
                pool.shutdown()
        chain.validate()
        return chain

    def _uses_gamma(self, source: ImagePlane) -> bool:
        return (
            self.options.gamma_correct
            and source.color_space == "encoded"
            and self.options.channel_handling == "none"
        )

    def _color_channels(self, channels: int) -> int:
        # The 4th channel is alpha and is always filtered linearly.
        return 3 if channels >= 4 else channels

    def _to_filter_space(self, source: ImagePlane) -> np.ndarray:
        pixels = np.array(source.pixels, dtype=np.float32)
        opts = self.options
        if self._uses_gamma(source):
            n = self._color_channels(pixels.shape[-1])
            pixels[..., :n] = gamma_to_linear(pixels[..., :n], opts.gamma)
        elif opts.channel_handling == "vector":
            n = min(3, pixels.shape[-1])
            pixels[..., :n] = pixels[..., :n] * 2.0 - 1.0
        elif opts.energy_preserving:
            n = self._color_channels(pixels.shape[-1])
            roughness = np.clip(pixels[..., :n], 0.0, 1.0)
            if opts.is_gloss:
                roughness = 1.0 - roughness
            # Average GGX alpha (r^2) rather than perceptual roughness.
            pixels[..., :n] = roughness * roughness
        return pixels

    def _from_filter_space(self, pixels: np.ndarray, source: ImagePlane) -> np.ndarray:
        opts = self.options
        if self._uses_gamma(source):
            n = self._color_channels(pixels.shape[-1])
            pixels[..., :n] = linear_to_gamma(pixels[..., :n], opts.gamma)
        elif opts.channel_handling == "vector":
            n = min(3, pixels.shape[-1])
            if n == 3:
                pixels[..., :3] = renormalize_decoded(pixels[..., :3])
            pixels[..., :n] = pixels[..., :n] * 0.5 + 0.5
        elif opts.energy_preserving:
            n = self._color_channels(pixels.shape[-1])
            roughness = np.sqrt(np.clip(pixels[..., :n], 0.0, 1.0))
            pixels[..., :n] = 1.0 - roughness if opts.is_gloss else roughness
        return pixels

    def _blur(self, work: np.ndarray) -> np.ndarray:
        radius = self.options.blur_radius
        if radius <= 0:
            return work
        mode = _BLUR_MODES[self.options.wrap_mode]
        return gaussian_filter(work, sigma=(radius, radius, 0), mode=mode).astype(np.float32)

    def _reduce(self, parent: ImagePlane, width: int, height: int,
                pool: Optional[ThreadPoolExecutor]) -> ImagePlane:
        work = self._blur(self._to_filter_space(parent))
        wrap = self.options.wrap_mode
        if pool is None:
            filtered = resample(work, width, height, self.kernel, wrap)
        else:
            # Channels are independent under resampling.
            parts = pool.map(
                lambda c: resample(work[..., c:c + 1], width, height, self.kernel, wrap),
                range(work.shape[-1]),
            )
            filtered = np.concatenate(list(parts), axis=-1)
        filtered = self._from_filter_space(filtered, parent)
        return ImagePlane(filtered, parent.color_space)

    def build_unnormalized_normals(self, source: ImagePlane) -> MipChain:
        """Filter a normal map in vector space without renormalizing.

        The shortened vectors are what the Toksvig stage measures.
        """
        raw = MipChainBuilder(replace(self.options, channel_handling="none",
                                      gamma_correct=False, energy_preserving=False))
        return raw.build(source)
