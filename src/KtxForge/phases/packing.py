"""Pack single-channel material maps into one RGBA mip chain.

Layouts:

    og    RGB = occlusion, A = gloss
    ogm   R = occlusion, G = gloss, B = metallic, A = 1
    ogmh  R = occlusion, G = gloss, B = metallic, A = height

Every source gets its own chain built with its texture type's profile
(box/binary for metallic, energy-preserving for gloss, ...) and its own
post-processing: AO darkening on occlusion, Toksvig on gloss. The chains
are then interleaved level by level.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from ..config import PipelineConfig, TextureType
from ..core import ImagePlane, InvalidDimensionError, MipChain, MipLevel, load_image
from ..core.classify import find_normal_map
from .ao import AOProcessor
from .mipmap import MipChainBuilder, profile_for
from .toksvig import ToksvigCorrector

logger = logging.getLogger("texture_pipeline.packing")


class PackingMode(Enum):
    """Enumerate supported channel layouts."""

    OG = "og"
    OGM = "ogm"
    OGMH = "ogmh"


REQUIRED_CHANNELS = {
    PackingMode.OG: ("ao", "gloss"),
    PackingMode.OGM: ("ao", "gloss", "metallic"),
    PackingMode.OGMH: ("ao", "gloss", "metallic", "height"),
}

_CHANNEL_TYPES = {
    "ao": TextureType.AO,
    "gloss": TextureType.GLOSS,
    "metallic": TextureType.METALNESS,
    "height": TextureType.HEIGHT,
}


def recommend_mode(sources: Dict[str, str]) -> Optional[PackingMode]:
    """Widest layout whose channels are all present, or None."""
    for mode in (PackingMode.OGMH, PackingMode.OGM, PackingMode.OG):
        if all(channel in sources for channel in REQUIRED_CHANNELS[mode]):
            return mode
    return None


@dataclass
class PackingResult:
    mode: PackingMode
    chain: MipChain
    sources: Dict[str, str]
    ao_levels: List[int] = field(default_factory=list)
    toksvig_levels: List[int] = field(default_factory=list)
    normal_map_path: Optional[str] = None


class ChannelPacker:
    """Build and interleave per-channel mip chains."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    def resolve_mode(self, sources: Dict[str, str],
                     mode: Optional[str] = None) -> PackingMode:
        requested = mode or self.config.packing.mode
        if requested == "auto":
            resolved = recommend_mode(sources)
            if resolved is None:
                raise ValueError(
                    "Channel packing needs at least occlusion and gloss maps, "
                    f"found: {sorted(sources) or 'none'}"
                )
            return resolved
        resolved = PackingMode(requested)
        missing = [c for c in REQUIRED_CHANNELS[resolved] if c not in sources]
        if missing:
            raise ValueError(
                f"Packing mode '{resolved.value}' is missing channel map(s): {missing}"
            )
        return resolved

    def pack(self, sources: Dict[str, str], mode: Optional[str] = None,
             normal_path: Optional[str] = None) -> PackingResult:
        """Return the packed RGBA chain for *sources* (channel name -> path)."""
        resolved = self.resolve_mode(sources, mode)
        channels = REQUIRED_CHANNELS[resolved]
        result = PackingResult(resolved, MipChain([]), {c: sources[c] for c in channels})
        logger.info("Packing %s: %s", resolved.value.upper(),
                    ", ".join(f"{c}={result.sources[c]}" for c in channels))

        chains = {c: self._channel_chain(c, result.sources[c], normal_path, result)
                  for c in channels}
        base_size = chains["ao"][0].plane.size
        for channel, chain in chains.items():
            if chain[0].plane.size != base_size:
                raise InvalidDimensionError(
                    f"Channel map '{channel}' does not match the occlusion map size",
                    stage="packing", path=result.sources[channel],
                    expected=base_size, actual=chain[0].plane.size,
                )

        for index in range(len(chains["ao"])):
            planes = {c: chains[c][index].plane.pixels[..., 0] for c in channels}
            result.chain.levels.append(MipLevel(index, ImagePlane(
                self._interleave(resolved, planes), "linear"
            )))
        result.chain.validate()
        return result

    @staticmethod
    def _interleave(mode: PackingMode, planes: Dict[str, np.ndarray]) -> np.ndarray:
        ao = planes["ao"]
        one = np.ones_like(ao)
        if mode == PackingMode.OG:
            layers = [ao, ao, ao, planes["gloss"]]
        else:
            layers = [ao, planes["gloss"], planes["metallic"], planes.get("height", one)]
        return np.stack(layers, axis=-1).astype(np.float32)

    def _channel_chain(self, channel: str, path: str, normal_path: Optional[str],
                       result: PackingResult) -> MipChain:
        cfg = self.config
        pixels = load_image(path, cfg.max_image_pixels)
        plane = ImagePlane(pixels[..., :1], "linear")
        tex_type = _CHANNEL_TYPES[channel]
        chain = MipChainBuilder(profile_for(tex_type, cfg.mipmap)).build(plane)

        if channel == "ao":
            result.ao_levels = AOProcessor(cfg.ao, mode=cfg.packing.ao_mode).apply(chain)
        elif channel == "gloss" and cfg.packing.toksvig_gloss:
            self._toksvig_gloss(chain, path, normal_path, result)
        return chain

    def _toksvig_gloss(self, chain: MipChain, gloss_path: str,
                       normal_path: Optional[str], result: PackingResult):
        cfg = self.config
        normal_path = (normal_path or cfg.toksvig.normal_map_path
                       or find_normal_map(gloss_path, cfg.packing.validate_dimensions))
        if not normal_path:
            logger.warning("No normal map found for %s; gloss packed without Toksvig",
                           gloss_path)
            return
        normal_plane = ImagePlane(load_image(normal_path, cfg.max_image_pixels), "linear")
        if normal_plane.size != chain[0].plane.size:
            logger.warning("Toksvig skipped: normal map %s is %dx%d, gloss is %dx%d",
                           normal_path, *normal_plane.size, *chain[0].plane.size)
            return
        normal_chain = MipChainBuilder(
            profile_for(TextureType.NORMAL, cfg.mipmap)
        ).build_unnormalized_normals(normal_plane)
        result.toksvig_levels = ToksvigCorrector(cfg.toksvig, is_gloss=True).apply(
            chain, normal_chain
        )
        result.normal_map_path = normal_path
