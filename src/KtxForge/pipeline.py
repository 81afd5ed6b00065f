"""Run one texture conversion job end-to-end.

`TextureConverter` drives the stages strictly in order:

    load -> mipmap -> toksvig -> histogram -> normalize -> metadata
         -> intermediates -> encode -> inject

Each stage consumes the complete output of the previous one. With the
automatic mip policy (``mipmap.enabled = False``) the chain, Toksvig and
range stages are skipped and the external tool generates the mips.

`TextureConverter.convert_packed` replaces load/mipmap/toksvig with a
`packing` stage that builds one chain per material map and interleaves
them; the remaining stages are shared.
"""

import logging
import os
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from uuid import uuid4

import numpy as np

from .config import PipelineConfig, TextureType
from .core import (
    ConversionCancelledError, ImagePlane, IOFailureError, Ktx2Container, MipChain,
    MipLevel, NormalLayout, TextureConversionError, load_image, save_image,
)
from .core.classify import (
    classify_texture, detect_channel_sources, find_normal_map, looks_like_normal_map,
)
from .phases.ao import AOProcessor
from .phases.encode import EncoderResult, EncoderSettings, KtxCreateEncoder, TextureEncoder
from .phases.histogram import HistogramAnalyzer, InverseTransform, RangeStatistics
from .phases.inject import MetadataInjector, move_atomic
from .phases.metadata import MetadataEncoder
from .phases.mipmap import MipChainBuilder, profile_for
from .phases.normalize import RangeNormalizer
from .phases.packing import ChannelPacker
from .phases.toksvig import ToksvigCorrector

logger = logging.getLogger("texture_pipeline.pipeline")

_ENCODED_CONTAINER = "encoded.ktx2"


@dataclass
class ConversionResult:
    """Summary of a finished conversion job."""

    input_path: str
    output_path: str
    texture_type: str = TextureType.UNKNOWN.value
    mip_policy: str = "manual"
    success: bool = False
    mip_levels: int = 0
    duration: float = 0.0
    toksvig_applied: bool = False
    toksvig_levels: List[int] = field(default_factory=list)
    normal_map_path: Optional[str] = None
    statistics: Optional[RangeStatistics] = None
    inverse: Optional[InverseTransform] = None
    degenerate: bool = False
    metadata_size: int = 0
    scratch_dir: Optional[str] = None
    encoder_result: Optional[EncoderResult] = None
    ao_levels: List[int] = field(default_factory=list)
    packing_mode: Optional[str] = None
    channel_sources: Dict[str, str] = field(default_factory=dict)


def _to_rgba(pixels: np.ndarray) -> np.ndarray:
    """Expand 1-4 channel data to RGBA for R8G8B8A8 encoder input."""
    h, w, c = pixels.shape
    alpha = np.ones((h, w, 1), dtype=np.float32)
    if c == 1:
        return np.concatenate([pixels, pixels, pixels, alpha], axis=-1)
    if c == 2:
        lum = pixels[..., :1]
        return np.concatenate([lum, lum, lum, pixels[..., 1:2]], axis=-1)
    if c == 3:
        return np.concatenate([pixels, alpha], axis=-1)
    return pixels[..., :4]


class TextureConverter:
    """Convert one source texture into a KTX2 container with range metadata."""

    def __init__(self, config: PipelineConfig, encoder: Optional[TextureEncoder] = None):
        self.config = config
        self.encoder = encoder or KtxCreateEncoder(config.compression.tool_path)
        self._cancel_event = threading.Event()

    def request_cancel(self):
        """Ask a running conversion to stop at the next stage boundary."""
        self._cancel_event.set()

    def _cancelled(self, cancel_event: Optional[threading.Event]) -> bool:
        return self._cancel_event.is_set() or (
            cancel_event is not None and cancel_event.is_set()
        )

    @staticmethod
    def _make_local_temp_dir(base_dir: str, prefix: str = "ktxforge_") -> str:
        """Create a unique scratch directory without relying on tempfile ACL quirks."""
        os.makedirs(base_dir, exist_ok=True)
        for _ in range(256):
            candidate = os.path.join(base_dir, f"{prefix}{uuid4().hex}")
            try:
                os.makedirs(candidate, exist_ok=False)
                return candidate
            except FileExistsError:
                continue
        raise IOFailureError("Unable to allocate scratch directory", stage="setup",
                             path=base_dir)

    @contextmanager
    def _stage(self, name: str, cancel_event=None, path: Optional[str] = None):
        if self._cancelled(cancel_event):
            raise ConversionCancelledError("Conversion cancelled", stage=name, path=path)
        started = time.monotonic()
        logger.debug("Stage '%s' started", name)
        try:
            yield
        except TextureConversionError as exc:
            raise exc.with_stage(name)
        except OSError as exc:
            raise IOFailureError(
                str(exc), stage=name, path=getattr(exc, "filename", None) or path
            ) from exc
        except ValueError as exc:
            raise TextureConversionError(str(exc), stage=name, path=path) from exc
        logger.debug("Stage '%s' finished in %.3fs", name, time.monotonic() - started)

    def _resolve_type(self, input_path: str,
                      texture_type: Union[TextureType, str, None]) -> TextureType:
        if texture_type is None:
            return classify_texture(input_path)
        if isinstance(texture_type, TextureType):
            return texture_type
        return TextureType(str(texture_type).lower())

    def convert(self, input_path: str, output_path: str,
                texture_type: Union[TextureType, str, None] = None,
                normal_path: Optional[str] = None,
                cancel_event: Optional[threading.Event] = None) -> ConversionResult:
        """Convert *input_path* to a KTX2 container at *output_path*.

        Raises a `TextureConversionError` subclass tagged with the failing
        stage; the scratch directory is kept on failure for diagnostics.
        """
        cfg = self.config
        tex_type = self._resolve_type(input_path, texture_type)
        manual = cfg.mipmap.enabled
        result = ConversionResult(
            input_path=input_path,
            output_path=output_path,
            texture_type=tex_type.value,
            mip_policy="manual" if manual else "automatic",
        )
        started = time.monotonic()
        scratch = self._make_local_temp_dir(cfg.scratch_dir)
        result.scratch_dir = scratch
        logger.info("Converting %s (%s, %s mips) -> %s",
                    input_path, tex_type.value, result.mip_policy, output_path)

        succeeded = False
        try:
            with self._stage("load", cancel_event, input_path):
                color_space = (
                    "encoded" if tex_type.value in cfg.compression.srgb_texture_types
                    else "linear"
                )
                plane = ImagePlane(load_image(input_path, cfg.max_image_pixels), color_space)
                if tex_type == TextureType.NORMAL and not looks_like_normal_map(plane.pixels):
                    logger.warning("%s is typed as a normal map but its channels do not "
                                   "look like tangent-space normals", input_path)

            stats = inverse = None
            if manual:
                chain = self._build_chain(plane, tex_type, input_path, normal_path,
                                          cancel_event, result)
                stats, inverse = self._analyze_range(chain, input_path, cancel_event, result)
            else:
                logger.info("Automatic mip policy: chain, Toksvig and range stages skipped")
                chain = MipChain([MipLevel(0, plane)])

            self._emit(chain, stats, inverse, tex_type, scratch, output_path,
                       cancel_event, result,
                       # Normalized data is no longer gamma-encoded color.
                       srgb=(plane.color_space == "encoded" and stats is None),
                       generate_mipmaps=not manual)
            succeeded = True
            result.success = True
        except TextureConversionError as exc:
            logger.error("Conversion of %s failed: %s", input_path, exc)
            raise
        finally:
            result.duration = time.monotonic() - started
            self._release_scratch(scratch, succeeded)

        logger.info("Converted %s: %d level(s) in %.2fs%s", input_path,
                    result.mip_levels, result.duration,
                    " [degenerate range]" if result.degenerate else "")
        return result

    def convert_packed(self, base_path: str, output_path: str,
                       sources: Optional[Dict[str, str]] = None,
                       mode: Optional[str] = None,
                       normal_path: Optional[str] = None,
                       cancel_event: Optional[threading.Event] = None) -> ConversionResult:
        """Pack a material's occlusion/gloss/metallic/height maps into one KTX2.

        *sources* maps channel names (``ao``, ``gloss``, ``metallic``,
        ``height``) to paths; maps not given are detected next to
        *base_path*. Packing always builds its own mips.
        """
        cfg = self.config
        result = ConversionResult(
            input_path=base_path,
            output_path=output_path,
            texture_type=TextureType.MASK.value,
        )
        started = time.monotonic()
        scratch = self._make_local_temp_dir(cfg.scratch_dir)
        result.scratch_dir = scratch
        logger.info("Packing channel maps of %s -> %s", base_path, output_path)

        succeeded = False
        try:
            with self._stage("packing", cancel_event, base_path):
                found = detect_channel_sources(base_path, cfg.packing.validate_dimensions)
                found.update(sources or {})
                packed = ChannelPacker(cfg).pack(found, mode, normal_path)
            chain = packed.chain
            result.packing_mode = packed.mode.value
            result.channel_sources = packed.sources
            result.ao_levels = packed.ao_levels
            result.toksvig_levels = packed.toksvig_levels
            result.toksvig_applied = bool(packed.toksvig_levels)
            result.normal_map_path = packed.normal_map_path
            result.mip_levels = len(chain)

            stats, inverse = self._analyze_range(chain, base_path, cancel_event, result)
            self._emit(chain, stats, inverse, TextureType.MASK, scratch, output_path,
                       cancel_event, result, srgb=False, generate_mipmaps=False)
            succeeded = True
            result.success = True
        except TextureConversionError as exc:
            logger.error("Packing of %s failed: %s", base_path, exc)
            raise
        finally:
            result.duration = time.monotonic() - started
            self._release_scratch(scratch, succeeded)

        logger.info("Packed %s (%s): %d level(s) in %.2fs", base_path,
                    result.packing_mode.upper(), result.mip_levels, result.duration)
        return result

    def _analyze_range(self, chain: MipChain, path: str, cancel_event,
                       result: ConversionResult):
        hist_cfg = self.config.histogram
        if hist_cfg.mode == "off":
            return None, None
        with self._stage("histogram", cancel_event, path):
            stats = HistogramAnalyzer(hist_cfg).analyze(chain)
        with self._stage("normalize", cancel_event, path):
            inverse = RangeNormalizer().normalize(chain, stats)
        result.statistics = stats
        result.inverse = inverse
        result.degenerate = stats.degenerate
        return stats, inverse

    def _emit(self, chain: MipChain, stats, inverse, tex_type: TextureType,
              scratch: str, output_path: str, cancel_event, result: ConversionResult,
              srgb: bool, generate_mipmaps: bool):
        """Run metadata -> intermediates -> encode -> inject for a finished chain."""
        cfg = self.config
        with self._stage("metadata", cancel_event):
            block = b""
            if cfg.metadata.enabled:
                block = MetadataEncoder().encode(inverse, stats, self._normal_layout(tex_type))
            result.metadata_size = len(block)

        with self._stage("intermediates", cancel_event, scratch):
            level_paths = self._write_intermediates(chain, scratch)

        with self._stage("encode", cancel_event, output_path):
            settings = EncoderSettings.from_config(
                cfg.compression,
                srgb=srgb,
                generate_mipmaps=generate_mipmaps,
                mipmap_filter=cfg.mipmap.auto_mipmap_filter,
                normal_mode=tex_type == TextureType.NORMAL,
            )
            encoded_path = os.path.join(scratch, _ENCODED_CONTAINER)
            result.encoder_result = self.encoder.encode(
                level_paths, encoded_path, settings, cancel_event
            )

        with self._stage("inject", cancel_event, output_path):
            if block:
                container = MetadataInjector(cfg.metadata.key).inject(
                    encoded_path, block, output_path
                )
            else:
                container = Ktx2Container.read(encoded_path)
                move_atomic(encoded_path, output_path)
            result.mip_levels = container.header.level_entries

    def _build_chain(self, plane: ImagePlane, tex_type: TextureType, input_path: str,
                     normal_path: Optional[str], cancel_event,
                     result: ConversionResult) -> MipChain:
        cfg = self.config
        options = profile_for(tex_type, cfg.mipmap)
        builder = MipChainBuilder(options)
        with self._stage("mipmap", cancel_event, input_path):
            chain = builder.build(plane)
        result.mip_levels = len(chain)

        if tex_type == TextureType.AO and cfg.ao.mode != "none":
            with self._stage("ao", cancel_event, input_path):
                result.ao_levels = AOProcessor(cfg.ao).apply(chain)

        if not (cfg.toksvig.enabled and tex_type in (TextureType.ROUGHNESS, TextureType.GLOSS)):
            return chain

        with self._stage("toksvig", cancel_event, normal_path):
            normal_path = (
                normal_path or cfg.toksvig.normal_map_path or find_normal_map(input_path)
            )
            if not normal_path:
                logger.warning("Toksvig enabled but no normal map found for %s; skipping",
                               input_path)
                return chain
            normal_plane = ImagePlane(load_image(normal_path, cfg.max_image_pixels), "linear")
            if normal_plane.size != plane.size:
                logger.warning(
                    "Toksvig skipped: normal map %s is %dx%d, roughness is %dx%d",
                    normal_path, *normal_plane.size, *plane.size,
                )
                return chain
            normal_builder = MipChainBuilder(profile_for(TextureType.NORMAL, cfg.mipmap))
            normal_chain = normal_builder.build_unnormalized_normals(normal_plane)
            corrected = ToksvigCorrector(
                cfg.toksvig, is_gloss=tex_type == TextureType.GLOSS
            ).apply(chain, normal_chain)
            result.normal_map_path = normal_path
            result.toksvig_levels = corrected
            result.toksvig_applied = bool(corrected)
        return chain

    def _normal_layout(self, tex_type: TextureType) -> Optional[NormalLayout]:
        if tex_type != TextureType.NORMAL or not self.config.metadata.write_normal_layout:
            return None
        if self.config.compression.encode == "uastc":
            return NormalLayout.RG
        return NormalLayout.RGBxAy

    def _write_intermediates(self, chain: MipChain, scratch: str) -> List[str]:
        bits = self.config.compression.intermediate_bits
        paths = []
        for level in chain:
            path = os.path.join(scratch, f"level_{level.index:02d}.png")
            save_image(_to_rgba(level.plane.pixels), path, bits=bits)
            paths.append(path)
        logger.debug("Wrote %d intermediate level(s) to %s", len(paths), scratch)
        return paths

    def _release_scratch(self, scratch: str, succeeded: bool):
        if succeeded and not self.config.keep_scratch:
            shutil.rmtree(scratch, ignore_errors=True)
            logger.debug("Removed scratch directory %s", scratch)
        else:
            logger.info("Scratch directory retained for diagnostics: %s", scratch)
