"""Serialize range-recovery parameters into the TLV metadata block.

The block is what a runtime decoder reads back from the ``pc.meta`` KTX2
key: the inverse transform (half precision), the percentile parameters
that produced it, and optionally the normal-map channel layout.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..core import MalformedContainerError, NormalLayout, TlvReader, TlvType, TlvWriter
from ..core.tlv import Quantization, pack_halves, unpack_halves
from .histogram import InverseTransform, RangeStatistics

logger = logging.getLogger("texture_pipeline.metadata")

FORMAT_VERSION = 1
_QUALITY_FLAGS = {"off": 0, "fast": 1, "high_quality": 2}
_FLAGS_QUALITY = {v: k for k, v in _QUALITY_FLAGS.items()}


def histogram_flags(quantization: Quantization = Quantization.HALF16) -> int:
    """Version in bits [7:4], quantization in bits [3:2]."""
    return (FORMAT_VERSION << 4) | (int(quantization) << 2)


@dataclass(frozen=True)
class MetadataBlock:
    """Decoded form of a metadata TLV block."""

    inverse: Optional[InverseTransform] = None
    channel_mode: Optional[str] = None
    quality: Optional[str] = None
    low_percentile: Optional[float] = None
    high_percentile: Optional[float] = None
    knee_width: Optional[float] = None
    normal_layout: Optional[NormalLayout] = None
    version: int = FORMAT_VERSION


class MetadataEncoder:
    """Build the deterministic TLV block for one conversion."""

    def encode(self, inverse: Optional[InverseTransform] = None,
               stats: Optional[RangeStatistics] = None,
               normal_layout: Optional[NormalLayout] = None) -> bytes:
        writer = TlvWriter()
        if inverse is not None:
            count = len(inverse.scale_inv)
            if count == 1:
                writer.write(
                    TlvType.HIST_SCALAR, histogram_flags(),
                    pack_halves([inverse.scale_inv[0], inverse.offset_inv[0]]),
                )
            elif count == 3:
                writer.write(
                    TlvType.HIST_PER_CHANNEL_3, histogram_flags(),
                    pack_halves(list(inverse.scale_inv) + list(inverse.offset_inv)),
                )
            else:
                raise ValueError(f"Inverse transform must have 1 or 3 channels, got {count}")
        if stats is not None and stats.quality in _QUALITY_FLAGS and stats.quality != "off":
            writer.write(
                TlvType.HIST_PARAMS, _QUALITY_FLAGS[stats.quality],
                pack_halves([stats.low_percentile, stats.high_percentile, stats.knee_width]),
            )
        if normal_layout is not None and normal_layout != NormalLayout.NONE:
            writer.write(TlvType.NORMAL_LAYOUT, int(normal_layout))
        block = writer.to_bytes()
        logger.debug("Encoded %d-byte metadata block", len(block))
        return block


def _expect_length(record, expected: int):
    if len(record.payload) != expected:
        raise MalformedContainerError(
            f"TLV record 0x{record.type:02X} has wrong payload size",
            stage="metadata", expected=expected, actual=len(record.payload),
        )


def decode_metadata(data: bytes) -> MetadataBlock:
    """Parse a metadata block; unknown record types are skipped."""
    fields = {}
    for record in TlvReader(data):
        if record.type == TlvType.HIST_SCALAR:
            _expect_length(record, 4)
            scale, offset = unpack_halves(record.payload)
            fields.update(inverse=InverseTransform((scale,), (offset,)),
                          channel_mode="combined", version=record.flags >> 4)
        elif record.type == TlvType.HIST_PER_CHANNEL_3:
            _expect_length(record, 12)
            halves = unpack_halves(record.payload)
            fields.update(inverse=InverseTransform(tuple(halves[:3]), tuple(halves[3:])),
                          channel_mode="per_channel", version=record.flags >> 4)
        elif record.type == TlvType.HIST_PARAMS:
            _expect_length(record, 6)
            low, high, knee = unpack_halves(record.payload)
            fields.update(quality=_FLAGS_QUALITY.get(record.flags & 0x0F, "off"),
                          low_percentile=low, high_percentile=high, knee_width=knee)
        elif record.type == TlvType.NORMAL_LAYOUT:
            _expect_length(record, 0)
            try:
                fields["normal_layout"] = NormalLayout(record.flags)
            except ValueError:
                raise MalformedContainerError(
                    "Unknown normal layout", stage="metadata",
                    expected=[int(v) for v in NormalLayout], actual=record.flags,
                ) from None
        else:
            logger.debug("Skipping unknown TLV record type 0x%02X", record.type)
    return MetadataBlock(**fields)
