"""KTX2 container intermediate representation.

A parsed `Ktx2Container` keeps the raw file bytes together with the decoded
header, level index and key/value entries (with their original offsets),
so a rewrite is computed from explicit fields instead of ad-hoc byte
arithmetic, and every offset invariant can be checked independently.

File layout handled here::

    0   identifier (12 bytes)
    12  vkFormat, typeSize, pixelWidth, pixelHeight, pixelDepth,
        layerCount, faceCount, levelCount, supercompressionScheme (u32 each)
    48  dfdByteOffset, dfdByteLength, kvdByteOffset, kvdByteLength (u32)
    64  sgdByteOffset, sgdByteLength (u64)
    80  level index: max(1, levelCount) x (byteOffset, byteLength,
        uncompressedByteLength) (u64 each)
"""

import logging
import math
import struct
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from .errors import AlignmentError, MalformedContainerError
from .tlv import pad4

logger = logging.getLogger("texture_pipeline.ktx2")

KTX2_IDENTIFIER = bytes(
    [0xAB, 0x4B, 0x54, 0x58, 0x20, 0x32, 0x30, 0xBB, 0x0D, 0x0A, 0x1A, 0x0A]
)
_HEADER = struct.Struct("<12s9I4I2Q")
_LEVEL = struct.Struct("<3Q")
_U32 = struct.Struct("<I")
LEVEL_INDEX_OFFSET = _HEADER.size  # 80
_U32_MAX = 0xFFFFFFFF


@dataclass
class Ktx2Header:
    vk_format: int = 0
    type_size: int = 1
    pixel_width: int = 1
    pixel_height: int = 1
    pixel_depth: int = 0
    layer_count: int = 0
    face_count: int = 1
    level_count: int = 1
    supercompression_scheme: int = 0
    dfd_offset: int = 0
    dfd_length: int = 0
    kvd_offset: int = 0
    kvd_length: int = 0
    sgd_offset: int = 0
    sgd_length: int = 0

    @property
    def level_entries(self) -> int:
        """Number of level index rows (a levelCount of 0 still stores one)."""
        return max(1, self.level_count)

    @property
    def level_index_end(self) -> int:
        return LEVEL_INDEX_OFFSET + self.level_entries * _LEVEL.size

    @classmethod
    def unpack(cls, data: bytes) -> "Ktx2Header":
        fields = _HEADER.unpack_from(data, 0)
        return cls(*fields[1:])

    def pack(self) -> bytes:
        return _HEADER.pack(
            KTX2_IDENTIFIER,
            self.vk_format, self.type_size, self.pixel_width, self.pixel_height,
            self.pixel_depth, self.layer_count, self.face_count, self.level_count,
            self.supercompression_scheme,
            self.dfd_offset, self.dfd_length, self.kvd_offset, self.kvd_length,
            self.sgd_offset, self.sgd_length,
        )


@dataclass(frozen=True)
class LevelIndexEntry:
    byte_offset: int
    byte_length: int
    uncompressed_byte_length: int

    @property
    def end(self) -> int:
        return self.byte_offset + self.byte_length


@dataclass(frozen=True)
class KeyValueEntry:
    key: str
    value: bytes
    offset: int = -1  # position in the source file, -1 when not yet written

    def encode(self) -> bytes:
        payload = self.key.encode("utf-8") + b"\x00" + bytes(self.value)
        return _U32.pack(len(payload)) + payload + b"\x00" * pad4(len(payload))


def encode_key_value_data(entries: List[KeyValueEntry]) -> bytes:
    """Serialize entries sorted by key bytes, as KTX2 requires."""
    ordered = sorted(entries, key=lambda e: e.key.encode("utf-8"))
    return b"".join(entry.encode() for entry in ordered)


def parse_key_value_data(data: bytes, offset: int, length: int) -> List[KeyValueEntry]:
    entries = []
    pos = offset
    end = offset + length
    while end - pos >= _U32.size:
        (kv_length,) = _U32.unpack_from(data, pos)
        body_start = pos + _U32.size
        if kv_length == 0 or body_start + kv_length > end:
            raise MalformedContainerError(
                "Key/value entry overruns the key/value data region",
                stage="inject", expected=f"<= {end - body_start}", actual=kv_length,
            )
        body = data[body_start:body_start + kv_length]
        nul = body.find(b"\x00")
        if nul <= 0:
            raise MalformedContainerError(
                "Key/value entry key is empty or not NUL-terminated",
                stage="inject", actual=body[:32],
            )
        try:
            key = body[:nul].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedContainerError(
                f"Key/value entry key is not UTF-8: {exc}", stage="inject"
            ) from exc
        entries.append(KeyValueEntry(key, bytes(body[nul + 1:]), pos))
        # Some writers omit the padding after the final entry.
        pos = body_start + kv_length + pad4(kv_length)
    return entries


@dataclass
class Ktx2Container:
    header: Ktx2Header
    levels: List[LevelIndexEntry]
    kv_entries: List[KeyValueEntry] = field(default_factory=list)
    data: bytes = b""

    @classmethod
    def parse(cls, data: bytes, path: Optional[str] = None) -> "Ktx2Container":
        """Decode and validate a KTX2 file image."""
        data = bytes(data)
        if len(data) < LEVEL_INDEX_OFFSET:
            raise MalformedContainerError(
                "File is shorter than the KTX2 header", stage="inject", path=path,
                expected=f">= {LEVEL_INDEX_OFFSET} bytes", actual=len(data),
            )
        if data[:12] != KTX2_IDENTIFIER:
            raise MalformedContainerError(
                "KTX2 identifier or version mismatch", stage="inject", path=path,
                expected=KTX2_IDENTIFIER.hex(), actual=data[:12].hex(),
            )
        header = Ktx2Header.unpack(data)
        if header.level_index_end > len(data):
            raise MalformedContainerError(
                "Level index table is truncated", stage="inject", path=path,
                expected=f">= {header.level_index_end} bytes", actual=len(data),
            )
        levels = [
            LevelIndexEntry(*_LEVEL.unpack_from(data, LEVEL_INDEX_OFFSET + i * _LEVEL.size))
            for i in range(header.level_entries)
        ]
        container = cls(header, levels, [], data)
        container._check_regions(path)
        if header.kvd_length:
            container.kv_entries = parse_key_value_data(
                data, header.kvd_offset, header.kvd_length
            )
        container.check_level_layout(path)
        return container

    @classmethod
    def read(cls, path: str) -> "Ktx2Container":
        with open(path, "rb") as f:
            return cls.parse(f.read(), path=path)

    def _check_regions(self, path):
        h = self.header
        size = len(self.data)
        regions = (
            ("DFD", h.dfd_offset, h.dfd_length),
            ("KVD", h.kvd_offset, h.kvd_length),
            ("SGD", h.sgd_offset, h.sgd_length),
        )
        for name, offset, length in regions:
            if length == 0:
                continue
            if offset < h.level_index_end or offset + length > size:
                raise MalformedContainerError(
                    f"{name} region lies outside the file body", stage="inject",
                    path=path,
                    expected=f"[{h.level_index_end}, {size}]",
                    actual=f"[{offset}, {offset + length}]",
                )

    def check_level_layout(self, path: Optional[str] = None):
        """Verify level ranges lie inside the file and never overlap."""
        size = len(self.data)
        body_start = self.header.level_index_end
        spans: List[Tuple[int, int, int]] = []
        for index, level in enumerate(self.levels):
            if level.byte_length == 0:
                continue
            if level.byte_offset < body_start or level.end > size:
                raise MalformedContainerError(
                    f"Level {index} data lies outside the file body", stage="inject",
                    path=path,
                    expected=f"[{body_start}, {size}]",
                    actual=f"[{level.byte_offset}, {level.end}]",
                )
            spans.append((level.byte_offset, level.end, index))
        spans.sort()
        for (_, prev_end, prev_index), (start, _, index) in zip(spans, spans[1:]):
            if start < prev_end:
                raise MalformedContainerError(
                    f"Level {index} overlaps level {prev_index}", stage="inject",
                    path=path, expected=f">= {prev_end}", actual=start,
                )

    # Derived layout

    @property
    def key_values(self) -> Dict[str, bytes]:
        return {entry.key: entry.value for entry in self.kv_entries}

    def level_bytes(self, index: int) -> bytes:
        level = self.levels[index]
        return self.data[level.byte_offset:level.end]

    @property
    def texel_block_bytes(self) -> int:
        """``bytesPlane0`` of the first DFD block (0 for Basis Universal formats)."""
        h = self.header
        # dfdTotalSize (4) + descriptor block header (16) precedes bytesPlane0.
        if h.dfd_length < 24:
            return 0
        return self.data[h.dfd_offset + 20]

    @property
    def level_alignment(self) -> int:
        if self.header.supercompression_scheme != 0:
            return 1
        return math.lcm(max(1, self.texel_block_bytes), 4)

    @property
    def required_alignment(self) -> int:
        """Alignment every shift of post-KVD data must preserve."""
        sgd_alignment = 8 if self.header.sgd_length else 1
        return math.lcm(4, sgd_alignment, self.level_alignment)

    @property
    def kvd_span(self) -> Tuple[int, int]:
        """Return ``(start, end)`` of the key/value region; empty regions sit after the DFD."""
        h = self.header
        if h.kvd_length:
            return h.kvd_offset, h.kvd_offset + h.kvd_length
        if h.dfd_length:
            end = h.dfd_offset + h.dfd_length
        else:
            end = h.level_index_end
        return end, end

    # Rewrite

    def with_key_value(self, key: str, value: bytes) -> bytes:
        """Return a new file image with *key* set to *value*.

        The key/value region is re-serialized (sorted, existing *key*
        replaced) and everything that followed it is moved by a padded
        shift that preserves the alignment of SGD and level data.
        """
        h = self.header
        kvd_start, insertion_point = self.kvd_span
        if kvd_start % 4 or insertion_point % 4:
            raise AlignmentError(
                "Key/value region is not 4-byte aligned", stage="inject",
                expected="multiple of 4", actual=(kvd_start, insertion_point),
            )

        entries = [e for e in self.kv_entries if e.key != key]
        entries.append(KeyValueEntry(key, bytes(value)))
        new_kvd = encode_key_value_data(entries)

        alignment = self.required_alignment
        growth = len(new_kvd) - (insertion_point - kvd_start)
        shift = -(-growth // alignment) * alignment
        gap = shift - growth

        new_end = len(self.data) + shift
        if kvd_start + len(new_kvd) > _U32_MAX or (
                h.dfd_offset >= insertion_point and h.dfd_offset + shift > _U32_MAX):
            raise AlignmentError(
                "Shifted offsets no longer fit the 32-bit index fields",
                stage="inject", expected=f"<= {_U32_MAX}", actual=new_end,
            )

        def moved(offset: int) -> int:
            return offset + shift if offset >= insertion_point else offset

        new_header = replace(
            h,
            kvd_offset=kvd_start,
            kvd_length=len(new_kvd),
            dfd_offset=moved(h.dfd_offset) if h.dfd_length else h.dfd_offset,
            sgd_offset=moved(h.sgd_offset) if h.sgd_length else h.sgd_offset,
        )
        new_levels = [
            replace(level, byte_offset=moved(level.byte_offset)) if level.byte_length else level
            for level in self.levels
        ]
        self._check_shifted_alignment(new_header, new_levels)

        out = bytearray(new_header.pack())
        for level in new_levels:
            out += _LEVEL.pack(level.byte_offset, level.byte_length,
                               level.uncompressed_byte_length)
        out += self.data[h.level_index_end:kvd_start]
        out += new_kvd
        out += b"\x00" * gap
        out += self.data[insertion_point:]
        logger.debug(
            "Rewrote KVD: %d -> %d bytes, shift=%d (alignment %d), file %d -> %d bytes",
            insertion_point - kvd_start, len(new_kvd), shift, alignment,
            len(self.data), len(out),
        )
        return bytes(out)

    def _check_shifted_alignment(self, header: Ktx2Header, levels: List[LevelIndexEntry]):
        if header.sgd_length and self.header.sgd_offset % 8 == 0 and header.sgd_offset % 8:
            raise AlignmentError(
                "Supercompression global data lost its 8-byte alignment",
                stage="inject", expected="multiple of 8", actual=header.sgd_offset,
            )
        alignment = self.level_alignment
        for index, (old, new) in enumerate(zip(self.levels, levels)):
            if old.byte_offset % alignment == 0 and new.byte_offset % alignment:
                raise AlignmentError(
                    f"Level {index} lost its {alignment}-byte alignment",
                    stage="inject", expected=f"multiple of {alignment}",
                    actual=new.byte_offset,
                )


def read_key_value_data(path: str) -> Dict[str, bytes]:
    """Return the key/value entries of a KTX2 file as a dict."""
    return Ktx2Container.read(path).key_values
