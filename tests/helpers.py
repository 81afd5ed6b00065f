"""Builders for synthetic KTX2 files and test images used across the suite."""

import math
import struct

import numpy as np

from KtxForge.core import save_image
from KtxForge.phases.encode import EncoderResult, TextureEncoder

IDENTIFIER = bytes([0xAB, 0x4B, 0x54, 0x58, 0x20, 0x32, 0x30, 0xBB, 0x0D, 0x0A, 0x1A, 0x0A])


def save_test_png(path, width=64, height=64, channels=3):
    """Create a random test PNG image."""
    arr = np.random.rand(height, width, channels).astype(np.float32)
    save_image(arr, path)
    return arr


def encode_kv(pairs):
    """Serialize ``(key, value)`` pairs in the order given."""
    out = b""
    for key, value in pairs:
        body = key.encode("utf-8") + b"\x00" + value
        out += struct.pack("<I", len(body)) + body + b"\x00" * (-len(body) % 4)
    return out


def _align(pos, alignment):
    return -(-pos // alignment) * alignment


def build_ktx2(levels=None, kv=(), sgd=b"", supercompression=0, bytes_plane0=4,
               vk_format=37, dfd_size=44, width=16, height=16):
    """Return a structurally valid KTX2 file image.

    Levels are stored smallest-first after the DFD, KVD and SGD regions,
    each at the alignment a conforming writer would use.
    """
    if levels is None:
        levels = [bytes([0x10 + i]) * max(4, 64 >> (2 * i)) for i in range(3)]
    n = len(levels)
    index_end = 80 + 24 * n

    dfd = bytearray(dfd_size)
    struct.pack_into("<I", dfd, 0, dfd_size)
    if dfd_size > 20:
        dfd[20] = bytes_plane0
    dfd_offset = index_end
    kvd = encode_kv(kv)
    kvd_offset = dfd_offset + dfd_size if kvd else 0

    body = bytearray(dfd) + kvd
    pos = dfd_offset + len(body)
    sgd_offset = 0
    if sgd:
        sgd_offset = _align(pos, 8)
        body += b"\x00" * (sgd_offset - pos) + sgd
        pos = sgd_offset + len(sgd)

    alignment = 1 if supercompression else math.lcm(max(1, bytes_plane0), 4)
    offsets = [0] * n
    for index in reversed(range(n)):
        start = _align(pos, alignment)
        body += b"\x00" * (start - pos) + levels[index]
        offsets[index] = start
        pos = start + len(levels[index])

    header = struct.pack(
        "<12s9I4I2Q", IDENTIFIER,
        vk_format, 1, width, height, 0, 0, 1, n, supercompression,
        dfd_offset, dfd_size, kvd_offset, len(kvd), sgd_offset, len(sgd),
    )
    index = b"".join(
        struct.pack("<3Q", offsets[i], len(levels[i]), len(levels[i])) for i in range(n)
    )
    return header + index + bytes(body)


def write_ktx2(path, **kwargs):
    data = build_ktx2(**kwargs)
    with open(path, "wb") as f:
        f.write(data)
    return data


class FakeEncoder(TextureEncoder):
    """Stand-in for ``ktx create`` that writes one synthetic level per input."""

    def __init__(self, fail_with=None, levels_when_generating=4):
        self.calls = []
        self.fail_with = fail_with
        self.levels_when_generating = levels_when_generating

    def encode(self, input_paths, output_path, settings, cancel_event=None):
        self.calls.append((list(input_paths), output_path, settings))
        if self.fail_with is not None:
            raise self.fail_with
        count = len(input_paths)
        if settings.generate_mipmaps:
            count = self.levels_when_generating
        levels = [bytes([0x40 + i]) * 16 for i in range(count)]
        write_ktx2(output_path, levels=levels, kv=[("KTXwriter", b"fake\x00")],
                   bytes_plane0=16)
        return EncoderResult(exit_code=0, duration=0.0, output_path=output_path,
                             command=["ktx", "create"])
