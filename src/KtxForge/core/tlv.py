"""Tag-length-value record codec used for the KTX2 metadata payload.

Record layout (little-endian)::

    type:u8  flags:u8  length:u16  payload[length]  zero padding to 4 bytes

The padding is not counted in ``length``.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, List, Sequence

import numpy as np

from .errors import MalformedContainerError, RangeOverflowError

_RECORD_HEADER = struct.Struct("<BBH")
MAX_PAYLOAD = 0xFFFF
HALF_MAX = 65504.0


class TlvType(IntEnum):
    HIST_SCALAR = 0x01
    HIST_PER_CHANNEL_3 = 0x03
    HIST_PARAMS = 0x10
    NORMAL_LAYOUT = 0x20


class NormalLayout(IntEnum):
    NONE = 0
    RG = 1
    GA = 2
    RGB = 3
    AG = 4
    RGBxAy = 5


class Quantization(IntEnum):
    HALF16 = 0


def pad4(length: int) -> int:
    return (4 - (length & 3)) & 3


def pack_halves(values: Sequence[float]) -> bytes:
    """Quantize floats to IEEE-754 binary16, little-endian."""
    arr = np.asarray(values, dtype=np.float64)
    with np.errstate(over="ignore", invalid="ignore"):
        halves = arr.astype("<f2")
    if not np.all(np.isfinite(halves)):
        raise RangeOverflowError(
            "Value does not fit half precision", stage="metadata",
            expected=f"finite, |v| <= {HALF_MAX:g}", actual=[float(v) for v in arr],
        )
    return halves.tobytes()


def unpack_halves(payload: bytes) -> List[float]:
    if len(payload) % 2:
        raise MalformedContainerError(
            "Half-float payload has odd length",
            stage="metadata", expected="even", actual=len(payload),
        )
    return [float(v) for v in np.frombuffer(payload, dtype="<f2")]


@dataclass(frozen=True)
class TlvRecord:
    type: int
    flags: int
    payload: bytes


class TlvWriter:
    """Accumulate TLV records into a single byte string."""

    def __init__(self):
        self._chunks: List[bytes] = []

    def write(self, record_type: int, flags: int, payload: bytes = b""):
        if len(payload) > MAX_PAYLOAD:
            raise ValueError(f"TLV payload too large: {len(payload)} > {MAX_PAYLOAD}")
        if not (0 <= flags <= 0xFF):
            raise ValueError(f"TLV flags must fit in one byte, got {flags}")
        self._chunks.append(_RECORD_HEADER.pack(int(record_type), flags, len(payload)))
        self._chunks.append(bytes(payload))
        self._chunks.append(b"\x00" * pad4(len(payload)))

    def to_bytes(self) -> bytes:
        return b"".join(self._chunks)


class TlvReader:
    """Iterate the records of a TLV byte string, validating declared lengths."""

    def __init__(self, data: bytes):
        self._data = bytes(data)

    def __iter__(self) -> Iterator[TlvRecord]:
        data = self._data
        pos = 0
        while pos < len(data):
            if len(data) - pos < _RECORD_HEADER.size:
                raise MalformedContainerError(
                    "Truncated TLV record header",
                    stage="metadata",
                    expected=_RECORD_HEADER.size, actual=len(data) - pos,
                )
            record_type, flags, length = _RECORD_HEADER.unpack_from(data, pos)
            pos += _RECORD_HEADER.size
            if pos + length > len(data):
                raise MalformedContainerError(
                    f"TLV record 0x{record_type:02X} declares more payload than present",
                    stage="metadata", expected=length, actual=len(data) - pos,
                )
            payload = data[pos:pos + length]
            pos += length + pad4(length)
            yield TlvRecord(record_type, flags, payload)

    def records(self) -> List[TlvRecord]:
        return list(self)
