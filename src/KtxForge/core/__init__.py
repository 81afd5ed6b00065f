"""Core utilities -- re-exports all public symbols for convenience."""

from .errors import (
    TextureConversionError,
    InvalidDimensionError,
    MalformedContainerError,
    AlignmentError,
    ExternalToolFailureError,
    IOFailureError,
    RangeOverflowError,
    ConversionCancelledError,
    DegenerateRangeWarning,
)
from .io import (
    load_image,
    save_image,
    luminance_bt709,
    gamma_to_linear,
    linear_to_gamma,
)
from .image import ImagePlane, MipLevel, MipChain, mip_dimensions
from .kernels import KERNELS, ResampleKernel, get_kernel, resample, resample_weights
from .tlv import TlvType, NormalLayout, TlvWriter, TlvReader, TlvRecord
from .ktx2 import (
    KTX2_IDENTIFIER,
    Ktx2Container,
    Ktx2Header,
    LevelIndexEntry,
    KeyValueEntry,
    read_key_value_data,
)
from .logging import setup_logging

__all__ = [
    "TextureConversionError", "InvalidDimensionError", "MalformedContainerError",
    "AlignmentError", "ExternalToolFailureError", "IOFailureError", "RangeOverflowError",
    "ConversionCancelledError", "DegenerateRangeWarning",
    "load_image", "save_image", "luminance_bt709", "gamma_to_linear", "linear_to_gamma",
    "ImagePlane", "MipLevel", "MipChain", "mip_dimensions",
    "KERNELS", "ResampleKernel", "get_kernel", "resample", "resample_weights",
    "TlvType", "NormalLayout", "TlvWriter", "TlvReader", "TlvRecord",
    "KTX2_IDENTIFIER", "Ktx2Container", "Ktx2Header", "LevelIndexEntry",
    "KeyValueEntry", "read_key_value_data",
    "setup_logging",
]
