"""In-memory image model: planes, mip levels and mip chains."""

from dataclasses import dataclass, field
from typing import Iterator, List, Tuple

import numpy as np

from .errors import InvalidDimensionError

COLOR_SPACES = ("linear", "encoded")


def mip_dimensions(width: int, height: int) -> List[Tuple[int, int]]:
    """Return ``(w, h)`` for every level, floor-halving each axis down to 1x1."""
    if width < 1 or height < 1:
        raise InvalidDimensionError(
            "Source image must have non-zero width and height",
            stage="mipmap",
            expected=">= 1x1",
            actual=f"{width}x{height}",
        )
    dims = [(int(width), int(height))]
    w, h = dims[0]
    while w > 1 or h > 1:
        w = max(1, w // 2)
        h = max(1, h // 2)
        dims.append((w, h))
    return dims


@dataclass(frozen=True)
class ImagePlane:
    """A float32 ``(H, W, C)`` pixel buffer tagged with its color space.

    The buffer is copied and marked read-only on construction; filtering
    always produces a new plane.
    """

    pixels: np.ndarray
    color_space: str = "linear"

    def __post_init__(self):
        arr = np.asarray(self.pixels, dtype=np.float32)
        if arr.ndim == 2:
            arr = arr[:, :, np.newaxis]
        if arr.ndim != 3:
            raise InvalidDimensionError(
                "Image plane must be 2D or 3D",
                expected="(H, W) or (H, W, C)", actual=arr.shape,
            )
        if self.color_space not in COLOR_SPACES:
            raise ValueError(
                f"color_space must be one of {COLOR_SPACES}, got '{self.color_space}'"
            )
        arr = np.array(arr, dtype=np.float32, copy=True)
        arr.setflags(write=False)
        object.__setattr__(self, "pixels", arr)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def with_pixels(self, pixels: np.ndarray, color_space: str = None) -> "ImagePlane":
        return ImagePlane(pixels, color_space or self.color_space)


@dataclass(frozen=True)
class MipLevel:
    index: int
    plane: ImagePlane

    @property
    def width(self) -> int:
        return self.plane.width

    @property
    def height(self) -> int:
        return self.plane.height


@dataclass
class MipChain:
    """Ordered mip levels; level 0 is the source resolution."""

    levels: List[MipLevel] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.levels)

    def __iter__(self) -> Iterator[MipLevel]:
        return iter(self.levels)

    def __getitem__(self, index: int) -> MipLevel:
        return self.levels[index]

    @property
    def dimensions(self) -> List[Tuple[int, int]]:
        return [(lvl.width, lvl.height) for lvl in self.levels]

    def replace_level(self, index: int, plane: ImagePlane):
        """Swap the plane of level *index*; the size must not change."""
        current = self.levels[index]
        if plane.size != current.plane.size:
            raise InvalidDimensionError(
                f"Replacement plane for mip {index} changes its size",
                stage="mipmap",
                expected=current.plane.size,
                actual=plane.size,
            )
        self.levels[index] = MipLevel(index, plane)

    def validate(self):
        """Check the floor-halving dimension law; a truncated chain must be a prefix."""
        if not self.levels:
            raise InvalidDimensionError(
                "Mip chain is empty", stage="mipmap", expected=">= 1 level", actual=0
            )
        expected = mip_dimensions(self.levels[0].width, self.levels[0].height)
        actual = self.dimensions
        if actual != expected[:len(actual)]:
            raise InvalidDimensionError(
                "Mip chain violates the floor-halving dimension law",
                stage="mipmap", expected=expected, actual=actual,
            )
        for position, level in enumerate(self.levels):
            if level.index != position:
                raise InvalidDimensionError(
                    "Mip level indices are out of order",
                    stage="mipmap", expected=position, actual=level.index,
                )
