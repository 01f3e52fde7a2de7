"""
Grayscale buffers and the RGBA -> luminance conversion used by every matcher.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np

from errors import ValidationError


# ITU-R BT.601 luma weights
LUMA_R = 0.299
LUMA_G = 0.587
LUMA_B = 0.114


@dataclass(frozen=True)
class Region:
    """Rectangle inside a full captured frame, in pixels."""
    x: int
    y: int
    w: int
    h: int

    @classmethod
    def parse(cls, text: str) -> "Region":
        parts = [p.strip() for p in text.split(",")]
        if len(parts) != 4:
            raise ValidationError(f"region must be x,y,w,h: {text!r}")
        try:
            x, y, w, h = (int(p) for p in parts)
        except ValueError:
            raise ValidationError(f"region must contain integers: {text!r}") from None
        return cls(x, y, w, h)


@dataclass(frozen=True, eq=False)
class GrayscaleBuffer:
    """
    Single-channel 8-bit image, stored row-major.

    Args:
        pixels: 1-D uint8 array of length width * height
        width: Image width in pixels
        height: Image height in pixels
    """
    pixels: np.ndarray
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValidationError(f"invalid image size {self.width}x{self.height}")
        pixels = np.ascontiguousarray(self.pixels, dtype=np.uint8).reshape(-1)
        if pixels.size != self.width * self.height:
            raise ValidationError(
                f"pixel count {pixels.size} does not match {self.width}x{self.height}")
        object.__setattr__(self, "pixels", pixels)

    @classmethod
    def from_array(cls, gray: np.ndarray) -> "GrayscaleBuffer":
        if gray.ndim != 2:
            raise ValidationError(f"expected a 2-D grayscale array, got shape {gray.shape}")
        h, w = gray.shape
        return cls(gray.reshape(-1), w, h)

    @classmethod
    def from_bytes(cls, data: bytes, width: int, height: int) -> "GrayscaleBuffer":
        return cls(np.frombuffer(data, dtype=np.uint8).copy(), width, height)

    def as_array(self) -> np.ndarray:
        """Return a (height, width) view of the pixels."""
        return self.pixels.reshape(self.height, self.width)

    def tobytes(self) -> bytes:
        return self.pixels.tobytes()

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def __eq__(self, other):
        if not isinstance(other, GrayscaleBuffer):
            return NotImplemented
        return (self.width == other.width and self.height == other.height
                and np.array_equal(self.pixels, other.pixels))


@dataclass(frozen=True, eq=False)
class RgbaFrame:
    """Raw captured frame, 4 bytes per pixel (R, G, B, A), row-major."""
    pixels: Union[bytes, bytearray, np.ndarray]
    width: int
    height: int


def capture_to_grayscale(rgba, width: int, height: int) -> GrayscaleBuffer:
    """
    Convert an RGBA pixel buffer to luminance.

    gray = round(0.299 R + 0.587 G + 0.114 B) per pixel, halves rounded up;
    alpha is discarded.

    Args:
        rgba: bytes-like or uint8 array holding width * height * 4 values
        width: Frame width in pixels
        height: Frame height in pixels

    Returns:
        GrayscaleBuffer of the same size
    """
    if width <= 0 or height <= 0:
        raise ValidationError(f"invalid capture size {width}x{height}")
    if isinstance(rgba, (bytes, bytearray, memoryview)):
        flat = np.frombuffer(rgba, dtype=np.uint8)
    else:
        flat = np.asarray(rgba, dtype=np.uint8).reshape(-1)
    if flat.size != width * height * 4:
        raise ValidationError(
            f"RGBA buffer holds {flat.size} bytes, expected {width * height * 4}")

    px = flat.reshape(-1, 4).astype(np.float64)
    luma = LUMA_R * px[:, 0] + LUMA_G * px[:, 1] + LUMA_B * px[:, 2]
    gray = np.clip(np.floor(luma + 0.5), 0, 255).astype(np.uint8)
    return GrayscaleBuffer(gray, width, height)


def as_grayscale(frame) -> GrayscaleBuffer:
    """Accept either an RgbaFrame or an already converted GrayscaleBuffer."""
    if isinstance(frame, GrayscaleBuffer):
        return frame
    if isinstance(frame, RgbaFrame):
        return capture_to_grayscale(frame.pixels, frame.width, frame.height)
    raise ValidationError(f"unsupported frame type: {type(frame).__name__}")


# -----------------------------
# regions
# -----------------------------
def scale_region(region: Region, source_size: Optional[Tuple[int, int]],
                 frame_size: Tuple[int, int]) -> Region:
    """
    Map a region recorded on a frame of source_size onto a frame of frame_size.

    Without a recorded source size the rectangle is used as literal pixels.
    """
    if source_size is None or tuple(source_size) == tuple(frame_size):
        return region
    sw, sh = source_size
    fw, fh = frame_size
    if sw <= 0 or sh <= 0:
        return region
    rx = fw / sw
    ry = fh / sh
    return Region(
        x=int(round(region.x * rx)),
        y=int(round(region.y * ry)),
        w=max(1, int(round(region.w * rx))),
        h=max(1, int(round(region.h * ry))),
    )


def crop(image: GrayscaleBuffer, region: Region) -> GrayscaleBuffer:
    """Crop image to region, clamped to the image bounds."""
    x0 = max(0, region.x)
    y0 = max(0, region.y)
    x1 = min(image.width, region.x + region.w)
    y1 = min(image.height, region.y + region.h)
    if x1 <= x0 or y1 <= y0:
        raise ValidationError(
            f"region {region} lies outside the {image.width}x{image.height} frame")
    return GrayscaleBuffer.from_array(image.as_array()[y0:y1, x0:x1].copy())
