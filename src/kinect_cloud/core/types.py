from dataclasses import dataclass
from enum import Enum
import numpy as np
from typing import Any, Optional

class ImageFormat(Enum):
    COLOR_BGRA32 = "BGRA32"
    DEPTH16 = "DEPTH16"
    CUSTOM_XYZ16 = "XYZ16"

# dtype, channels, bytes per pixel
_FORMAT_LAYOUT = {
    ImageFormat.COLOR_BGRA32: (np.uint8, 4, 4),
    ImageFormat.DEPTH16: (np.uint16, 1, 2),
    ImageFormat.CUSTOM_XYZ16: (np.int16, 3, 6),
}

@dataclass
class ImageBuffer:
    """Owned image memory. Producers allocate, consumers only read."""
    width: int
    height: int
    stride_bytes: int
    format: ImageFormat
    data: np.ndarray

    def __post_init__(self):
        dtype, channels, bpp = _FORMAT_LAYOUT[self.format]
        expected = (self.height, self.width) if channels == 1 else (self.height, self.width, channels)
        if self.data.dtype != dtype:
            raise ValueError(f"{self.format.value} expects {np.dtype(dtype).name}, got {self.data.dtype}")
        if self.data.shape != expected:
            raise ValueError(f"{self.format.value} expects shape {expected}, got {self.data.shape}")
        if self.stride_bytes != self.width * bpp:
            raise ValueError(f"stride {self.stride_bytes} does not match width {self.width} for {self.format.value}")

    @classmethod
    def from_array(cls, data: np.ndarray, fmt: ImageFormat, copy: bool = True) -> "ImageBuffer":
        """Wraps `data` (copied unless copy=False), deriving size and stride from the format."""
        _, _, bpp = _FORMAT_LAYOUT[fmt]
        arr = np.array(data, copy=True, order="C") if copy else np.ascontiguousarray(data)
        h, w = arr.shape[:2]
        return cls(width=int(w), height=int(h), stride_bytes=int(w) * bpp, format=fmt, data=arr)

    @property
    def size(self) -> tuple:
        return (self.width, self.height)

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

@dataclass
class Capture:
    """One synchronized color+depth bundle from a single sensor cycle"""
    frame_id: int
    timestamp: float
    handle: Any                # device capture object, None once released

    @property
    def released(self) -> bool:
        return self.handle is None

@dataclass
class FrameResult:
    """Everything one pipeline iteration hands to the presenter"""
    device_index: int
    frame_id: int
    timestamp: float
    color: Optional[ImageBuffer] = None          # BGRA32
    depth: Optional[ImageBuffer] = None          # DEPTH16, depth camera grid
    aligned_depth: Optional[ImageBuffer] = None  # DEPTH16, color camera grid
    point_cloud: Optional[ImageBuffer] = None    # XYZ16 (mm), color camera space

    @property
    def has_point_cloud_pair(self) -> bool:
        return self.point_cloud is not None and self.color is not None
