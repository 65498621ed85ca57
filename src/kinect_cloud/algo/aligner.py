from typing import Optional

import numpy as np

from .calibration import CalibrationContext
from ..core.errors import AlignmentFailed
from ..core.types import ImageBuffer, ImageFormat


class DepthAligner:
    """
    Reprojects a depth image into the color camera's pixel grid.

    Runs the Azure Kinect transformation engine (pyk4a.transformation) on the
    session calibration: every depth pixel is unprojected, moved into color
    camera space and rasterized into the color grid, nearest surface winning.
    Color pixels that no depth pixel reaches are 0.
    """

    def align(self, depth: Optional[ImageBuffer], color_width: int, color_height: int,
              calib: CalibrationContext) -> Optional[ImageBuffer]:
        if depth is None:
            return None
        self._validate(depth, color_width, color_height, calib)

        import pyk4a
        from pyk4a import transformation

        try:
            out = transformation.depth_image_to_color_camera(depth.data, calib.handle, calib.thread_safe)
        except pyk4a.K4AException as e:
            raise AlignmentFailed(f"depth to color transformation failed: {e}") from e
        if out is None:
            raise AlignmentFailed("depth to color transformation returned no image")
        out = np.asarray(out)
        if out.shape != (int(color_height), int(color_width)):
            raise AlignmentFailed(f"transformed depth has shape {out.shape}, expected {(color_height, color_width)}")
        return ImageBuffer.from_array(out.astype(np.uint16, copy=False), ImageFormat.DEPTH16)

    @staticmethod
    def _validate(depth: ImageBuffer, color_width: int, color_height: int, calib: CalibrationContext):
        if depth.format != ImageFormat.DEPTH16:
            raise AlignmentFailed(f"expected DEPTH16 input, got {depth.format.value}")
        if depth.is_empty:
            raise AlignmentFailed("depth image is empty")
        if color_width <= 0 or color_height <= 0:
            raise AlignmentFailed(f"invalid color size {color_width}x{color_height}")
        if depth.size != calib.depth_size:
            raise AlignmentFailed(f"depth size {depth.size} does not match calibration {calib.depth_size}")
        if (color_width, color_height) != calib.color_size:
            raise AlignmentFailed(f"color size {(color_width, color_height)} does not match calibration {calib.color_size}")
