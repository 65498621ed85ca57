from typing import Optional

import numpy as np

from .calibration import CalibrationContext
from ..core.errors import ReprojectionFailed
from ..core.types import ImageBuffer, ImageFormat


class PointCloudBuilder:
    """Unprojects a color-aligned depth image into a dense XYZ16 grid (mm, color camera space)."""

    def build(self, aligned_depth: Optional[ImageBuffer], calib: CalibrationContext) -> Optional[ImageBuffer]:
        if aligned_depth is None:
            return None
        if aligned_depth.format != ImageFormat.DEPTH16:
            raise ReprojectionFailed(f"expected DEPTH16 input, got {aligned_depth.format.value}")
        if aligned_depth.size != calib.color_size:
            raise ReprojectionFailed(
                f"aligned depth size {aligned_depth.size} does not match color calibration {calib.color_size}")

        import pyk4a
        from pyk4a import transformation

        try:
            # depth already lives on the color grid, so unproject with the color camera
            xyz = transformation.depth_image_to_point_cloud(
                aligned_depth.data, calib.handle, calib.thread_safe, calibration_type_depth=False)
        except pyk4a.K4AException as e:
            raise ReprojectionFailed(f"point cloud transformation failed: {e}") from e
        if xyz is None:
            raise ReprojectionFailed("point cloud transformation returned no image")
        xyz = np.asarray(xyz)
        w, h = aligned_depth.size
        if xyz.shape != (h, w, 3):
            raise ReprojectionFailed(f"point cloud has shape {xyz.shape}, expected {(h, w, 3)}")
        # the SDK writes (0, 0, 0) where depth is 0
        return ImageBuffer.from_array(xyz.astype(np.int16, copy=False), ImageFormat.CUSTOM_XYZ16)
