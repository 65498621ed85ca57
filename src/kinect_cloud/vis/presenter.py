import queue
from typing import Dict, List, Optional

import cv2
import numpy as np

from ..core.interfaces import IPresenter
from ..core.log import get_logger
from ..core.types import FrameResult, ImageBuffer

log = get_logger("presenter")

ESC_KEY = 27


def color_window_name(device_index: int) -> str:
    return f"color (kinect {device_index})"


def depth_window_name(device_index: int) -> str:
    return f"transformed depth (kinect {device_index})"


def cloud_window_name(device_index: int) -> str:
    return f"point cloud (kinect {device_index})"


def scale_depth_for_display(depth_mm: np.ndarray, max_mm: float = 5000.0) -> np.ndarray:
    """Maps depth to uint8 as 255 - d * 255 / max_mm (near = bright), saturated. Returns a new image."""
    scaled = depth_mm.astype(np.float32) * np.float32(-255.0 / max_mm) + np.float32(255.0)
    return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)


def cloud_points_and_colors(xyz: ImageBuffer, color: ImageBuffer):
    """Flattens the XYZ grid and its paired BGRA image, dropping invalid (0, 0, 0) points. Colors are RGB in [0, 1]."""
    pts = xyz.data.reshape(-1, 3)
    bgr = color.data[..., :3].reshape(-1, 3)
    valid = np.any(pts != 0, axis=1)
    rgb = bgr[valid][:, ::-1].astype(np.float64) / 255.0
    return pts[valid].astype(np.float64), rgb


class Open3DCloudView:
    def __init__(self, o3d, window_name: str, origin_size_mm: float = 100.0):
        self._o3d = o3d
        self._vis = o3d.visualization.Visualizer()
        self._vis.create_window(window_name=window_name)
        self._vis.add_geometry(o3d.geometry.TriangleMesh.create_coordinate_frame(size=origin_size_mm))
        self._pcd = o3d.geometry.PointCloud()
        self._added = False

    def update(self, xyz: ImageBuffer, color: ImageBuffer):
        pts, rgb = cloud_points_and_colors(xyz, color)
        self._pcd.points = self._o3d.utility.Vector3dVector(pts)
        self._pcd.colors = self._o3d.utility.Vector3dVector(rgb)
        if not self._added:
            # first cloud also sets the view bounds
            self._vis.add_geometry(self._pcd)
            self._added = True
        else:
            self._vis.update_geometry(self._pcd)

    def poll(self) -> bool:
        """Pumps the window. False once the user closed it."""
        alive = self._vis.poll_events()
        self._vis.update_renderer()
        return bool(alive)

    def close(self):
        self._vis.destroy_window()


class OpenCVPresenter(IPresenter):
    """
    Shows color, scaled aligned depth and (when Open3D is installed) the colored
    point cloud, each in a window keyed by device index. Stops on 'q'/ESC or when
    a window is closed.
    """

    def __init__(self, depth_max_mm: float = 5000.0, wait_key_ms: int = 30, enable_point_cloud: bool = True):
        self.depth_max_mm = float(depth_max_mm)
        self.wait_key_ms = int(wait_key_ms)
        self._windows: List[str] = []
        self._clouds: Dict[int, Open3DCloudView] = {}
        self._stop = False
        self._o3d = None
        if enable_point_cloud:
            try:
                import open3d as o3d
                self._o3d = o3d
            except ImportError:
                log.info("open3d not installed, point cloud view disabled")
        self.supports_point_cloud = self._o3d is not None

    def show(self, result: FrameResult):
        idx = result.device_index
        if result.color is not None:
            self._imshow(color_window_name(idx), result.color.data)
        if result.aligned_depth is not None:
            self._imshow(depth_window_name(idx), scale_depth_for_display(result.aligned_depth.data, self.depth_max_mm))
        if self.supports_point_cloud and result.has_point_cloud_pair:
            view = self._clouds.get(idx)
            if view is None:
                view = Open3DCloudView(self._o3d, cloud_window_name(idx))
                self._clouds[idx] = view
            view.update(result.point_cloud, result.color)

    def should_stop(self) -> bool:
        if self._stop:
            return True
        key = cv2.waitKey(self.wait_key_ms) & 0xFF
        if key in (ord("q"), ESC_KEY):
            self._stop = True
        for name in self._windows:
            if cv2.getWindowProperty(name, cv2.WND_PROP_VISIBLE) < 1:
                log.info(f"Window '{name}' was closed")
                self._stop = True
        for view in self._clouds.values():
            if not view.poll():
                self._stop = True
        return self._stop

    def close(self):
        for view in self._clouds.values():
            view.close()
        self._clouds.clear()
        for name in self._windows:
            cv2.destroyWindow(name)
        self._windows = []

    def _imshow(self, name: str, img: np.ndarray):
        if name not in self._windows:
            cv2.namedWindow(name, cv2.WINDOW_AUTOSIZE)
            self._windows.append(name)
        cv2.imshow(name, img)


class NullPresenter(IPresenter):
    """Headless presenter: keeps the latest result, stops after `max_frames` if given."""

    def __init__(self, max_frames: Optional[int] = None):
        self.max_frames = max_frames
        self.last: Optional[FrameResult] = None
        self.count = 0
        self.closed = False

    def show(self, result: FrameResult):
        self.last = result
        self.count += 1

    def should_stop(self) -> bool:
        return self.max_frames is not None and self.count >= self.max_frames

    def close(self):
        self.closed = True


class QueuePresenter(IPresenter):
    """
    Worker-side presenter for multi-device runs: hands every result to the
    thread that owns the GUI. Keeps only the newest frames when that thread
    falls behind. Stopping is decided by the GUI thread through the shared
    stop event, so should_stop never asks for it.
    """

    def __init__(self, frames: "queue.Queue[FrameResult]"):
        self._frames = frames

    def show(self, result: FrameResult):
        try:
            self._frames.put_nowait(result)
        except queue.Full:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                pass
            self._frames.put_nowait(result)

    def should_stop(self) -> bool:
        return False

    def close(self):
        pass
