import time
from typing import Any, Optional

import cv2
import numpy as np

from ..algo.calibration import CalibrationContext
from ..core.config_loader import DeviceConfig
from ..core.errors import (
    CaptureFailed,
    CaptureTimeout,
    DeviceOpenFailed,
    DeviceUnavailable,
    StreamStartFailed,
)
from ..core.interfaces import IFrameSource
from ..core.log import get_logger
from ..core.types import Capture, ImageBuffer, ImageFormat

log = get_logger("kinect_camera")

WAIT_INFINITE = -1

# Color stream formats that extract_color can turn into BGRA32
COLOR_FORMATS = ("BGRA32", "MJPG", "NV12", "YUY2")


def _import_pyk4a():
    # pyk4a needs the native Azure Kinect SDK; import it only when a device is opened
    try:
        import pyk4a
    except ImportError as e:
        raise DeviceUnavailable(f"pyk4a is not available: {e}") from e
    return pyk4a


def make_k4a_config(pyk4a, cfg: DeviceConfig):
    """Maps the DeviceConfig bundle onto pyk4a.Config."""
    if cfg.color_format not in COLOR_FORMATS:
        raise DeviceOpenFailed(f"unsupported color format {cfg.color_format}, expected one of {COLOR_FORMATS}")
    try:
        return pyk4a.Config(
            color_resolution=getattr(pyk4a.ColorResolution, f"RES_{cfg.color_resolution}"),
            color_format=getattr(pyk4a.ImageFormat, f"COLOR_{cfg.color_format}"),
            depth_mode=getattr(pyk4a.DepthMode, cfg.depth_mode),
            camera_fps=getattr(pyk4a.FPS, f"FPS_{cfg.camera_fps}"),
            synchronized_images_only=cfg.synchronized_images_only,
            wired_sync_mode=getattr(pyk4a.WiredSyncMode, cfg.wired_sync_mode),
        )
    except AttributeError as e:
        raise DeviceOpenFailed(f"unsupported device configuration {cfg}: {e}") from e


def to_bgra(raw: np.ndarray, color_format: str) -> np.ndarray:
    """Converts a raw color image of the configured stream format to BGRA32."""
    if color_format == "MJPG":
        raw = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
        if raw is None:
            raise ValueError("failed to decode MJPG color image")
    elif color_format == "NV12":
        # (H * 3/2, W) luma plane followed by interleaved chroma
        return cv2.cvtColor(raw, cv2.COLOR_YUV2BGRA_NV12)
    elif color_format == "YUY2":
        if raw.ndim == 2:
            raw = raw.reshape(raw.shape[0], -1, 2)
        return cv2.cvtColor(raw, cv2.COLOR_YUV2BGRA_YUY2)
    if raw.ndim == 3 and raw.shape[2] == 3:
        raw = cv2.cvtColor(raw, cv2.COLOR_BGR2BGRA)
    return raw


def calibration_from_k4a(calib, cfg: DeviceConfig) -> CalibrationContext:
    """Wraps the device calibration; it must describe the configured depth mode and color resolution."""
    context = CalibrationContext(calib)
    if (context.depth_mode, context.color_resolution) != (cfg.depth_mode, cfg.color_resolution):
        raise ValueError(f"device calibration is for {context.depth_mode}/{context.color_resolution}, "
                         f"configured {cfg.depth_mode}/{cfg.color_resolution}")
    return context


class KinectCamera(IFrameSource):
    def __init__(self, device_index: int = 0, config: Optional[DeviceConfig] = None):
        self._device_index = int(device_index)
        self._config = config or DeviceConfig()
        self._pyk4a: Any = None
        self._cam: Any = None
        self._calibration: Optional[CalibrationContext] = None
        self._frame_id = 0

    @property
    def device_index(self) -> int:
        return self._device_index

    @property
    def calibration(self) -> Optional[CalibrationContext]:
        return self._calibration

    @property
    def is_open(self) -> bool:
        return self._cam is not None

    def open(self) -> CalibrationContext:
        if self._cam is not None:
            raise RuntimeError(f"device {self._device_index} is already open")
        pyk4a = _import_pyk4a()
        try:
            count = pyk4a.connected_device_count()
        except pyk4a.K4AException as e:
            raise DeviceUnavailable(f"device enumeration failed: {e}") from e
        if count == 0:
            raise DeviceUnavailable("no Azure Kinect device found")
        if self._device_index >= count:
            raise DeviceUnavailable(f"device index {self._device_index} out of range ({count} connected)")

        cam = pyk4a.PyK4A(config=make_k4a_config(pyk4a, self._config), device_id=self._device_index)
        try:
            cam.open()
        except pyk4a.K4AException as e:
            raise DeviceOpenFailed(f"failed to open device {self._device_index}: {e}") from e

        try:
            cam.start()
        except pyk4a.K4AException as e:
            self._safe_close(pyk4a, cam)
            raise StreamStartFailed(f"failed to start cameras on device {self._device_index}: {e}") from e

        try:
            calibration = calibration_from_k4a(cam.calibration, self._config)
        except (pyk4a.K4AException, ValueError) as e:
            self._safe_stop(pyk4a, cam)
            raise StreamStartFailed(f"failed to read calibration from device {self._device_index}: {e}") from e

        self._pyk4a = pyk4a
        self._cam = cam
        self._calibration = calibration
        self._frame_id = 0
        log.info(f"Opened device {self._device_index}: {calibration}")
        return calibration

    def next_capture(self, timeout_ms: int) -> Capture:
        if self._cam is None:
            raise CaptureFailed("device is not open")
        pyk4a = self._pyk4a
        timeout = WAIT_INFINITE if timeout_ms < 0 else int(timeout_ms)
        try:
            cap = self._cam.get_capture(timeout=timeout)
        except pyk4a.K4ATimeoutException as e:
            raise CaptureTimeout(f"no capture within {timeout_ms} ms on device {self._device_index}") from e
        except pyk4a.K4AException as e:
            raise CaptureFailed(f"failed to get capture from device {self._device_index}: {e}") from e
        capture = Capture(frame_id=self._frame_id, timestamp=time.time(), handle=cap)
        self._frame_id += 1
        return capture

    def extract_color(self, capture: Capture) -> Optional[ImageBuffer]:
        raw = self._read(capture, "color")
        if raw is None:
            return None
        fmt = self._config.color_format
        try:
            return ImageBuffer.from_array(to_bgra(raw, fmt), ImageFormat.COLOR_BGRA32)
        except (cv2.error, ValueError) as e:
            raise CaptureFailed(f"cannot convert {fmt} color image of shape {raw.shape}: {e}") from e

    def extract_depth(self, capture: Capture) -> Optional[ImageBuffer]:
        raw = self._read(capture, "depth")
        if raw is None:
            return None
        return ImageBuffer.from_array(raw.astype(np.uint16, copy=False), ImageFormat.DEPTH16)

    def release(self, capture: Capture):
        if capture.released:
            raise RuntimeError(f"capture {capture.frame_id} already released")
        capture.handle = None

    def close(self):
        if self._cam is None:
            log.warning(f"Device {self._device_index} is not open, ignoring close")
            return
        cam, self._cam = self._cam, None
        self._safe_stop(self._pyk4a, cam)
        log.info(f"Closed device {self._device_index}")

    def _read(self, capture: Capture, attr: str) -> Optional[np.ndarray]:
        if capture.released:
            raise RuntimeError(f"capture {capture.frame_id} used after release")
        try:
            return getattr(capture.handle, attr)
        except self._pyk4a.K4AException as e:
            raise CaptureFailed(f"failed to read {attr} image: {e}") from e

    def _safe_stop(self, pyk4a, cam):
        try:
            cam.stop()
        except pyk4a.K4AException as e:
            log.error(f"Error stopping device {self._device_index}: {e}")

    def _safe_close(self, pyk4a, cam):
        try:
            cam.close()
        except pyk4a.K4AException as e:
            log.error(f"Error closing device {self._device_index}: {e}")
