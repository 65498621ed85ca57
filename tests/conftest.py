import sys
import types
from enum import Enum
from types import SimpleNamespace

import numpy as np
import pytest

from kinect_cloud.algo.calibration import CalibrationContext
from kinect_cloud.core.errors import CaptureTimeout
from kinect_cloud.core.interfaces import IFrameSource
from kinect_cloud.core.types import Capture, ImageBuffer, ImageFormat
from kinect_cloud.vis.presenter import NullPresenter

DEPTH_K = np.array([[504.0, 0.0, 320.0], [0.0, 504.0, 288.0], [0.0, 0.0, 1.0]])
COLOR_K = np.array([[605.0, 0.0, 640.0], [0.0, 605.0, 360.0], [0.0, 0.0, 1.0]])
# Brown-Conrady rational model as reported by a real device (k1, k2, p1, p2, k3, k4, k5, k6)
DEPTH_DIST = np.array([0.52, -0.03, 0.0001, -0.0002, -0.002, 0.86, 0.08, -0.01])
COLOR_DIST = np.array([0.49, -2.61, 0.0007, -0.0001, 1.49, 0.37, -2.43, 1.41])


def make_calibration(depth_mode="NFOV_UNBINNED", color_resolution="720P"):
    return CalibrationContext(FakeCalibration(DepthMode[depth_mode], ColorResolution[f"RES_{color_resolution}"]))


def depth_buffer(value=1000, width=640, height=576) -> ImageBuffer:
    return ImageBuffer.from_array(np.full((height, width), value, dtype=np.uint16), ImageFormat.DEPTH16)


def color_buffer(width=1280, height=720) -> ImageBuffer:
    data = np.zeros((height, width, 4), dtype=np.uint8)
    data[..., 1] = 200
    data[..., 3] = 255
    return ImageBuffer.from_array(data, ImageFormat.COLOR_BGRA32)


@pytest.fixture
def calib():
    return make_calibration()


# ---------------------------------------------------------------- fake pyk4a

class FakeK4AException(Exception):
    pass


class FakeK4ATimeoutException(FakeK4AException):
    pass


class DepthMode(Enum):
    NFOV_2X2BINNED = 1
    NFOV_UNBINNED = 2
    WFOV_2X2BINNED = 3
    WFOV_UNBINNED = 4
    PASSIVE_IR = 5


class ColorResolution(Enum):
    RES_720P = 1
    RES_1080P = 2
    RES_1440P = 3
    RES_1536P = 4
    RES_2160P = 5
    RES_3072P = 6


class K4AImageFormat(Enum):
    COLOR_MJPG = 0
    COLOR_NV12 = 1
    COLOR_YUY2 = 2
    COLOR_BGRA32 = 3
    DEPTH16 = 4
    IR16 = 5


class FPS(Enum):
    FPS_5 = 0
    FPS_15 = 1
    FPS_30 = 2


class WiredSyncMode(Enum):
    STANDALONE = 0
    MASTER = 1
    SUBORDINATE = 2


class CalibrationType(Enum):
    DEPTH = 0
    COLOR = 1


class FakeCalibration:
    def __init__(self, depth_mode=DepthMode.NFOV_UNBINNED, color_resolution=ColorResolution.RES_720P,
                 thread_safe=True, raw=None):
        self.depth_mode = depth_mode
        self.color_resolution = color_resolution
        self.thread_safe = thread_safe
        self.raw = raw

    @classmethod
    def from_raw(cls, value, depth_mode, color_resolution, thread_safe=True):
        return cls(depth_mode, color_resolution, thread_safe, raw=value)

    def get_camera_matrix(self, camera):
        return DEPTH_K.copy() if camera == CalibrationType.DEPTH else COLOR_K.copy()

    def get_distortion_coefficients(self, camera):
        return DEPTH_DIST.copy() if camera == CalibrationType.DEPTH else COLOR_DIST.copy()


def _grid_map(n_out, c_out, f_out, n_in, c_in, f_in):
    # nearest source index for every target pixel along one axis, -1 when outside
    idx = np.rint((np.arange(n_out) - c_out) * f_in / f_out + c_in).astype(np.int64)
    idx[(idx < 0) | (idx >= n_in)] = -1
    return idx


class FakeTransformation:
    """
    Stands in for pyk4a.transformation. Geometry is a nearest-neighbour pinhole
    resample between DEPTH_K and COLOR_K (no baseline, no distortion): enough to
    give a hole-free footprint with a zero border on the color grid.
    """

    calls = []
    fail = None  # None, "none" (SDK returned no image) or an exception instance

    @classmethod
    def _record(cls, name, calibration, thread_safe, **kwargs):
        cls.calls.append((name, calibration, thread_safe, kwargs))
        if isinstance(cls.fail, Exception):
            raise cls.fail
        return cls.fail != "none"

    @classmethod
    def depth_image_to_color_camera(cls, depth, calibration, thread_safe):
        if not cls._record("depth_image_to_color_camera", calibration, thread_safe):
            return None
        w, h = CalibrationContext(calibration).color_size
        cols = _grid_map(w, COLOR_K[0, 2], COLOR_K[0, 0], depth.shape[1], DEPTH_K[0, 2], DEPTH_K[0, 0])
        rows = _grid_map(h, COLOR_K[1, 2], COLOR_K[1, 1], depth.shape[0], DEPTH_K[1, 2], DEPTH_K[1, 1])
        out = np.zeros((h, w), dtype=np.uint16)
        in_r, in_c = rows >= 0, cols >= 0
        out[np.ix_(in_r, in_c)] = depth[np.ix_(rows[in_r], cols[in_c])]
        return out

    @classmethod
    def depth_image_to_point_cloud(cls, depth, calibration, thread_safe, calibration_type_depth=True):
        if not cls._record("depth_image_to_point_cloud", calibration, thread_safe,
                           calibration_type_depth=calibration_type_depth):
            return None
        K = DEPTH_K if calibration_type_depth else COLOR_K
        h, w = depth.shape
        uu, vv = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
        d = depth.astype(np.float64)
        xyz = np.stack([(uu - K[0, 2]) / K[0, 0] * d, (vv - K[1, 2]) / K[1, 1] * d, d], axis=-1)
        info = np.iinfo(np.int16)
        return np.clip(np.rint(xyz), info.min, info.max).astype(np.int16)


class FakeCapture:
    def __init__(self, color=None, depth=None):
        self.color = color
        self.depth = depth


class FakePyK4A:
    """Records calls; get_capture pops scripted captures/exceptions, then times out."""

    instances = []
    script = []
    fail_open = False
    fail_start = False

    def __init__(self, config=None, device_id=0):
        self.config = config
        self.device_id = device_id
        self.opened = False
        self.started = False
        self.stop_calls = 0
        self.close_calls = 0
        self.timeouts = []
        FakePyK4A.instances.append(self)

    def open(self):
        if FakePyK4A.fail_open:
            raise FakeK4AException("open failed")
        self.opened = True

    def start(self):
        if FakePyK4A.fail_start:
            raise FakeK4AException("start failed")
        self.started = True

    def stop(self):
        self.stop_calls += 1
        self.started = False
        self.opened = False

    def close(self):
        self.close_calls += 1
        self.opened = False

    @property
    def calibration(self):
        return FakeCalibration(self.config.depth_mode, self.config.color_resolution)

    def get_capture(self, timeout=-1):
        self.timeouts.append(timeout)
        if not FakePyK4A.script:
            raise FakeK4ATimeoutException()
        item = FakePyK4A.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture(autouse=True)
def fake_pyk4a(monkeypatch):
    mod = types.ModuleType("pyk4a")
    mod.K4AException = FakeK4AException
    mod.K4ATimeoutException = FakeK4ATimeoutException
    mod.Config = lambda **kw: SimpleNamespace(**kw)
    mod.ColorResolution = ColorResolution
    mod.ImageFormat = K4AImageFormat
    mod.DepthMode = DepthMode
    mod.FPS = FPS
    mod.WiredSyncMode = WiredSyncMode
    mod.CalibrationType = CalibrationType
    mod.Calibration = FakeCalibration
    mod.transformation = FakeTransformation
    mod.device_count = 1
    mod.connected_device_count = lambda: mod.device_count
    mod.PyK4A = FakePyK4A

    FakePyK4A.instances = []
    FakePyK4A.script = []
    FakePyK4A.fail_open = False
    FakePyK4A.fail_start = False
    FakeTransformation.calls = []
    FakeTransformation.fail = None
    monkeypatch.setitem(sys.modules, "pyk4a", mod)
    return mod


@pytest.fixture
def fake_capture():
    def make(color=True, depth=True, depth_value=1000):
        c = np.full((720, 1280, 4), 7, dtype=np.uint8) if color else None
        d = np.full((576, 640), depth_value, dtype=np.uint16) if depth else None
        return FakeCapture(color=c, depth=d)
    return make


# ---------------------------------------------------------------- scripted pipeline collaborators

class ScriptedSource(IFrameSource):
    """Yields scripted (color, depth) pairs or raises scripted exceptions, then times out."""

    def __init__(self, calib, script, device_index=4):
        self.calib = calib
        self.script = list(script)
        self.waits = 0
        self.released = []
        self.close_calls = 0
        self._index = device_index
        self._n = 0

    @property
    def device_index(self):
        return self._index

    def open(self):
        return self.calib

    def next_capture(self, timeout_ms):
        self.waits += 1
        if not self.script:
            raise CaptureTimeout("script exhausted")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        cap = Capture(frame_id=self._n, timestamp=float(self._n), handle=item)
        self._n += 1
        return cap

    def extract_color(self, capture):
        return capture.handle[0]

    def extract_depth(self, capture):
        return capture.handle[1]

    def release(self, capture):
        self.released.append(capture.frame_id)
        capture.handle = None

    def close(self):
        self.close_calls += 1


class RecordingPresenter(NullPresenter):
    def __init__(self, max_frames=None):
        super().__init__(max_frames)
        self.results = []
        self.close_calls = 0

    def show(self, result):
        super().show(result)
        self.results.append(result)

    def close(self):
        super().close()
        self.close_calls += 1
