from typing import Any, Tuple

# Sensor grid sizes for each depth mode / color resolution (width, height)
DEPTH_MODE_RESOLUTIONS = {
    "NFOV_2X2BINNED": (320, 288),
    "NFOV_UNBINNED": (640, 576),
    "WFOV_2X2BINNED": (512, 512),
    "WFOV_UNBINNED": (1024, 1024),
    "PASSIVE_IR": (1024, 1024),
}

COLOR_RESOLUTIONS = {
    "720P": (1280, 720),
    "1080P": (1920, 1080),
    "1440P": (2560, 1440),
    "1536P": (2048, 1536),
    "2160P": (3840, 2160),
    "3072P": (4096, 3072),
}


def _mode_name(value, prefix: str = "") -> str:
    # pyk4a enum member or plain string: DepthMode.NFOV_UNBINNED / "nfov_unbinned"
    name = str(getattr(value, "name", value)).upper()
    if prefix and name.startswith(prefix):
        name = name[len(prefix):]
    return name


class CalibrationContext:
    """
    Fixed geometry between the depth sensor, the color sensor and 3-D color camera space.

    Wraps the session's pyk4a.Calibration, which carries the factory intrinsics,
    distortion and extrinsics of both sensors for the active depth mode and color
    resolution; the SDK transformation engine works from it directly. The context
    itself only adds the grid sizes and is never modified after construction, so
    one context can be shared by any number of aligners/builders/threads.
    """

    def __init__(self, handle: Any):
        depth_mode = _mode_name(handle.depth_mode)
        color_resolution = _mode_name(handle.color_resolution, "RES_")
        if depth_mode not in DEPTH_MODE_RESOLUTIONS:
            raise ValueError(f"unsupported depth mode {depth_mode}")
        if color_resolution not in COLOR_RESOLUTIONS:
            raise ValueError(f"unsupported color resolution {color_resolution}")

        self._handle = handle
        self._depth_mode = depth_mode
        self._color_resolution = color_resolution
        self._depth_size = DEPTH_MODE_RESOLUTIONS[depth_mode]
        self._color_size = COLOR_RESOLUTIONS[color_resolution]

    @property
    def handle(self) -> Any:
        """The pyk4a.Calibration passed to pyk4a.transformation."""
        return self._handle

    @property
    def thread_safe(self) -> bool:
        return bool(getattr(self._handle, "thread_safe", True))

    @property
    def depth_mode(self) -> str:
        return self._depth_mode

    @property
    def color_resolution(self) -> str:
        return self._color_resolution

    @property
    def depth_size(self) -> Tuple[int, int]:
        return self._depth_size

    @property
    def color_size(self) -> Tuple[int, int]:
        return self._color_size

    @classmethod
    def from_raw(cls, raw: str, depth_mode: str, color_resolution: str, thread_safe: bool = True) -> "CalibrationContext":
        """Builds a context from a raw calibration blob (as saved by PyK4A.calibration_raw)."""
        import pyk4a

        try:
            mode = pyk4a.DepthMode[_mode_name(depth_mode)]
            res = pyk4a.ColorResolution[f"RES_{_mode_name(color_resolution, 'RES_')}"]
        except KeyError as e:
            raise ValueError(f"unknown depth mode / color resolution: {e}") from e
        return cls(pyk4a.Calibration.from_raw(raw, mode, res, thread_safe=thread_safe))

    def __repr__(self):
        return (f"CalibrationContext(depth={self._depth_size} {self._depth_mode}, "
                f"color={self._color_size} {self._color_resolution})")
