class KinectCloudError(RuntimeError):
    """Base class for all pipeline errors."""


class DeviceError(KinectCloudError):
    """Startup failures. Session construction is aborted."""


class DeviceUnavailable(DeviceError):
    """No device is enumerable at the requested index."""


class DeviceOpenFailed(DeviceError):
    """The device was found but could not be opened."""


class StreamStartFailed(DeviceError):
    """The device opened but its cameras did not start."""


class CaptureError(KinectCloudError):
    """Failures while waiting for a capture."""


class CaptureTimeout(CaptureError):
    """No capture arrived within the wait timeout."""


class CaptureFailed(CaptureError):
    """Hardware-level capture fault. Always ends the session."""


class FrameError(KinectCloudError):
    """Per-frame processing failure. Only the current frame is dropped."""


class AlignmentFailed(FrameError):
    pass


class ReprojectionFailed(FrameError):
    pass
