import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..algo.aligner import DepthAligner
from ..algo.calibration import CalibrationContext
from ..algo.point_cloud import PointCloudBuilder
from ..core.errors import AlignmentFailed, CaptureFailed, CaptureTimeout, ReprojectionFailed
from ..core.interfaces import IFrameSource, IPresenter
from ..core.log import get_logger
from ..core.types import FrameResult, ImageBuffer

log = get_logger("pipeline")


class PipelineState(Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    EXTRACTED = "extracted"
    ALIGNING = "aligning"
    POINT_BUILDING = "point_building"
    PRESENTING = "presenting"
    STOPPED = "stopped"


class SessionOutcome(Enum):
    STOPPED = "stopped"   # stop event or presenter asked to quit
    TIMEOUT = "timeout"   # timeout policy exhausted
    FAILED = "failed"     # hardware capture fault


@dataclass(frozen=True)
class TimeoutPolicy:
    """Session ends after this many capture timeouts in a row. 1 = end on the first one."""
    max_consecutive_timeouts: int = 1

    def __post_init__(self):
        if self.max_consecutive_timeouts < 1:
            raise ValueError("max_consecutive_timeouts must be >= 1")


class FramePipeline:
    """
    One device's sequential capture -> align -> point cloud -> present loop.

    The capture wait is the only blocking call and is bounded by `timeout_ms`,
    so a stop request is seen at the top of the next iteration. Alignment and
    reprojection failures drop that frame's derived data only; capture faults
    and an exhausted timeout policy end the session. Teardown (source.close,
    presenter.close) happens exactly once.
    """

    def __init__(self, source: IFrameSource, presenter: IPresenter, calibration: CalibrationContext,
                 timeout_ms: int = 1000, timeout_policy: Optional[TimeoutPolicy] = None,
                 aligner: Optional[DepthAligner] = None, builder: Optional[PointCloudBuilder] = None):
        self.source = source
        self.presenter = presenter
        self.calibration = calibration
        self.timeout_ms = int(timeout_ms)
        self.timeout_policy = timeout_policy or TimeoutPolicy()
        self.aligner = aligner or DepthAligner()
        self.builder = builder or PointCloudBuilder()

        self._state = PipelineState.IDLE
        self._outcome: Optional[SessionOutcome] = None
        self._consecutive_timeouts = 0
        self._torn_down = False
        self.frames_presented = 0
        self.frames_dropped = 0

    @classmethod
    def open(cls, source: IFrameSource, presenter: IPresenter, **kwargs) -> "FramePipeline":
        """Opens the device session. Startup errors propagate to the caller."""
        calibration = source.open()
        return cls(source, presenter, calibration, **kwargs)

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def outcome(self) -> Optional[SessionOutcome]:
        return self._outcome

    @property
    def device_index(self) -> int:
        return self.source.device_index

    def process(self, color: Optional[ImageBuffer], depth: Optional[ImageBuffer],
                frame_id: int = 0, timestamp: float = 0.0) -> FrameResult:
        """Runs alignment and reprojection on one frame. Missing inputs give partial results."""
        result = FrameResult(self.device_index, frame_id, timestamp, color=color, depth=depth)
        if color is None or depth is None:
            # alignment target is the color grid; without both there is nothing to derive
            return result

        self._state = PipelineState.ALIGNING
        try:
            result.aligned_depth = self.aligner.align(depth, color.width, color.height, self.calibration)
        except AlignmentFailed as e:
            log.warning(f"[kinect {self.device_index}] frame {frame_id}: alignment failed: {e}")
            self.frames_dropped += 1
            return result

        self._state = PipelineState.POINT_BUILDING
        try:
            result.point_cloud = self.builder.build(result.aligned_depth, self.calibration)
        except ReprojectionFailed as e:
            log.warning(f"[kinect {self.device_index}] frame {frame_id}: reprojection failed: {e}")
            self.frames_dropped += 1
        return result

    def step(self) -> bool:
        """One iteration. Returns False once the session has reached its terminal state."""
        if self._outcome is not None:
            return False

        self._state = PipelineState.CAPTURING
        try:
            capture = self.source.next_capture(self.timeout_ms)
        except CaptureTimeout as e:
            self._consecutive_timeouts += 1
            limit = self.timeout_policy.max_consecutive_timeouts
            if self._consecutive_timeouts >= limit:
                log.warning(f"[kinect {self.device_index}] {e}; ending session after {self._consecutive_timeouts} timeout(s)")
                self._finish(SessionOutcome.TIMEOUT)
                return False
            log.warning(f"[kinect {self.device_index}] {e}; retry {self._consecutive_timeouts}/{limit - 1}")
            self._state = PipelineState.IDLE
            return True
        except CaptureFailed as e:
            log.error(f"[kinect {self.device_index}] {e}")
            self._finish(SessionOutcome.FAILED)
            return False
        self._consecutive_timeouts = 0

        try:
            color = self.source.extract_color(capture)
            depth = self.source.extract_depth(capture)
        except CaptureFailed as e:
            log.error(f"[kinect {self.device_index}] {e}")
            self._finish(SessionOutcome.FAILED)
            return False
        finally:
            # both buffers are copies, the capture can go now
            self.source.release(capture)
        self._state = PipelineState.EXTRACTED

        result = self.process(color, depth, capture.frame_id, capture.timestamp)

        self._state = PipelineState.PRESENTING
        self.presenter.show(result)
        self.frames_presented += 1
        self._state = PipelineState.IDLE

        if self.presenter.should_stop():
            log.info(f"[kinect {self.device_index}] stop requested by presenter")
            self._finish(SessionOutcome.STOPPED)
            return False
        return True

    def run(self, stop_event: Optional[threading.Event] = None) -> SessionOutcome:
        """Loops until a terminal condition, then tears the session down."""
        log.info(f"[kinect {self.device_index}] session started")
        try:
            while True:
                if stop_event is not None and stop_event.is_set():
                    self._finish(SessionOutcome.STOPPED)
                    break
                if not self.step():
                    break
        finally:
            self.shutdown()
        log.info(f"[kinect {self.device_index}] session ended: {self._outcome.value}, "
                 f"{self.frames_presented} frame(s) presented, {self.frames_dropped} dropped")
        return self._outcome

    def shutdown(self):
        """Releases the device and presenter. Later calls do nothing."""
        if self._torn_down:
            return
        self._torn_down = True
        if self._outcome is None:
            self._outcome = SessionOutcome.STOPPED
        try:
            self.source.close()
        finally:
            self.presenter.close()
            self._state = PipelineState.STOPPED

    def _finish(self, outcome: SessionOutcome):
        if self._outcome is None:
            self._outcome = outcome
