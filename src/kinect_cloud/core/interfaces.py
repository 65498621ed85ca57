from abc import ABC, abstractmethod
from typing import Optional
from .types import Capture, FrameResult, ImageBuffer

class IFrameSource(ABC):
    @property
    @abstractmethod
    def device_index(self) -> int:
        pass

    @abstractmethod
    def open(self):
        """Opens and starts the device, returns its CalibrationContext."""
        pass

    @abstractmethod
    def next_capture(self, timeout_ms: int) -> Capture:
        pass

    @abstractmethod
    def extract_color(self, capture: Capture) -> Optional[ImageBuffer]:
        pass

    @abstractmethod
    def extract_depth(self, capture: Capture) -> Optional[ImageBuffer]:
        pass

    @abstractmethod
    def release(self, capture: Capture):
        pass

    @abstractmethod
    def close(self):
        pass

class IPresenter(ABC):
    supports_point_cloud: bool = False

    @abstractmethod
    def show(self, result: FrameResult):
        pass

    @abstractmethod
    def should_stop(self) -> bool:
        pass

    @abstractmethod
    def close(self):
        pass
