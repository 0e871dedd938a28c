"""
Camera driver surface consumed by the bridge, plus a mock camera.

The real driver (royale) is an opaque handle; anything providing the
methods of CameraDevice can be attached. The mock generates synthetic
depth frames on its own thread so the bridge can run without hardware.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)

# royale status codes the bridge distinguishes
DISCONNECTED = 1026
TIMEOUT = 1028
DEVICE_IS_BUSY = 4100


class CameraError(RuntimeError):
    """Error reported by the camera driver, with its status code."""

    def __init__(self, code: int, message: str = ""):
        super().__init__(message or f"Camera error {code}")
        self.code = code


DepthDataCallback = Callable[[bytes], None]
ExposureCallback = Callable[[list[int]], None]


class CameraDevice(ABC):
    """Opaque handle to an attached time-of-flight camera."""

    @abstractmethod
    def get_camera_id(self) -> str: ...

    @abstractmethod
    def get_camera_name(self) -> str: ...

    @abstractmethod
    def get_max_sensor_width(self) -> int: ...

    @abstractmethod
    def get_max_sensor_height(self) -> int: ...

    @abstractmethod
    def get_use_cases(self) -> list[str]: ...

    @abstractmethod
    def get_current_use_case(self) -> str: ...

    @abstractmethod
    def set_use_case(self, use_case: str): ...

    @abstractmethod
    def get_exposure_mode(self) -> bool:
        """True when auto exposure is active."""

    @abstractmethod
    def set_exposure_mode(self, auto: bool): ...

    @abstractmethod
    def get_exposure_limits(self) -> tuple[int, int]: ...

    @abstractmethod
    def set_exposure_time(self, exposure: int): ...

    @abstractmethod
    def get_frame_rate(self) -> int: ...

    @abstractmethod
    def get_max_frame_rate(self) -> int: ...

    @abstractmethod
    def start_capture(self): ...

    @abstractmethod
    def close(self): ...

    @abstractmethod
    def add_encoded_depth_data_callback(self, callback: DepthDataCallback): ...

    @abstractmethod
    def add_exposure_time_callback(self, callback: ExposureCallback):
        """Callback receives [stream_id, exposure] on every hardware change."""


# (name, fps, min exposure, max exposure)
MOCK_USE_CASES = [
    ("MODE_9_5FPS_2000", 5, 1, 2000),
    ("MODE_9_10FPS_1000", 10, 1, 1000),
    ("MODE_9_15FPS_700", 15, 1, 700),
    ("MODE_9_25FPS_450", 25, 1, 450),
    ("MODE_5_35FPS_600", 35, 1, 600),
    ("MODE_5_45FPS_500", 45, 1, 500),
]


class MockCameraDevice(CameraDevice):
    """Synthetic pico flexx: emits noisy depth planes at the use case's rate."""

    def __init__(self, camera_id: str = "0005-1234-5678-9012", width: int = 224, height: int = 171):
        self._camera_id = camera_id
        self._width = width
        self._height = height
        self._use_case_idx = 0
        self._auto_exposure = True
        self._exposure = MOCK_USE_CASES[0][3]
        self._lock = threading.Lock()
        self._depth_callbacks: list[DepthDataCallback] = []
        self._exposure_callbacks: list[ExposureCallback] = []
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._rng = np.random.default_rng()
        self.closed = False

    def get_camera_id(self) -> str:
        return self._camera_id

    def get_camera_name(self) -> str:
        return "PICOFLEXX (mock)"

    def get_max_sensor_width(self) -> int:
        return self._width

    def get_max_sensor_height(self) -> int:
        return self._height

    def get_use_cases(self) -> list[str]:
        return [name for name, _, _, _ in MOCK_USE_CASES]

    def get_current_use_case(self) -> str:
        return MOCK_USE_CASES[self._use_case_idx][0]

    def set_use_case(self, use_case: str):
        names = self.get_use_cases()
        if use_case not in names:
            raise CameraError(0, f"Unknown use case {use_case}")
        with self._lock:
            self._use_case_idx = names.index(use_case)
            _, _, lo, hi = MOCK_USE_CASES[self._use_case_idx]
            exposure = min(max(self._exposure, lo), hi)
        self._report_exposure(exposure)

    def get_exposure_mode(self) -> bool:
        return self._auto_exposure

    def set_exposure_mode(self, auto: bool):
        self._check_open()
        self._auto_exposure = auto

    def get_exposure_limits(self) -> tuple[int, int]:
        _, _, lo, hi = MOCK_USE_CASES[self._use_case_idx]
        return lo, hi

    def set_exposure_time(self, exposure: int):
        self._check_open()
        if self._auto_exposure:
            raise CameraError(DEVICE_IS_BUSY, "Exposure is managed by auto exposure")
        lo, hi = self.get_exposure_limits()
        if not lo <= exposure <= hi:
            raise CameraError(0, f"Exposure {exposure} outside [{lo}, {hi}]")
        self._report_exposure(exposure)

    def get_frame_rate(self) -> int:
        return MOCK_USE_CASES[self._use_case_idx][1]

    def get_max_frame_rate(self) -> int:
        return MOCK_USE_CASES[self._use_case_idx][1]

    def add_encoded_depth_data_callback(self, callback: DepthDataCallback):
        self._depth_callbacks.append(callback)

    def add_exposure_time_callback(self, callback: ExposureCallback):
        self._exposure_callbacks.append(callback)

    def start_capture(self):
        self._check_open()
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._capture_loop, name="mock-camera", daemon=True)
        self._thread.start()
        logger.info(f"Mock camera {self._camera_id} capturing at {self.get_frame_rate()} fps")

    def close(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self.closed = True

    def _check_open(self):
        if self.closed:
            raise CameraError(DISCONNECTED, "Camera is closed")

    def _report_exposure(self, exposure: int):
        with self._lock:
            self._exposure = exposure
        for callback in self._exposure_callbacks:
            callback([0, exposure])

    def _render_frame(self) -> bytes:
        """A tilted plane with sensor noise, as uint16 millimetres."""
        yy, xx = np.mgrid[0:self._height, 0:self._width]
        depth = 800 + 2 * xx + yy + self._rng.normal(0, 4, size=xx.shape)
        return depth.clip(0, 65535).astype(np.uint16).tobytes()

    def _capture_loop(self):
        while not self._stop_event.is_set():
            loop_start = time.monotonic()
            frame = self._render_frame()
            for callback in self._depth_callbacks:
                try:
                    callback(frame)
                except Exception as e:
                    logger.warning(f"Depth callback failed: {e}")

            if self._auto_exposure:
                lo, hi = self.get_exposure_limits()
                drift = int(self._rng.integers(-20, 21))
                self._report_exposure(min(max(self._exposure + drift, lo), hi))

            elapsed = time.monotonic() - loop_start
            sleep_time = 1.0 / self.get_frame_rate() - elapsed
            if sleep_time > 0:
                self._stop_event.wait(sleep_time)
