"""
pmd pico flexx (royale) depth camera as an NDSI sensor.

The camera driver pushes encoded depth frames from its own thread into a
bounded queue. The manager's service loop pops them, compresses them with
zstd and publishes them on the data socket.

Controls:
    exposure_time   integer, read-only while auto exposure is on
    auto_exposure   bool
    frame_rate      integer, read-only
    usecase         index into the camera's use cases
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Optional

import zstandard

from .config import BridgeConfig
from .device import DEVICE_IS_BUSY, DISCONNECTED, TIMEOUT, CameraDevice, CameraError
from .sensor import NdsiSensor
from .timers import ScheduledTask, TimerService
from .wire import FLAG_ALL, ControlChanges, sensor_uuid_from_id

logger = logging.getLogger(__name__)

SENSOR_TYPE = "royale_full"

CONTROL_USE_CASE = "usecase"
CONTROL_AUTO_EXPOSURE = "auto_exposure"
CONTROL_EXPOSURE_TIME = "exposure_time"
CONTROL_FRAME_RATE = "frame_rate"


@dataclass
class QueuedCapture:
    encoded: bytes
    timestamp: float


@dataclass
class CompressionStats:
    """Size and timing of the most recently published frame."""
    compressed_size: int = 0
    uncompressed_size: int = 0
    time_micros: int = 0
    name: str = "zstd"

    @property
    def ratio(self) -> float:
        if self.compressed_size == 0:
            return 0.0
        return self.uncompressed_size / self.compressed_size

    def to_dict(self) -> dict:
        return {
            "compressed_size": self.compressed_size,
            "uncompressed_size": self.uncompressed_size,
            "ratio": round(self.ratio, 3),
            "time_micros": self.time_micros,
            "name": self.name,
        }


class PicoflexxSensor(NdsiSensor):
    """Publishes a royale camera's depth stream and exposes its controls."""

    def __init__(
        self,
        manager,
        camera: CameraDevice,
        timers: TimerService,
        config: Optional[BridgeConfig] = None,
    ):
        camera_id = camera.get_camera_id()
        super().__init__(
            SENSOR_TYPE,
            sensor_uuid_from_id(camera_id),
            f"{camera.get_camera_name()} - {camera_id}",
            manager,
        )
        self.camera = camera
        self.timers = timers
        self.config = config or BridgeConfig()

        self.use_cases = camera.get_use_cases()
        self._width = camera.get_max_sensor_width()
        self._height = camera.get_max_sensor_height()

        self._queue: queue.Queue[QueuedCapture] = queue.Queue(maxsize=self.config.queue_capacity)
        self._compressor = zstandard.ZstdCompressor(level=self.config.compression_level)
        self.last_compression = CompressionStats()

        self._exposure_lock = threading.Lock()
        self._pending_exposure: Optional[ScheduledTask] = None

        # Updating any of these values flags its group dirty; the manager
        # sends the notification on its next cycle.
        c = self.controls
        self._exposure = c.register_int_control(
            CONTROL_EXPOSURE_TIME,
            "Exposure time",
            default=0,
            getter=self._describe_exposure,
            setter=self._schedule_exposure,
        )
        self._auto_exposure = c.register_bool_control(
            CONTROL_AUTO_EXPOSURE,
            "Auto exposure",
            default=True,
            setter=self._apply_auto_exposure,
        )
        self._min_exposure = c.register(None, None, None, 0, group_key=CONTROL_EXPOSURE_TIME)
        self._max_exposure = c.register(None, None, None, 2000, group_key=CONTROL_EXPOSURE_TIME)
        self._frame_rate = c.register_int_control(
            CONTROL_FRAME_RATE,
            "Frame rate",
            default=2,
            getter=self._describe_frame_rate,
        )
        self._max_frame_rate = c.register(None, None, None, 2, group_key=CONTROL_FRAME_RATE)
        self._use_case = c.register_string_map_control(
            CONTROL_USE_CASE,
            "Use Case",
            default=0,
            values=self.use_cases,
            setter=self._apply_use_case,
        )

        logger.info(f"Camera use cases: {self.use_cases}")
        logger.info(f"Camera name: {camera.get_camera_name()}, id: {camera_id}")
        logger.info(f"Camera resolution: {self._width}x{self._height}")

        camera.add_encoded_depth_data_callback(self._on_depth_data)
        camera.add_exposure_time_callback(self._on_exposure_time)
        camera.start_capture()

        self.update_control_state()

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def current_exposure(self) -> int:
        return self._exposure.value

    # Driver callbacks (camera thread)

    def _on_depth_data(self, encoded: bytes):
        try:
            self._queue.put_nowait(QueuedCapture(encoded, time.time()))
        except queue.Full:
            logger.warning(f"{self}: capture queue full ({self.config.queue_capacity}), dropping frame")
        self.manager.notify_sensor_ready()

    def _on_exposure_time(self, values: list[int]):
        self._exposure.set(values[1])

    # Service loop

    def has_frame(self) -> bool:
        return not self._queue.empty()

    def publish_frame(self):
        try:
            capture = self._queue.get(timeout=self.config.publish_timeout)
        except queue.Empty:
            logger.warning(f"{self}: Timed out waiting for data")
            return

        start = time.perf_counter_ns()
        compressed = self._compressor.compress(capture.encoded)
        elapsed_ns = time.perf_counter_ns() - start

        self.last_compression = CompressionStats(
            compressed_size=len(compressed),
            uncompressed_size=len(capture.encoded),
            time_micros=elapsed_ns // 1000,
        )

        self.send_frame(FLAG_ALL, capture.timestamp, self._exposure.value, compressed)

    def ping(self) -> bool:
        """Round-trip an exposure write to check the camera still answers."""
        try:
            original_mode = self._auto_exposure.value
            exposure = min(max(self._exposure.value, self._min_exposure.value), self._max_exposure.value)
            self.camera.set_exposure_mode(False)
            self.camera.set_exposure_time(exposure)
            self.camera.set_exposure_mode(original_mode)
        except CameraError as e:
            if e.code == DEVICE_IS_BUSY:
                logger.warning(f"{self}: Busy {e}")
                return True
            if e.code in (DISCONNECTED, TIMEOUT):
                logger.warning(f"{self}: Disconnected {e}")
                return False
            logger.exception(f"{self}: ping failed with code {e.code}")
            return False
        return True

    def unlink(self):
        with self._exposure_lock:
            if self._pending_exposure is not None:
                self._pending_exposure.cancel()
                self._pending_exposure = None

        super().unlink()

        try:
            self.camera.close()
        except CameraError as e:
            logger.warning(f"{self}: error closing camera: {e}")

        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    # Controls

    def update_control_state(self, mark_exposure: bool = False):
        """
        Re-read every hardware-derived control and apply them together.

        The camera is queried before the registry lock is taken; driver
        callbacks that fire during a query must not wait on it.
        """
        use_case = self.camera.get_current_use_case()
        use_case_idx = self.use_cases.index(use_case) if use_case in self.use_cases else 0
        auto_exposure = self.camera.get_exposure_mode()
        min_exposure, max_exposure = self.camera.get_exposure_limits()
        frame_rate = self.camera.get_frame_rate()
        max_frame_rate = self.camera.get_max_frame_rate()

        with self.controls.batch():
            self._use_case.set(use_case_idx)
            self._auto_exposure.set(auto_exposure)
            self._frame_rate.set(frame_rate)
            self._max_frame_rate.set(max_frame_rate)
            self._min_exposure.set(min_exposure)
            self._max_exposure.set(max_exposure)
            if mark_exposure:
                # exposure_time flips between read-only and writable
                self.controls.mark_dirty(CONTROL_EXPOSURE_TIME)

    def _describe_exposure(self, changes: ControlChanges):
        changes.readonly = self._auto_exposure.value
        changes.min = self._min_exposure.value
        changes.max = self._max_exposure.value
        changes.default = self._max_exposure.value

    def _describe_frame_rate(self, changes: ControlChanges):
        changes.min = 1
        changes.max = self._max_frame_rate.value
        changes.default = self._max_frame_rate.value

    def _schedule_exposure(self, value: int):
        """Debounce exposure writes; only the last request in a burst reaches the camera."""
        with self._exposure_lock:
            if self._pending_exposure is not None:
                self._pending_exposure.cancel()
            self._pending_exposure = self.timers.schedule(
                self.config.exposure_debounce,
                lambda: self._apply_exposure(value),
            )

    def _apply_exposure(self, value: int):
        try:
            self.camera.set_exposure_time(value)
        except CameraError as e:
            logger.warning(f"{self}: could not set exposure to {value}: {e}")

    def _apply_auto_exposure(self, value: bool):
        try:
            self.camera.set_exposure_mode(value)
        except CameraError as e:
            logger.warning(f"{self}: could not set auto exposure to {value}: {e}")
            return

        self.update_control_state(mark_exposure=True)

    def _apply_use_case(self, index: int):
        try:
            self.camera.set_use_case(self.use_cases[index])
        except CameraError as e:
            logger.warning(f"{self}: could not set use case {self.use_cases[index]}: {e}")
            return

        self.update_control_state(mark_exposure=True)
