"""Pytest configuration."""

import itertools
import json
import os
import sys
import threading
import time
from collections import deque

import pytest
import zmq

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Always run in mock mode for tests
os.environ["NDSI_MOCK"] = "1"

from ndsi_bridge.announce import SensorAnnouncer
from ndsi_bridge.config import BridgeConfig
from ndsi_bridge.device import CameraDevice, CameraError
from ndsi_bridge.manager import NdsiManager
from ndsi_bridge.sensor import NdsiSensor
from ndsi_bridge.timers import ScheduledTask
from ndsi_bridge.wire import sensor_uuid_from_id


class FakeSocket:
    """Stands in for a bound ZMQ socket; records sends, serves queued receives."""

    def __init__(self, socket_type: int):
        self.socket_type = socket_type
        self.sent: list[list[bytes]] = []
        self.inbox: deque = deque()
        self.closed = False

    def send_multipart(self, parts):
        self.sent.append(list(parts))

    def recv_multipart(self, flags=0):
        if not self.inbox:
            raise zmq.Again()
        return self.inbox.popleft()

    def close(self, linger=None):
        self.closed = True


class FakeManager:
    """Hands out FakeSockets on increasing ports."""

    def __init__(self, address: str = "127.0.0.1"):
        self.current_listen_address = address
        self.sockets: list[FakeSocket] = []
        self.ready_count = 0
        self._ports = itertools.count(50000)

    def bind(self, socket_type: int):
        sock = FakeSocket(socket_type)
        self.sockets.append(sock)
        return sock, f"tcp://{self.current_listen_address}:{next(self._ports)}"

    def notify_sensor_ready(self):
        self.ready_count += 1


class RecordingAnnouncer(SensorAnnouncer):
    def __init__(self):
        self.events: list[tuple[str, object]] = []

    def attach(self, descriptor: dict):
        self.events.append(("attach", descriptor))

    def detach(self, sensor_uuid: str):
        self.events.append(("detach", sensor_uuid))


class ManualTimerService:
    """Deterministic timer service driven by advance()."""

    def __init__(self):
        self.now = 0.0
        self.tasks: list[ScheduledTask] = []

    def schedule(self, delay, fn):
        task = ScheduledTask(self.now + delay, fn)
        self.tasks.append(task)
        return task

    def advance(self, seconds: float):
        self.now += seconds
        due = sorted((t for t in self.tasks if t.deadline <= self.now), key=lambda t: t.deadline)
        for task in due:
            self.tasks.remove(task)
            if task._claim():
                task.fn()

    def shutdown(self):
        self.tasks.clear()


class FakeCamera(CameraDevice):
    """Scriptable royale camera."""

    LIMITS = {"MODE_A": (1, 2000), "MODE_B": (10, 1000)}
    FRAME_RATES = {"MODE_A": 5, "MODE_B": 10}

    def __init__(self, camera_id: str = "fake-0001"):
        self.camera_id = camera_id
        self.use_cases = ["MODE_A", "MODE_B"]
        self.current_use_case = "MODE_A"
        self.auto_exposure = True
        self.exposure_writes: list[int] = []
        self.mode_writes: list[bool] = []
        self.error: CameraError | None = None
        self.started = False
        self.closed = False
        self.depth_callbacks = []
        self.exposure_callbacks = []

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def get_camera_id(self):
        return self.camera_id

    def get_camera_name(self):
        return "Fake flexx"

    def get_max_sensor_width(self):
        return 224

    def get_max_sensor_height(self):
        return 171

    def get_use_cases(self):
        return list(self.use_cases)

    def get_current_use_case(self):
        return self.current_use_case

    def set_use_case(self, use_case):
        self._maybe_fail()
        self.current_use_case = use_case

    def get_exposure_mode(self):
        return self.auto_exposure

    def set_exposure_mode(self, auto):
        self._maybe_fail()
        self.mode_writes.append(auto)
        self.auto_exposure = auto

    def get_exposure_limits(self):
        return self.LIMITS[self.current_use_case]

    def set_exposure_time(self, exposure):
        self._maybe_fail()
        self.exposure_writes.append(exposure)

    def get_frame_rate(self):
        return self.FRAME_RATES[self.current_use_case]

    def get_max_frame_rate(self):
        return self.FRAME_RATES[self.current_use_case]

    def start_capture(self):
        self.started = True

    def close(self):
        self.closed = True

    def add_encoded_depth_data_callback(self, callback):
        self.depth_callbacks.append(callback)

    def add_exposure_time_callback(self, callback):
        self.exposure_callbacks.append(callback)

    def emit_frame(self, data: bytes):
        for callback in self.depth_callbacks:
            callback(data)

    def emit_exposure(self, exposure: int):
        for callback in self.exposure_callbacks:
            callback([0, exposure])


class DummySensor(NdsiSensor):
    """Minimal sensor: frames from a deque, one integer exposure control."""

    width = 4
    height = 2

    def __init__(self, manager, device_id: str = "dummy-1"):
        super().__init__("dummy", sensor_uuid_from_id(device_id), f"Dummy {device_id}", manager)
        self.frames: deque = deque()
        self.setter_calls: list[int] = []
        self.healthy = True
        self.exposure = self.controls.register_int_control(
            "exposure_time",
            "Exposure time",
            default=100,
            min=1,
            max=1000,
            setter=self._set_exposure,
        )

    def _set_exposure(self, value: int):
        self.setter_calls.append(value)
        self.exposure.set(value)

    def ping(self):
        return self.healthy

    def has_frame(self):
        return bool(self.frames)

    def publish_frame(self):
        payload = self.frames.popleft()
        self.send_frame(0, time.time(), 0, payload)


class SlowSensor(DummySensor):
    """Holds the service loop inside publish_frame until released."""

    def __init__(self, manager):
        super().__init__(manager, "slow-1")
        self.entered = threading.Event()
        self.release = threading.Event()

    def publish_frame(self):
        self.entered.set()
        self.release.wait(5.0)
        super().publish_frame()


def notifications(sock: FakeSocket) -> list[dict]:
    return [json.loads(parts[1]) for parts in sock.sent]


@pytest.fixture
def fake_manager():
    return FakeManager()


@pytest.fixture
def fake_camera():
    return FakeCamera()


@pytest.fixture
def timers():
    return ManualTimerService()


@pytest.fixture
def announcer():
    return RecordingAnnouncer()


@pytest.fixture
def config():
    return BridgeConfig(listen_address="127.0.0.1", publish_timeout=0.05, bind_timeout=1.0, idle_wait=0.01)


@pytest.fixture
def manager(config, announcer):
    manager = NdsiManager("test-host", config=config, announcer=announcer)
    yield manager
    manager.stop()
