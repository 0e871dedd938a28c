"""NDSI bridge - publishes attached depth cameras as NDSI sensors over ZeroMQ."""

from .client import NdsiClient
from .config import BridgeConfig, detect_listen_address
from .controls import Control, ControlRegistry, ControlType
from .device import CameraDevice, CameraError, MockCameraDevice
from .manager import BindError, BindTimeoutError, NdsiManager
from .picoflexx import CompressionStats, PicoflexxSensor
from .sensor import NdsiSensor, SensorState
from .timers import ScheduledTask, TimerService
from .wire import ControlChanges, FrameHeader, ProtocolError

__all__ = [
    "NdsiClient",
    "BridgeConfig",
    "detect_listen_address",
    "Control",
    "ControlRegistry",
    "ControlType",
    "CameraDevice",
    "CameraError",
    "MockCameraDevice",
    "BindError",
    "BindTimeoutError",
    "NdsiManager",
    "CompressionStats",
    "PicoflexxSensor",
    "NdsiSensor",
    "SensorState",
    "ScheduledTask",
    "TimerService",
    "ControlChanges",
    "FrameHeader",
    "ProtocolError",
]
