"""
Base class for sensors published over NDSI.

Each sensor owns three sockets bound on the manager's listen address:

    data          PUB   frames
    notification  PUB   control updates
    command       PULL  refresh_controls / set_control_value

Socket methods must only be called from the manager's service loop.
"""

import enum
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import zmq

from .controls import Control, ControlRegistry, ControlType
from .wire import (
    ACTION_REFRESH_CONTROLS,
    ACTION_SET_CONTROL_VALUE,
    FrameHeader,
    ProtocolError,
    attach_descriptor,
    encode_frame_message,
    encode_notification,
    parse_command,
)

logger = logging.getLogger(__name__)


class SensorState(enum.Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    REBINDING = "rebinding"
    CLOSED = "closed"


class NdsiSensor(ABC):
    """A discoverable data source with controls."""

    def __init__(self, sensor_type: str, sensor_uuid: str, sensor_name: str, manager):
        self.sensor_type = sensor_type
        self.sensor_uuid = sensor_uuid
        self.sensor_name = sensor_name
        self.manager = manager
        self.controls = ControlRegistry()
        self.state = SensorState.UNBOUND

        self._data: Optional[zmq.Socket] = None
        self._note: Optional[zmq.Socket] = None
        self._cmd: Optional[zmq.Socket] = None
        self.data_url: Optional[str] = None
        self.notification_url: Optional[str] = None
        self.command_url: Optional[str] = None

        self._data_sequence = 0
        self._note_sequence = 0

    def __repr__(self):
        return f"{type(self).__name__}({self.sensor_name!r}, {self.sensor_uuid})"

    @property
    @abstractmethod
    def width(self) -> int: ...

    @property
    @abstractmethod
    def height(self) -> int: ...

    @property
    def data_sequence(self) -> int:
        return self._data_sequence

    @property
    def notification_sequence(self) -> int:
        return self._note_sequence

    def ping(self) -> bool:
        return True

    # Sockets

    def setup_sockets(self):
        """
        Bind the three sockets on the manager's current listen address.

        On a rebind the previous sockets stay open until every new socket is
        bound. If a bind fails the old sockets remain in place and the error
        propagates.
        """
        logger.debug(f"setup_sockets() sensor_uuid={self.sensor_uuid}")
        rebinding = self.state is SensorState.BOUND
        if rebinding:
            self.state = SensorState.REBINDING

        bound: list[tuple[zmq.Socket, str]] = []
        try:
            for socket_type in (zmq.PUB, zmq.PUB, zmq.PULL):
                bound.append(self.manager.bind(socket_type))
        except Exception:
            for sock, _ in bound:
                sock.close(linger=0)
            self.state = SensorState.BOUND if rebinding else SensorState.UNBOUND
            raise

        old = [s for s in (self._data, self._note, self._cmd) if s is not None]

        (self._data, self.data_url), (self._note, self.notification_url), (self._cmd, self.command_url) = bound
        self.state = SensorState.BOUND
        logger.info(
            f"{self}: data={self.data_url} notification={self.notification_url} command={self.command_url}"
        )

        for sock in old:
            sock.close(linger=0)

    def unlink(self):
        """Close all sockets. Subclasses release their hardware, then call this."""
        for sock in (self._data, self._note, self._cmd):
            if sock is not None:
                sock.close(linger=0)
        self._data = self._note = self._cmd = None
        self._data_sequence = 0
        self._note_sequence = 0
        self.state = SensorState.CLOSED

    def attach_descriptor(self) -> dict:
        return attach_descriptor(
            self.sensor_name,
            self.sensor_uuid,
            self.sensor_type,
            self.notification_url,
            self.command_url,
            self.data_url,
        )

    # Commands

    def poll_commands(self):
        """Handle every command already waiting on the command socket."""
        if self._cmd is None:
            return

        while True:
            try:
                parts = self._cmd.recv_multipart(zmq.NOBLOCK)
            except zmq.Again:
                return

            logger.debug(f"{self}: command {parts}")
            try:
                command = parse_command(parts)
            except ProtocolError as e:
                logger.warning(f"{self}: dropping command: {e}")
                continue

            if command.action == ACTION_REFRESH_CONTROLS:
                self.refresh_controls()
            elif command.action == ACTION_SET_CONTROL_VALUE:
                self.set_control_value(command.control_id, command.value.value)

    # Frames

    @abstractmethod
    def has_frame(self) -> bool:
        """Cheap, non-blocking check for a pending frame."""

    @abstractmethod
    def publish_frame(self):
        """Publish one pending frame; may wait briefly for it."""

    def send_frame(self, flag: int, timestamp: float, extra: int, payload: bytes):
        header = FrameHeader(
            flag,
            self.width,
            self.height,
            self._data_sequence,
            timestamp,
            extra,
        )
        if self.send_frame_header(header, payload):
            self._data_sequence += 1

    def send_frame_header(self, header: FrameHeader, payload: bytes) -> bool:
        """Send a frame with a prepared header. Returns False if it was dropped."""
        if self._data is None:
            logger.warning(f"{self}: dropping frame {header.index}, sockets not bound")
            return False
        self._data.send_multipart(encode_frame_message(self.sensor_uuid, header, payload))
        return True

    # Controls

    def set_control_value(self, control_id: str, value: Any):
        control = self.controls.get(control_id)
        if control is None:
            logger.warning(f"Tried to set value on unknown control! control={control_id} value={value!r}")
            return

        try:
            value_type = ControlType.of(value)
        except TypeError:
            value_type = None

        if value_type is not control.value_type:
            logger.warning(
                f"Type mismatch for control {control_id}: expected {control.value_type.dtype}, "
                f"got {type(value).__name__}"
            )
            return

        if control.setter is None:
            logger.warning(f"Control {control_id} is read-only, ignoring value {value!r}")
            return

        control.setter(control, value)
        self.controls.consume(control)
        self.send_control_state(control)

    def refresh_controls(self):
        for control in self.controls:
            self.send_control_state(control)

    def send_updated_controls(self):
        for control in self.controls.drain_dirty():
            self.send_control_state(control)

    def send_control_state(self, control: Control):
        if control.control_id is None:
            return
        if self._note is None:
            logger.warning(f"{self}: cannot notify {control.control_id}, sockets not bound")
            return

        message = encode_notification(
            self.sensor_uuid,
            control.control_id,
            self._note_sequence,
            control.changes(),
        )
        self._note_sequence += 1
        self._note.send_multipart(message)
