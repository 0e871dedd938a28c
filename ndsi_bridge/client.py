"""
NDSI sensor client - subscribes to a sensor's frames and control updates.

Usage:
    from ndsi_bridge import NdsiClient

    client = NdsiClient(descriptor)   # attach descriptor from the announcer
    client.connect()
    client.refresh_controls()
    header, depth = client.get_frame()
    update = client.get_notification()
    client.set_control_value("auto_exposure", False)
    client.disconnect()
"""

import json
import logging
from typing import Any, Optional

import zmq
import zstandard

from .wire import (
    ACTION_REFRESH_CONTROLS,
    ACTION_SET_CONTROL_VALUE,
    FrameHeader,
    ProtocolError,
    decode_frame_message,
    encode_command,
)

logger = logging.getLogger(__name__)


class NdsiClient:
    """Consumer side of one sensor's three sockets."""

    def __init__(self, descriptor: dict, timeout_ms: int = 1000, decompress: bool = True):
        """
        Args:
            descriptor: Attach descriptor with data/notification/command URLs
            timeout_ms: Receive timeout in milliseconds
            decompress: Undo the sensor's zstd compression on payloads
        """
        self.descriptor = descriptor
        self.sensor_uuid = descriptor["uuid"]
        self.timeout_ms = timeout_ms
        self.decompress = decompress

        self.context: Optional[zmq.Context] = None
        self.data: Optional[zmq.Socket] = None
        self.note: Optional[zmq.Socket] = None
        self.cmd: Optional[zmq.Socket] = None
        self.connected = False
        self._decompressor = zstandard.ZstdDecompressor()

    def _sub(self, url: str) -> zmq.Socket:
        sock = self.context.socket(zmq.SUB)
        sock.setsockopt(zmq.RCVTIMEO, self.timeout_ms)
        sock.setsockopt(zmq.LINGER, 0)
        sock.setsockopt(zmq.SUBSCRIBE, self.sensor_uuid.encode("utf-8"))
        sock.connect(url)
        return sock

    def connect(self) -> bool:
        if self.connected:
            return True

        self.context = zmq.Context()
        try:
            self.data = self._sub(self.descriptor["data_url"])
            self.note = self._sub(self.descriptor["notification_url"])
            self.cmd = self.context.socket(zmq.PUSH)
            self.cmd.setsockopt(zmq.LINGER, 0)
            self.cmd.connect(self.descriptor["command_url"])
        except zmq.ZMQError as e:
            logger.error(f"Could not connect to sensor {self.sensor_uuid}: {e}")
            self.disconnect()
            return False

        self.connected = True
        logger.info(f"Connected to sensor {self.descriptor.get('name')} ({self.sensor_uuid})")
        return True

    def disconnect(self):
        self.connected = False
        for sock in (self.data, self.note, self.cmd):
            if sock is not None:
                sock.close()
        self.data = self.note = self.cmd = None

        if self.context:
            self.context.term()
            self.context = None

    def get_frame(self) -> Optional[tuple[FrameHeader, bytes]]:
        """
        Receive the next frame.

        Returns:
            (header, payload) or None on timeout or a malformed frame
        """
        try:
            parts = self.data.recv_multipart()
            _, header, payload = decode_frame_message(parts)
        except zmq.Again:
            logger.warning("Timeout waiting for frame")
            return None
        except ProtocolError as e:
            logger.error(f"Malformed frame: {e}")
            return None

        if self.decompress:
            payload = self._decompressor.decompress(payload)
        return header, payload

    def get_notification(self) -> Optional[dict]:
        try:
            _, body = self.note.recv_multipart()
        except zmq.Again:
            return None
        return json.loads(body)

    def send_command(self, action: str, control_id: Optional[str] = None, value: Any = None):
        self.cmd.send_multipart(encode_command(self.sensor_uuid, action, control_id, value))

    def refresh_controls(self):
        self.send_command(ACTION_REFRESH_CONTROLS)

    def set_control_value(self, control_id: str, value: Any):
        self.send_command(ACTION_SET_CONTROL_VALUE, control_id, value)
