"""Attach/detach announcements for discovery."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

import zmq

logger = logging.getLogger(__name__)


class SensorAnnouncer(ABC):
    """Receives sensor attach descriptors and detach notices."""

    @abstractmethod
    def attach(self, descriptor: dict): ...

    @abstractmethod
    def detach(self, sensor_uuid: str): ...

    def close(self):
        pass


class LoggingAnnouncer(SensorAnnouncer):
    def attach(self, descriptor: dict):
        logger.info(f"Sensor attached: {descriptor}")

    def detach(self, sensor_uuid: str):
        logger.info(f"Sensor detached: {sensor_uuid}")


class ZmqAnnouncer(SensorAnnouncer):
    """
    Publishes announcements on a PUB socket.

    Messages:
        [b"attach", json descriptor + host_name]
        [b"detach", json {"uuid", "host_name"}]
    """

    def __init__(self, endpoint: str, host_name: str, context: Optional[zmq.Context] = None):
        self.endpoint = endpoint
        self.host_name = host_name
        self._context = context or zmq.Context.instance()
        self._socket = self._context.socket(zmq.PUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.bind(endpoint)
        logger.info(f"Announcing sensors on {endpoint}")

    def attach(self, descriptor: dict):
        body = dict(descriptor, host_name=self.host_name)
        self._socket.send_multipart([b"attach", json.dumps(body).encode("utf-8")])

    def detach(self, sensor_uuid: str):
        body = {"uuid": sensor_uuid, "host_name": self.host_name}
        self._socket.send_multipart([b"detach", json.dumps(body).encode("utf-8")])

    def close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None
