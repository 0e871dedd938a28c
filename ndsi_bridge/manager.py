"""
Sensor coordinator.

Owns the sensor registry, the listen address and the service loop. ZMQ
sockets are not thread-safe, so every socket operation (bind, rebind,
unlink, send, receive) runs on the loop thread. Other threads submit that
work with _call_in_loop() and wait for it up to config.bind_timeout.
"""

import logging
import queue
import threading
from concurrent import futures
from typing import Callable, Optional

import zmq

from .announce import LoggingAnnouncer, SensorAnnouncer
from .config import BridgeConfig, detect_listen_address
from .sensor import NdsiSensor

logger = logging.getLogger(__name__)


class BindError(RuntimeError):
    """Sockets could not be bound on the listen address."""


class BindTimeoutError(BindError):
    """The service loop did not complete a bind in time."""


class NdsiManager:
    """Registers sensors, binds their sockets and services them."""

    def __init__(
        self,
        host_name: Optional[str] = None,
        config: Optional[BridgeConfig] = None,
        announcer: Optional[SensorAnnouncer] = None,
        address_provider: Optional[Callable[[], str]] = None,
        context: Optional[zmq.Context] = None,
        on_rescan: Optional[Callable[[], None]] = None,
    ):
        self.config = config or BridgeConfig()
        self.host_name = host_name or self.config.host_name
        self.announcer = announcer or LoggingAnnouncer()
        self.address_provider = address_provider or self._default_address
        self.on_rescan = on_rescan

        self._owns_context = context is None
        self.context = context or zmq.Context()
        self.current_listen_address: Optional[str] = None

        self._sensors: dict[str, NdsiSensor] = {}
        self._sensors_lock = threading.Lock()
        self._tasks: queue.Queue = queue.Queue()
        self._ready = threading.Event()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def _default_address(self) -> str:
        return self.config.listen_address or detect_listen_address()

    @property
    def sensors(self) -> dict[str, NdsiSensor]:
        with self._sensors_lock:
            return dict(self._sensors)

    @property
    def running(self) -> bool:
        return self._running

    # Lifecycle

    def start(self):
        if self._running:
            return
        if self.current_listen_address is None:
            self.current_listen_address = self.address_provider()
        logger.info(f"Starting NDSI manager '{self.host_name}' on {self.current_listen_address}")

        self._running = True
        self._thread = threading.Thread(target=self._serve, name="ndsi-manager", daemon=True)
        self._thread.start()

    def stop(self):
        """Stop the loop, detach every sensor and release the ZMQ context."""
        if self._running:
            self._running = False
            self._ready.set()
            if self._thread is not None:
                self._thread.join(timeout=5.0)
            self._thread = None

        # Waiters submitted during shutdown still get an answer
        self._run_tasks()
        self.remove_all_sensors()
        self.announcer.close()

        if self._owns_context and not self.context.closed:
            self.context.term()
        logger.info("NDSI manager stopped")

    # Loop

    def _call_in_loop(self, fn: Callable, timeout: Optional[float] = None):
        if not self._running or threading.current_thread() is self._thread:
            return fn()

        future: futures.Future = futures.Future()
        self._tasks.put((fn, future))
        self._ready.set()

        timeout = timeout if timeout is not None else self.config.bind_timeout
        try:
            return future.result(timeout=timeout)
        except futures.TimeoutError as e:
            if not future.cancel():
                # Already running on the loop; it finishes shortly
                return future.result()
            raise BindTimeoutError(f"Service loop did not respond within {timeout}s") from e

    def _run_tasks(self):
        while True:
            try:
                fn, future = self._tasks.get_nowait()
            except queue.Empty:
                return
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn())
            except Exception as e:
                future.set_exception(e)

    def service_sensors(self) -> bool:
        """
        One pass over every sensor: commands, one frame, control updates.

        A failure in one sensor is logged and does not stop the others.
        Returns True if any sensor published a frame.
        """
        published = False
        for sensor in self.sensors.values():
            try:
                sensor.poll_commands()
                if sensor.has_frame():
                    sensor.publish_frame()
                    published = True
                sensor.send_updated_controls()
            except Exception:
                logger.exception(f"Error servicing {sensor}")
        return published

    def _serve(self):
        logger.info("Service loop started")
        while self._running:
            self._ready.clear()
            self._run_tasks()
            if not self.service_sensors():
                self._ready.wait(self.config.idle_wait)
        logger.info("Service loop stopped")

    def notify_sensor_ready(self):
        """Wake the service loop; some sensor probably has data."""
        self._ready.set()

    # Sockets

    def bind(self, socket_type: int) -> tuple[zmq.Socket, str]:
        """Bind a socket to an ephemeral port on the listen address."""
        address = self.current_listen_address
        if address is None:
            raise BindError("bind() called with no listen address")

        sock = self.context.socket(socket_type)
        sock.setsockopt(zmq.LINGER, 0)
        try:
            port = sock.bind_to_random_port(f"tcp://{address}")
        except zmq.ZMQBaseError as e:
            sock.close()
            raise BindError(f"Failed to bind on {address}: {e}") from e
        return sock, f"tcp://{address}:{port}"

    # Sensors

    def add_sensor(self, sensor: NdsiSensor):
        """Bind the sensor's sockets, register it and announce it."""
        def add():
            if self.current_listen_address is None:
                self.current_listen_address = self.address_provider()
            try:
                sensor.setup_sockets()
            except Exception:
                sensor.unlink()
                raise

            with self._sensors_lock:
                previous = self._sensors.get(sensor.sensor_uuid)
                self._sensors[sensor.sensor_uuid] = sensor
            if previous is not None and previous is not sensor:
                logger.warning(f"Replacing already registered sensor {previous}")
                self._unlink(previous)

            self.announcer.attach(sensor.attach_descriptor())
            logger.info(f"Added sensor {sensor}")

        try:
            self._call_in_loop(add)
        except BindTimeoutError:
            # Never reached the loop, so no sockets are bound; release the hardware
            self._unlink(sensor)
            raise
        self.notify_sensor_ready()

    def remove_sensor(self, sensor_uuid: str):
        def remove():
            with self._sensors_lock:
                sensor = self._sensors.pop(sensor_uuid, None)
            if sensor is None:
                return
            self._unlink(sensor)
            self.announcer.detach(sensor_uuid)
            logger.info(f"Removed sensor {sensor}")

        self._call_in_loop(remove)

    def remove_all_sensors(self):
        def remove_all():
            with self._sensors_lock:
                removed = list(self._sensors.values())
                self._sensors.clear()
            for sensor in removed:
                self._unlink(sensor)
                self.announcer.detach(sensor.sensor_uuid)
            if removed:
                logger.info(f"Removed {len(removed)} sensor(s)")

        self._call_in_loop(remove_all)

    def _unlink(self, sensor: NdsiSensor):
        try:
            sensor.unlink()
        except Exception:
            logger.exception(f"Error unlinking {sensor}")

    def check_all_sensors(self) -> dict[str, bool]:
        """Ping every sensor; detach the ones that no longer answer."""
        results = {}
        for sensor_uuid, sensor in self.sensors.items():
            try:
                healthy = sensor.ping()
            except Exception:
                logger.exception(f"Ping of {sensor} raised")
                healthy = False

            results[sensor_uuid] = healthy
            if not healthy:
                logger.warning(f"{sensor} failed ping, detaching")
                self.remove_sensor(sensor_uuid)
        return results

    # Network

    def set_listen_address(self, address: str):
        """Externally reachable address changed; rebind if it differs."""
        if address == self.current_listen_address:
            return
        logger.info(f"Listen address changed: {self.current_listen_address} -> {address}")
        self._call_in_loop(lambda: self._rebind_all(address))

    def reset_network(self, soft: bool = False):
        """
        Re-derive the listen address and rebind.

        Soft: every sensor rebinds in place and keeps its frame numbering.
        Hard: every sensor is detached, then on_rescan recreates them.
        """
        address = self.address_provider()
        logger.info(f"reset_network(soft={soft}) address={address}")

        if soft:
            self._call_in_loop(lambda: self._rebind_all(address))
            return

        self.remove_all_sensors()
        self._call_in_loop(lambda: setattr(self, "current_listen_address", address))
        if self.on_rescan is not None:
            self.on_rescan()

    def _rebind_all(self, address: str):
        self.current_listen_address = address
        failed = []
        for sensor in self.sensors.values():
            try:
                sensor.setup_sockets()
            except BindError as e:
                logger.error(f"Could not rebind {sensor}: {e}")
                failed.append(sensor)
                continue
            self.announcer.detach(sensor.sensor_uuid)
            self.announcer.attach(sensor.attach_descriptor())

        if failed:
            raise BindError(f"Failed to rebind {len(failed)} sensor(s) on {address}")
