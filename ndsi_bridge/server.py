#!/usr/bin/env python3
"""
NDSI bridge - publishes an attached depth camera over NDSI sockets.

Consumers subscribe to the announced data/notification URLs and push
commands to the command URL; they never talk to the camera directly.

Usage:
    python -m ndsi_bridge.server [options]

    NDSI_MOCK=1 python -m ndsi_bridge.server     # synthetic camera
"""

import argparse
import importlib
import logging
import signal
import threading
import time
from typing import Callable, Optional

from .announce import SensorAnnouncer, ZmqAnnouncer
from .config import BridgeConfig, detect_listen_address
from .device import CameraDevice, MockCameraDevice
from .manager import NdsiManager
from .picoflexx import PicoflexxSensor
from .timers import TimerService

logger = logging.getLogger(__name__)

CameraOpener = Callable[[], Optional[CameraDevice]]


def load_opener(spec: str) -> CameraOpener:
    """Resolve a "module:callable" camera opener."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Driver must be given as module:callable, got {spec!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


class NdsiService:
    """Host-side glue: attaches cameras, watches the network, resets the manager."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        opener: Optional[CameraOpener] = None,
        announcer: Optional[SensorAnnouncer] = None,
        timers: Optional[TimerService] = None,
    ):
        self.config = config or BridgeConfig.from_env()
        self.opener = opener or MockCameraDevice
        self.timers = timers or TimerService()
        self.manager = NdsiManager(
            self.config.host_name,
            config=self.config,
            announcer=announcer,
            address_provider=self._listen_address,
            on_rescan=self.attach,
        )
        if announcer is None and self.config.announce_endpoint:
            self.manager.announcer = ZmqAnnouncer(
                self.config.announce_endpoint,
                self.config.host_name,
                context=self.manager.context,
            )

        self._attaching = threading.Lock()
        self._watcher: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def sensors(self) -> dict:
        return self.manager.sensors

    def _listen_address(self) -> str:
        return self.config.listen_address or detect_listen_address()

    def start(self, watch_network: bool = True):
        self.manager.start()
        if watch_network and not self.config.listen_address:
            self._stop_event.clear()
            self._watcher = threading.Thread(target=self._watch_network, name="ndsi-network", daemon=True)
            self._watcher.start()

    def stop(self):
        self._stop_event.set()
        if self._watcher is not None:
            self._watcher.join(timeout=2.0)
            self._watcher = None
        self.manager.stop()
        self.timers.shutdown()

    def attach(self) -> bool:
        """Open the camera and publish it. Returns False if nothing attached."""
        if not self._attaching.acquire(blocking=False):
            logger.warning("Already in the process of connecting existing device")
            return False

        try:
            camera = self.opener()
            logger.info(f"Camera opener returned {camera}")
            if camera is None:
                return False
            self.manager.add_sensor(PicoflexxSensor(self.manager, camera, self.timers, self.config))
            return True
        finally:
            self._attaching.release()

    def detach_all(self):
        self.manager.remove_all_sensors()

    def restart_manager(self, soft: bool = False):
        self.manager.reset_network(soft=soft)

    def check_all_sensors(self) -> dict[str, bool]:
        return self.manager.check_all_sensors()

    def status(self) -> list[dict]:
        """Queue depth and last compression result per sensor."""
        result = []
        for sensor in self.sensors.values():
            entry = {
                "name": sensor.sensor_name,
                "uuid": sensor.sensor_uuid,
                "state": sensor.state.value,
                "frames_sent": sensor.data_sequence,
            }
            if isinstance(sensor, PicoflexxSensor):
                entry["frames_queued"] = sensor.queue_size
                entry["exposure"] = sensor.current_exposure
                entry["last_frame"] = sensor.last_compression.to_dict()
            result.append(entry)
        return result

    def _watch_network(self):
        """Poll the reachable address; a change rebinds every sensor."""
        while not self._stop_event.wait(self.config.address_poll_interval):
            address = detect_listen_address()
            if address == self.manager.current_listen_address:
                continue
            try:
                self.manager.set_listen_address(address)
            except Exception as e:
                logger.error(f"Rebind after address change failed: {e}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="NDSI bridge - publishes a depth camera over ZeroMQ"
    )
    parser.add_argument(
        "-a", "--listen-address",
        type=str,
        default=None,
        help="Address to bind and announce (default: detect)"
    )
    parser.add_argument(
        "-e", "--announce-endpoint",
        type=str,
        default=None,
        help="ZMQ PUB endpoint for attach/detach announcements"
    )
    parser.add_argument(
        "-d", "--driver",
        type=str,
        default=None,
        help="Camera opener as module:callable returning a CameraDevice"
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use the synthetic camera"
    )
    parser.add_argument(
        "-s", "--status-interval",
        type=float,
        default=10.0,
        help="Seconds between status log lines (default: 10)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = BridgeConfig.from_env(
        listen_address=args.listen_address,
        announce_endpoint=args.announce_endpoint,
    )
    if args.mock:
        config.mock = True

    if config.mock or not args.driver:
        opener = MockCameraDevice
    else:
        opener = load_opener(args.driver)

    service = NdsiService(config=config, opener=opener)
    running = threading.Event()
    running.set()

    # Handle signals for graceful shutdown
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        running.clear()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.start()
    if not service.attach():
        logger.warning("No camera attached; waiting for shutdown")

    try:
        last_status = time.time()
        while running.is_set():
            time.sleep(0.5)
            if time.time() - last_status >= args.status_interval:
                for entry in service.status():
                    logger.info(f"Status: {entry}")
                last_status = time.time()
    finally:
        service.stop()


if __name__ == "__main__":
    main()
