"""Tests for the sensor coordinator, on real ZMQ sockets bound to localhost."""

import json
import logging
import time

import pytest
import zmq

from conftest import DummySensor, SlowSensor
from ndsi_bridge.announce import LoggingAnnouncer, SensorAnnouncer, ZmqAnnouncer
from ndsi_bridge.client import NdsiClient
from ndsi_bridge.config import BridgeConfig
from ndsi_bridge.manager import BindError, BindTimeoutError, NdsiManager
from ndsi_bridge.sensor import SensorState


class BrokenSensor(DummySensor):
    def poll_commands(self):
        raise RuntimeError("command socket exploded")


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class TestSensors:
    def test_add_binds_and_announces(self, manager, announcer):
        sensor = DummySensor(manager)
        manager.add_sensor(sensor)

        assert sensor.state is SensorState.BOUND
        assert sensor.data_url.startswith("tcp://127.0.0.1:")
        assert len({sensor.data_url, sensor.notification_url, sensor.command_url}) == 3
        assert manager.sensors == {sensor.sensor_uuid: sensor}
        assert announcer.events == [("attach", sensor.attach_descriptor())]

    def test_add_duplicate_uuid_replaces(self, manager):
        first = DummySensor(manager)
        second = DummySensor(manager)
        manager.add_sensor(first)
        manager.add_sensor(second)

        assert manager.sensors[second.sensor_uuid] is second
        assert first.state is SensorState.CLOSED

    def test_remove(self, manager, announcer):
        sensor = DummySensor(manager)
        manager.add_sensor(sensor)
        manager.remove_sensor(sensor.sensor_uuid)

        assert manager.sensors == {}
        assert sensor.state is SensorState.CLOSED
        assert announcer.events[-1] == ("detach", sensor.sensor_uuid)

        # Unknown uuids are ignored
        manager.remove_sensor("nope")

    def test_bind_failure(self, announcer):
        manager = NdsiManager("test-host", config=BridgeConfig(listen_address="192.0.2.1"), announcer=announcer)
        sensor = DummySensor(manager)
        try:
            with pytest.raises(BindError):
                manager.add_sensor(sensor)
            assert manager.sensors == {}
            assert sensor.state is SensorState.CLOSED
            assert announcer.events == []
        finally:
            manager.stop()

    def test_stop_detaches_everything(self, config, announcer):
        manager = NdsiManager("test-host", config=config, announcer=announcer)
        sensors = [DummySensor(manager, f"dummy-{i}") for i in range(2)]
        for sensor in sensors:
            manager.add_sensor(sensor)

        manager.stop()

        assert manager.sensors == {}
        assert all(s.state is SensorState.CLOSED for s in sensors)
        assert manager.context.closed


class TestService:
    def test_publishes_one_frame_per_pass(self, manager):
        sensor = DummySensor(manager)
        manager.add_sensor(sensor)
        sensor.frames.extend([b"a", b"b"])

        assert manager.service_sensors()
        assert sensor.data_sequence == 1
        assert manager.service_sensors()
        assert not manager.service_sensors()
        assert sensor.data_sequence == 2

    def test_failing_sensor_does_not_stop_others(self, manager, caplog):
        broken = BrokenSensor(manager, "broken-1")
        healthy = DummySensor(manager, "healthy-1")
        manager.add_sensor(broken)
        manager.add_sensor(healthy)
        healthy.frames.append(b"x")

        assert manager.service_sensors()
        assert healthy.data_sequence == 1
        assert "command socket exploded" in caplog.text

    def test_check_all_sensors_detaches_unhealthy(self, manager, announcer):
        good = DummySensor(manager, "good-1")
        bad = DummySensor(manager, "bad-1")
        bad.healthy = False
        manager.add_sensor(good)
        manager.add_sensor(bad)

        results = manager.check_all_sensors()

        assert results == {good.sensor_uuid: True, bad.sensor_uuid: False}
        assert list(manager.sensors) == [good.sensor_uuid]
        assert ("detach", bad.sensor_uuid) in announcer.events


class TestNetwork:
    def test_soft_reset_keeps_sequence(self, manager, announcer):
        sensor = DummySensor(manager)
        manager.add_sensor(sensor)
        sensor.send_frame(0, 0.0, 0, b"a")
        sensor.send_frame(0, 0.0, 0, b"b")
        old_urls = (sensor.data_url, sensor.notification_url, sensor.command_url)

        manager.reset_network(soft=True)

        assert manager.sensors == {sensor.sensor_uuid: sensor}
        assert sensor.state is SensorState.BOUND
        assert sensor.data_sequence == 2
        new_urls = (sensor.data_url, sensor.notification_url, sensor.command_url)
        assert not set(old_urls) & set(new_urls)
        assert [e[0] for e in announcer.events] == ["attach", "detach", "attach"]

    def test_hard_reset_rescans(self, config, announcer):
        rescans = []
        manager = NdsiManager("test-host", config=config, announcer=announcer, on_rescan=lambda: rescans.append(1))
        try:
            sensor = DummySensor(manager)
            manager.add_sensor(sensor)
            sensor.send_frame(0, 0.0, 0, b"a")

            manager.reset_network(soft=False)

            assert manager.sensors == {}
            assert sensor.state is SensorState.CLOSED
            assert sensor.data_sequence == 0
            assert rescans == [1]
            assert announcer.events[-1] == ("detach", sensor.sensor_uuid)
        finally:
            manager.stop()

    def test_same_listen_address_is_noop(self, manager, announcer):
        sensor = DummySensor(manager)
        manager.add_sensor(sensor)
        url = sensor.data_url

        manager.set_listen_address("127.0.0.1")

        assert sensor.data_url == url
        assert len(announcer.events) == 1

    def test_failed_rebind_raises(self, manager):
        sensor = DummySensor(manager)
        manager.add_sensor(sensor)
        url = sensor.data_url

        with pytest.raises(BindError):
            manager.set_listen_address("192.0.2.1")

        # The sensor keeps serving on its old sockets
        assert sensor.state is SensorState.BOUND
        assert sensor.data_url == url


class TestServiceLoop:
    def test_bind_times_out_while_loop_is_busy(self, announcer):
        config = BridgeConfig(listen_address="127.0.0.1", bind_timeout=0.2, idle_wait=0.01)
        manager = NdsiManager("test-host", config=config, announcer=announcer)
        slow = SlowSensor(manager)
        try:
            manager.add_sensor(slow)
            manager.start()
            slow.frames.append(b"x")
            manager.notify_sensor_ready()
            assert slow.entered.wait(2.0)

            other = DummySensor(manager, "other-1")
            with pytest.raises(BindTimeoutError):
                manager.add_sensor(other)
            assert other.state is SensorState.CLOSED

            slow.release.set()
            assert wait_for(lambda: slow.data_sequence == 1)
            assert other.sensor_uuid not in manager.sensors
        finally:
            slow.release.set()
            manager.stop()

    def test_client_receives_frames_and_sends_commands(self, manager):
        manager.start()
        sensor = DummySensor(manager)
        manager.add_sensor(sensor)

        client = NdsiClient(sensor.attach_descriptor(), timeout_ms=200, decompress=False)
        assert client.connect()
        try:
            # Subscriptions take a moment to propagate; keep publishing until one lands
            received = None
            for _ in range(25):
                sensor.frames.append(b"hello")
                manager.notify_sensor_ready()
                received = client.get_frame()
                if received is not None:
                    break
            assert received is not None
            header, payload = received
            assert payload == b"hello"
            assert (header.width, header.height) == (4, 2)

            client.set_control_value("exposure_time", 42)
            assert wait_for(lambda: sensor.setter_calls == [42])

            update = None
            for _ in range(25):
                client.refresh_controls()
                update = client.get_notification()
                if update is not None:
                    break
            assert update is not None
            assert update["control_id"] == "exposure_time"
            assert update["changes"]["value"] == 42
        finally:
            client.disconnect()


class TestZmqAnnouncer:
    def test_publishes_attach_and_detach(self):
        context = zmq.Context()
        announcer = ZmqAnnouncer("tcp://127.0.0.1:*", "rig-1", context=context)
        sub = context.socket(zmq.SUB)
        sub.setsockopt(zmq.LINGER, 0)
        sub.setsockopt(zmq.RCVTIMEO, 200)
        sub.setsockopt(zmq.SUBSCRIBE, b"")
        sub.connect(announcer._socket.getsockopt_string(zmq.LAST_ENDPOINT))
        try:
            descriptor = {"uuid": "u-1", "name": "cam"}
            message = None
            for _ in range(25):
                announcer.attach(descriptor)
                try:
                    message = sub.recv_multipart()
                    break
                except zmq.Again:
                    continue
            assert message is not None
            topic, body = message
            assert topic == b"attach"
            assert json.loads(body) == {"uuid": "u-1", "name": "cam", "host_name": "rig-1"}

            # Drain repeated attaches before checking the detach
            while True:
                announcer.detach("u-1")
                topic, body = sub.recv_multipart()
                if topic == b"detach":
                    break
            assert json.loads(body) == {"uuid": "u-1", "host_name": "rig-1"}
        finally:
            sub.close()
            announcer.close()
            context.term()


class TestAnnouncerInterface:
    def test_interface_is_abstract(self):
        with pytest.raises(TypeError):
            SensorAnnouncer()

    def test_subclass_must_implement_detach(self):
        class AttachOnly(SensorAnnouncer):
            def attach(self, descriptor):
                pass

        with pytest.raises(TypeError):
            AttachOnly()

    def test_logging_announcer(self, caplog):
        announcer = LoggingAnnouncer()
        with caplog.at_level(logging.INFO):
            announcer.attach({"uuid": "u-1"})
            announcer.detach("u-1")
        assert "Sensor attached" in caplog.text
        assert "Sensor detached: u-1" in caplog.text
