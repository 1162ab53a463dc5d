"""Tests for the BLE sensor source (no radio required)."""

import asyncio
import threading

import pytest

from vehicle_sensor_pipeline import ble_source
from vehicle_sensor_pipeline.ble_source import (
    BleSensorSource,
    ImuRow,
    XiaoImuLink,
    _create_notification_handler,
    _parse_line_from_buffer,
    create_ble_sources,
)
from vehicle_sensor_pipeline.models import SensorType
from vehicle_sensor_pipeline.sources import SensorSubscriptionError


def row(millis, ax=0.0, gz=0.0):
    return ImuRow(millis=millis, ax=ax, ay=0.0, az=1.0, gx=0.0, gy=0.0, gz=gz, tempC=25.0, audioRMS=-1.0)


class FakeLink:
    def __init__(self, available=True):
        self.listeners = {}
        self.available = available
        self._next = 0

    def acquire(self, listener):
        self._next += 1
        self.listeners[self._next] = listener
        return self._next

    def release(self, listener_id):
        self.listeners.pop(listener_id, None)

    async def check_available(self):
        return self.available

    def push(self, imu_row):
        for listener in list(self.listeners.values()):
            listener(imu_row)


class TestImuRow:
    def test_parse_csv(self):
        parsed = ImuRow.parse_csv("1234, 0.01,-0.02,0.98, 1.5,2.5,-3.5, 25.10, 120.0")
        assert parsed.millis == 1234
        assert parsed.az == pytest.approx(0.98)
        assert parsed.gz == pytest.approx(-3.5)

    @pytest.mark.parametrize("line", ["1,2,3", "a,0,0,0,0,0,0,0,0", "1,0,0,0,0,0,0,0,0,0"])
    def test_parse_csv_rejects_bad_lines(self, line):
        with pytest.raises(ValueError):
            ImuRow.parse_csv(line)

    def test_channels(self):
        r = ImuRow.parse_csv("1,0.1,0.2,0.3,4,5,6,25,0")
        assert r.channel(SensorType.ACCELEROMETER) == {"x": 0.1, "y": 0.2, "z": 0.3}
        assert r.channel(SensorType.GYROSCOPE) == {"x": 4.0, "y": 5.0, "z": 6.0}
        with pytest.raises(ValueError):
            r.channel(SensorType.MAGNETOMETER)


class TestLineAssembly:
    def test_fragments_are_joined(self):
        buffer = bytearray(b"12,0.1,0.2")
        assert _parse_line_from_buffer(buffer) is None
        buffer.extend(b",0.3\r\nnext")
        assert _parse_line_from_buffer(buffer) == "12,0.1,0.2,0.3"
        assert buffer == bytearray(b"next")

    def test_noise_and_alternate_delimiters(self):
        buffer = bytearray(b" , ,\x00abc\x1e")
        assert _parse_line_from_buffer(buffer) is None
        assert _parse_line_from_buffer(buffer) == "abc"
        assert buffer == bytearray()

    def test_handler_queues_lines_after_noise(self):
        queue = asyncio.Queue()
        handle = _create_notification_handler(queue, bytearray())
        handle(bytearray(b",,\n1,0,0,1,0,0,0,25,0\n2,0,0,1"))
        assert queue.qsize() == 1
        assert queue.get_nowait().startswith("1,")

    def test_oversized_buffer_is_trimmed(self):
        buffer = bytearray(b"x" * (ble_source.MAX_LINE_BUFFER + 10))
        assert _parse_line_from_buffer(buffer) is None
        assert len(buffer) == ble_source.MAX_LINE_BUFFER


class TestBleSensorSource:
    def test_decimates_on_device_time(self):
        link = FakeLink()
        source = BleSensorSource(link, SensorType.ACCELEROMETER, update_interval=100)
        received = []
        source.add_listener(received.append)

        for millis in (0, 40, 80, 120, 160, 200, 240):
            link.push(row(millis, ax=millis / 1000))

        assert [r["x"] for r in received] == [0.0, 0.12, 0.24]

    def test_zero_interval_pauses(self):
        link = FakeLink()
        source = BleSensorSource(link, SensorType.GYROSCOPE)
        received = []
        source.add_listener(received.append)
        source.set_update_interval(0)
        link.push(row(0))
        assert received == []

    def test_device_reboot_forwards_immediately(self):
        link = FakeLink()
        source = BleSensorSource(link, SensorType.GYROSCOPE, update_interval=100)
        received = []
        source.add_listener(received.append)
        link.push(row(5000, gz=1.0))
        link.push(row(10, gz=2.0))
        assert [r["z"] for r in received] == [1.0, 2.0]

    def test_remove_releases_link(self):
        link = FakeLink()
        subscription = BleSensorSource(link, SensorType.ACCELEROMETER).add_listener(print)
        subscription.remove()
        subscription.remove()
        assert link.listeners == {}

    def test_magnetometer_is_unavailable(self):
        source = create_ble_sources(FakeLink())[SensorType.MAGNETOMETER]
        with pytest.raises(SensorSubscriptionError):
            source.add_listener(print)
        assert asyncio.run(source.is_available()) is False

    @pytest.mark.asyncio
    async def test_availability_uses_link_check(self):
        assert await BleSensorSource(FakeLink(), SensorType.ACCELEROMETER).is_available()
        assert not await BleSensorSource(FakeLink(available=False), SensorType.GYROSCOPE).is_available()


class TestXiaoImuLink:
    def test_rows_fan_out_until_last_release(self):
        started = []

        async def fake_stream():
            started.append(True)
            millis = 0
            while True:
                yield row(millis)
                millis += 10
                await asyncio.sleep(0.001)

        link = XiaoImuLink(stream_factory=fake_stream)
        got_a, got_b = threading.Event(), threading.Event()
        id_a = link.acquire(lambda r: got_a.set())
        id_b = link.acquire(lambda r: got_b.set())

        assert got_a.wait(2.0) and got_b.wait(2.0)
        assert started == [True]

        link.release(id_a)
        assert link.is_streaming
        link.release(id_b)
        assert not link.is_streaming
        assert link.rows_received > 0

    def test_stream_error_is_recorded(self):
        async def failing_stream():
            raise RuntimeError("Target device not found.")
            yield  # pragma: no cover

        link = XiaoImuLink(stream_factory=failing_stream)
        link_id = link.acquire(print)
        link._thread.join(2.0)

        assert isinstance(link.last_error, RuntimeError)
        link.release(link_id)
