"""SensorSource implementation for a XIAO nRF52840 Sense streaming over BLE.

The device firmware sends one CSV line per IMU sample over the Nordic UART
Service (NUS):

    millis,ax,ay,az,gx,gy,gz,tempC,audioRMS

A single BLE connection therefore carries both accelerometer and gyroscope
data. XiaoImuLink owns that connection on a background thread running its own
asyncio event loop and fans every parsed row out to the per-sensor channels.
BleSensorSource exposes one channel as a regular SensorSource, so the
acquisition layer cannot tell it apart from any other source.

The board has no magnetometer; that channel reports itself unavailable and
refuses subscriptions.

Requirements:
- bleak: Cross-platform BLE library for device communication
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .models import SensorType
from .sources import RawSampleCallback, SensorSource, SensorSubscriptionError, Subscription

logger = logging.getLogger(__name__)

# Nordic UART Service (NUS) UUID constants
NUS_SERVICE = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_CHAR = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # Notify (device to client)

DEVICE_NAME = "XIAO Sense IMU"

# Bytes kept while waiting for a line delimiter
MAX_LINE_BUFFER = 64 * 1024

_LINE_DELIMITERS = (
    (b"\n", "LF"),
    (b"\r", "CR"),
    (b"\x00", "NUL"),
    (b"\x1e", "RS"),
    (b"\x1f", "US"),
    (b"\x1d", "GS"),
    (b"\x03", "ETX"),
    (b"\x04", "EOT"),
)


@dataclass(frozen=True)
class ImuRow:
    """One CSV line from the device.

    Attributes:
        millis: Device uptime in milliseconds when the sample was taken.
        ax: Accelerometer X-axis (g).
        ay: Accelerometer Y-axis (g).
        az: Accelerometer Z-axis (g).
        gx: Gyroscope X-axis (deg/s).
        gy: Gyroscope Y-axis (deg/s).
        gz: Gyroscope Z-axis (deg/s).
        tempC: IMU die temperature in Celsius.
        audioRMS: RMS of a 10 ms audio window, -1 when unavailable.
    """

    millis: int
    ax: float
    ay: float
    az: float
    gx: float
    gy: float
    gz: float
    tempC: float
    audioRMS: float

    @staticmethod
    def parse_csv(line: str) -> "ImuRow":
        """Parse "millis,ax,ay,az,gx,gy,gz,tempC,audioRMS".

        Whitespace around fields is ignored.

        Raises:
            ValueError: If the field count is not 9 or a field is not numeric.
        """
        parts = [p.strip() for p in line.split(",")]
        if len(parts) != 9:
            raise ValueError(f"Unexpected CSV fields count: {len(parts)} in '{line}'")

        return ImuRow(
            millis=int(parts[0]),
            ax=float(parts[1]),
            ay=float(parts[2]),
            az=float(parts[3]),
            gx=float(parts[4]),
            gy=float(parts[5]),
            gz=float(parts[6]),
            tempC=float(parts[7]),
            audioRMS=float(parts[8]),
        )

    def channel(self, sensor_type: SensorType) -> dict[str, float]:
        """Raw x/y/z sample for one sensor carried by this row.

        Raises:
            ValueError: For a sensor the device does not have.
        """
        sensor_type = SensorType(sensor_type)
        if sensor_type is SensorType.ACCELEROMETER:
            return {"x": self.ax, "y": self.ay, "z": self.az}
        if sensor_type is SensorType.GYROSCOPE:
            return {"x": self.gx, "y": self.gy, "z": self.gz}
        raise ValueError(f"{DEVICE_NAME} has no {sensor_type.value}")


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------


async def _scan_ble_devices(
    timeout: float,
) -> dict[str, tuple[BLEDevice, AdvertisementData]]:
    """Scan for BLE devices, returning {address: (device, advertisement)}.

    Raises:
        RuntimeError: If the BLE scanner cannot be started.
    """
    try:
        # Bleak 0.22+ only exposes advertisement data with return_adv=True
        devices_adv = await BleakScanner.discover(timeout=timeout, return_adv=True)
        logger.debug("Scan completed: %d devices found", len(devices_adv))
        return devices_adv
    except BleakError as e:
        raise RuntimeError(
            "BLE scanner initialization failed. Please verify:\n"
            "- Bluetooth is enabled and the adapter is present\n"
            "- Location services are enabled (required for BLE scanning on some platforms)\n"
            "- The process is not running inside a VM or container without BLE access\n"
        ) from e


def _match_device(
    dev: BLEDevice, adv: AdvertisementData, device_name: str, service_uuid: str
) -> bool:
    """Name match first, advertised service UUID as the fallback."""
    logger.debug(
        "Device discovered: addr=%s name=%s rssi=%s uuids=%s",
        getattr(dev, "address", "?"),
        getattr(dev, "name", None),
        getattr(adv, "rssi", None),
        getattr(adv, "service_uuids", None),
    )

    if dev.name == device_name:
        logger.info("Device selected by name match: %s (%s)", dev.name, dev.address)
        return True

    uuids: Iterable[str] = adv.service_uuids or []
    if any(u.lower() == service_uuid.lower() for u in uuids):
        logger.info("Device selected by service UUID match: %s (%s)", dev.name, dev.address)
        return True

    return False


async def find_device(
    *,
    device_name: str = DEVICE_NAME,
    service_uuid: str = NUS_SERVICE,
    address: Optional[str] = None,
    timeout: float = 10.0,
) -> Optional[BLEDevice]:
    """Return the first advertising device matching the criteria.

    Args:
        device_name: Advertised name to look for.
        service_uuid: Service UUID accepted when the name does not match.
        address: When given, only the device with this address matches.
        timeout: Scan duration in seconds.

    Returns:
        The matching BLEDevice, or None if nothing matched within timeout.
    """
    logger.info(
        "BLE device discovery started: name='%s' service='%s' timeout=%.1fs",
        device_name,
        service_uuid,
        timeout,
    )

    devices_adv = await _scan_ble_devices(timeout)

    for dev, adv in devices_adv.values():
        if address is not None:
            if dev.address.lower() == address.lower():
                return dev
            continue
        if _match_device(dev, adv, device_name, service_uuid):
            return dev
    return None


async def _get_device_address(
    address: Optional[str], device_name: str, service_uuid: str, scan_timeout: float
) -> str:
    if address is not None:
        return address

    dev = await find_device(device_name=device_name, service_uuid=service_uuid, timeout=scan_timeout)
    if not dev:
        raise RuntimeError(
            "Target device not found. Please check scan conditions and device proximity."
        )

    logger.info("Connection target address: %s (name=%s)", dev.address, getattr(dev, "name", None))
    return dev.address


# ----------------------------------------------------------------------
# Line assembly
# ----------------------------------------------------------------------


def _parse_line_from_buffer(buffer: bytearray) -> Optional[str]:
    """Extract one complete line from the notification buffer.

    Notifications arrive in arbitrary fragments. Any of the delimiters in
    _LINE_DELIMITERS ends a line, CRLF counting as one delimiter. The buffer
    is modified in place; it is trimmed from the front when it grows past
    MAX_LINE_BUFFER without a delimiter.

    Returns:
        The decoded line, or None if no complete line is available or the
        line was empty, comma-only or not valid UTF-8.
    """
    candidates = []
    for token, name in _LINE_DELIMITERS:
        idx = buffer.find(token)
        if idx != -1:
            candidates.append((idx, token, name))

    if not candidates:
        if len(buffer) > MAX_LINE_BUFFER:
            drop = len(buffer) - MAX_LINE_BUFFER
            logger.warning("Buffer overflow protection: trimming %d bytes", drop)
            del buffer[:drop]
        return None

    idx, token, delim_name = min(candidates, key=lambda t: t[0])
    consume = 1
    if token == b"\r" and buffer[idx + 1 : idx + 2] == b"\n":
        consume = 2
        delim_name = "CRLF"

    line = bytes(buffer[:idx])
    del buffer[: idx + consume]

    try:
        text = line.decode("utf-8", errors="strict")
    except UnicodeDecodeError:
        logger.error("UTF-8 decode failed: %r", line)
        return None

    if text.replace(",", "").strip() == "":
        logger.debug("Skipping noise line: %r", text)
        return None

    logger.debug("Line completed (delimiter=%s): %s", delim_name, text)
    return text


def _create_notification_handler(
    queue: asyncio.Queue[Optional[str]],
    buffer: bytearray,
) -> Callable[[bytearray], None]:
    """Build the bleak notification callback feeding complete lines into queue."""

    def handle(data: bytearray) -> None:
        buffer.extend(data)
        # Noise lines also return None; keep going while lines are consumed
        while True:
            before = len(buffer)
            text = _parse_line_from_buffer(buffer)
            if text is not None:
                queue.put_nowait(text)
            elif len(buffer) == before:
                break

    return handle


async def _process_message_queue(
    queue: asyncio.Queue[Optional[str]],
    idle_timeout: Optional[float],
    disconnected: asyncio.Event,
    client: BleakClient,
) -> AsyncIterator[ImuRow]:
    """Yield parsed rows from queue until the connection is lost.

    Lines that fail to parse are logged and skipped. An idle timeout only
    ends the stream if the client is no longer connected.

    Raises:
        RuntimeError: When the connection is lost.
    """
    while True:
        if idle_timeout is not None:
            try:
                line = await asyncio.wait_for(queue.get(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                logger.warning("Receive timeout (%.1fs)", idle_timeout)
                if disconnected.is_set() or not client.is_connected:
                    raise RuntimeError("BLE connection lost.")
                continue
        else:
            line = await queue.get()

        if line is None:
            # Disconnection sentinel
            raise RuntimeError("BLE connection lost.")

        try:
            row = ImuRow.parse_csv(line)
        except ValueError as ex:
            logger.warning("CSV parsing failed: %s (error=%s)", line, ex)
            continue
        yield row


async def stream_rows(
    address: Optional[str] = None,
    *,
    device_name: str = DEVICE_NAME,
    service_uuid: str = NUS_SERVICE,
    tx_char_uuid: str = NUS_TX_CHAR,
    scan_timeout: float = 10.0,
    idle_timeout: Optional[float] = None,
) -> AsyncIterator[ImuRow]:
    """Connect to the device and yield IMU rows as they arrive.

    Args:
        address: Device address. Discovered by name/service when None.
        device_name: Advertised name used for discovery.
        service_uuid: Service UUID used as discovery fallback.
        tx_char_uuid: NUS TX characteristic to subscribe to.
        scan_timeout: Discovery duration in seconds.
        idle_timeout: Seconds without data before the connection is checked.

    Raises:
        RuntimeError: If the device is not found or the connection drops.

    Example:
        >>> async for row in stream_rows(idle_timeout=30.0):
        ...     print(row.ax, row.ay, row.az)
    """
    address = await _get_device_address(address, device_name, service_uuid, scan_timeout)

    buffer = bytearray()
    queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
    disconnected = asyncio.Event()

    def on_disconnect(_: BleakClient) -> None:
        logger.warning("BLE connection lost (callback)")
        disconnected.set()
        queue.put_nowait(None)

    logger.info("BLE connection starting: %s", address)
    async with BleakClient(address, disconnected_callback=on_disconnect) as client:
        if not client.is_connected:
            raise RuntimeError("BLE connection failed.")
        logger.info("BLE connection established: %s", address)

        handle = _create_notification_handler(queue, buffer)

        logger.info("Starting notification subscription: char=%s", tx_char_uuid)
        await client.start_notify(tx_char_uuid, lambda _, data: handle(data))

        try:
            async for row in _process_message_queue(queue, idle_timeout, disconnected, client):
                yield row
        finally:
            if client.is_connected:
                logger.info("Stopping notification subscription")
                await client.stop_notify(tx_char_uuid)


# ----------------------------------------------------------------------
# Shared connection and per-sensor sources
# ----------------------------------------------------------------------

RowListener = Callable[[ImuRow], None]
RowStreamFactory = Callable[[], AsyncIterator[ImuRow]]


class XiaoImuLink:
    """Shared BLE connection feeding several sensor channels.

    The connection is opened by the first acquire() and closed by the last
    release(). It runs on a daemon thread with a private asyncio event loop,
    so callers do not need an event loop of their own. Rows are delivered to
    listeners serially on that thread.

    Args:
        address: Device address, discovered when None.
        device_name: Advertised name used for discovery.
        scan_timeout: Discovery duration in seconds.
        idle_timeout: Seconds without data before the connection is checked.
        stream_factory: Returns the async row iterator to consume. Defaults to
            stream_rows() with the arguments above.
    """

    def __init__(
        self,
        address: Optional[str] = None,
        *,
        device_name: str = DEVICE_NAME,
        scan_timeout: float = 10.0,
        idle_timeout: Optional[float] = 30.0,
        stream_factory: Optional[RowStreamFactory] = None,
    ) -> None:
        self._address = address
        self._device_name = device_name
        self._scan_timeout = scan_timeout
        self._idle_timeout = idle_timeout
        self._stream_factory = stream_factory or self._open_stream

        self._lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._listeners: dict[int, RowListener] = {}
        self._next_id = 0

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._ready = threading.Event()

        self.rows_received = 0
        self.last_error: Optional[BaseException] = None

    def _open_stream(self) -> AsyncIterator[ImuRow]:
        return stream_rows(
            self._address,
            device_name=self._device_name,
            scan_timeout=self._scan_timeout,
            idle_timeout=self._idle_timeout,
        )

    @property
    def is_streaming(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def acquire(self, listener: RowListener) -> int:
        """Register listener, opening the connection if it is not running.

        Returns:
            Id to pass to release().
        """
        with self._lifecycle_lock:
            with self._lock:
                listener_id = self._next_id
                self._next_id += 1
                self._listeners[listener_id] = listener
            if not self.is_streaming:
                self._start()
        return listener_id

    def release(self, listener_id: int) -> None:
        """Unregister a listener, closing the connection after the last one."""
        with self._lifecycle_lock:
            with self._lock:
                self._listeners.pop(listener_id, None)
                remaining = len(self._listeners)
            if remaining == 0 and self._thread is not None:
                self._stop()

    async def check_available(self) -> bool:
        """Whether the device is streaming or can be found by a scan."""
        if self.is_streaming:
            return True
        try:
            dev = await find_device(
                device_name=self._device_name, address=self._address, timeout=self._scan_timeout
            )
        except RuntimeError as e:
            logger.error("BLE availability check failed: %s", e)
            return False
        return dev is not None

    def _start(self) -> None:
        self._ready.clear()
        self.last_error = None
        self._thread = threading.Thread(target=self._run_loop, name="XiaoImuLink", daemon=True)
        self._thread.start()
        logger.info("BLE link thread started")

    def _stop(self, timeout: float = 5.0) -> None:
        thread = self._thread
        self._thread = None
        if thread is None:
            return

        self._ready.wait(timeout)
        loop, task = self._loop, self._task
        if loop is not None and task is not None:
            try:
                loop.call_soon_threadsafe(task.cancel)
            except RuntimeError:
                # Loop already closed: the stream ended on its own
                pass

        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("BLE link thread did not stop within %.1fs", timeout)
        logger.info("BLE link thread stopped (%d rows received)", self.rows_received)

    def _run_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            self._task = loop.create_task(self._consume())
            self._ready.set()
            loop.run_until_complete(self._task)
        except asyncio.CancelledError:
            logger.debug("BLE stream cancelled")
        except Exception as e:
            self.last_error = e
            logger.error("BLE stream error: %s: %s", type(e).__name__, e)
        finally:
            self._ready.set()
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._loop = None
            self._task = None

    async def _consume(self) -> None:
        async for row in self._stream_factory():
            self.rows_received += 1
            with self._lock:
                listeners = list(self._listeners.values())
            for listener in listeners:
                try:
                    listener(row)
                except Exception:
                    logger.exception("Error in IMU row listener")


class BleSensorSource(SensorSource):
    """One sensor channel of a XiaoImuLink.

    The device streams at its own fixed rate. The requested update interval
    is honoured by decimation on device time: a row is forwarded only when at
    least interval ms of device uptime passed since the last forwarded row.
    An interval of 0 pauses the channel. A device reboot (millis going
    backwards) forwards the next row immediately.
    """

    def __init__(self, link: XiaoImuLink, sensor_type: SensorType, update_interval: int = 100) -> None:
        self.sensor_type = SensorType(sensor_type)
        self._link = link
        self._interval_ms = int(update_interval)
        self._lock = threading.Lock()

    @property
    def supported(self) -> bool:
        return self.sensor_type in (SensorType.ACCELEROMETER, SensorType.GYROSCOPE)

    @property
    def update_interval(self) -> int:
        with self._lock:
            return self._interval_ms

    def set_update_interval(self, milliseconds: int) -> None:
        with self._lock:
            self._interval_ms = max(0, int(milliseconds))

    async def is_available(self) -> bool:
        if not self.supported:
            return False
        return await self._link.check_available()

    def add_listener(self, callback: RawSampleCallback) -> Subscription:
        if not self.supported:
            raise SensorSubscriptionError(f"{DEVICE_NAME} has no {self.sensor_type.value}")

        sensor_type = self.sensor_type
        last_millis: Optional[int] = None

        def on_row(row: ImuRow) -> None:
            nonlocal last_millis
            interval = self.update_interval
            if interval <= 0:
                return
            if last_millis is not None and 0 <= row.millis - last_millis < interval:
                return
            last_millis = row.millis
            callback(row.channel(sensor_type))

        listener_id = self._link.acquire(on_row)
        return Subscription(
            lambda: self._link.release(listener_id), name=f"ble-{sensor_type.value}"
        )

    def __repr__(self) -> str:
        return f"<BleSensorSource({self.sensor_type.value}, interval={self.update_interval}ms)>"


def create_ble_sources(link: XiaoImuLink) -> dict[SensorType, SensorSource]:
    """One BleSensorSource per sensor type, all sharing link."""
    return {sensor: BleSensorSource(link, sensor) for sensor in SensorType}
