"""Persisted record shape and the local CSV recorder.

reading_to_record() flattens a StagedReading into the flat key/value shape
the export side consumes:

    {sensor, timestamp, x, y, z,
     raw_x, raw_y, raw_z, ..., processed_x, ...,
     raw_lateral, ..., processed_vertical,
     lateral, longitudinal, vertical}

timestamp and x/y/z always come from the best available stage.

Output follows a producer/consumer split so that sensor threads never wait
on file or terminal I/O:
- RecordBuffer: thread-safe circular buffer the pipeline appends to
- BufferDrainThread: polls the buffer and hands new records to a consumer
- CsvRecordStream: CSV rows on any text stream (stdout, a session file)
- RecordFileWriter and RecorderManager: session files with a .meta.json
  companion
"""

from __future__ import annotations

import csv
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TextIO

from .models import AXES, SensorType, Stage, StagedReading

logger = logging.getLogger(__name__)

Record = dict[str, Any]

# Vehicle-dynamics names and the sensor axis each one is read from
DOMAIN_AXES: dict[SensorType, tuple[tuple[str, str], ...]] = {
    SensorType.ACCELEROMETER: (("lateral", "y"), ("longitudinal", "x"), ("vertical", "z")),
    SensorType.GYROSCOPE: (("roll", "x"), ("pitch", "y"), ("yaw", "z")),
    SensorType.MAGNETOMETER: (),
}


def record_fieldnames(sensor_type: SensorType) -> list[str]:
    """Column order of records produced for sensor_type."""
    domain = DOMAIN_AXES[SensorType(sensor_type)]
    names = ["sensor", "timestamp", *AXES]
    for stage in Stage:
        names.extend(f"{stage.value}_{axis}" for axis in AXES)
        names.extend(f"{stage.value}_{name}" for name, _ in domain)
    names.extend(name for name, _ in domain)
    return names


def session_fieldnames() -> list[str]:
    """Union of every sensor's columns, first-seen order, plus error."""
    names: list[str] = []
    for sensor in SensorType:
        for name in record_fieldnames(sensor):
            if name not in names:
                names.append(name)
    names.append("error")
    return names


def reading_to_record(staged: StagedReading, sensor_type: SensorType) -> Record:
    """Flatten a staged reading into the persisted record shape.

    Args:
        staged: Output of SensorProcessor.
        sensor_type: Sensor the reading belongs to; selects the domain names.

    Returns:
        Record with only the populated stages present. Records of failed
        processing carry an "error" message next to the raw values.
    """
    sensor_type = SensorType(sensor_type)
    domain = DOMAIN_AXES[sensor_type]
    record: Record = {"sensor": sensor_type.value}

    selected = staged.best()
    if selected is not None:
        _, best = selected
        record["timestamp"] = best.timestamp
        for axis in AXES:
            record[axis] = getattr(best, axis)

    for stage in staged.populated():
        reading = staged.stage(stage)
        for axis in AXES:
            record[f"{stage.value}_{axis}"] = getattr(reading, axis)
        for name, axis in domain:
            record[f"{stage.value}_{name}"] = getattr(reading, axis)

    if selected is not None:
        for name, axis in domain:
            record[name] = getattr(selected[1], axis)

    if staged.error:
        record["error"] = staged.error_message or "processing error"
    return record


class RecordBuffer:
    """Thread-safe circular buffer of records with loss detection.

    Besides the bounded deque the buffer keeps a monotonic write index, so a
    reader that remembers the index it stopped at can tell whether records
    were pushed out of the buffer before it got to them. append() only takes
    the buffer lock, which makes it a cheap pipeline sink.

    Args:
        max_size: Capacity; the oldest records are dropped beyond it.
    """

    def __init__(self, max_size: int = 5000):
        self._max_size = max_size
        self._buffer: deque[Record] = deque(maxlen=max_size)
        self._lock = threading.Lock()
        self._write_index = 0  # Total records ever appended

    def append(self, record: Record) -> None:
        with self._lock:
            self._buffer.append(record)
            self._write_index += 1

    def get_since_index(self, last_index: int) -> tuple[list[Record], int, bool]:
        """Records appended after last_index.

        Returns:
            (records, next_index, dropped). dropped is True when some records
            after last_index were already evicted; records then holds all
            that is left.
        """
        with self._lock:
            oldest = self._write_index - len(self._buffer)
            if last_index < oldest:
                return list(self._buffer), self._write_index, True
            if last_index >= self._write_index:
                return [], self._write_index, False
            return list(self._buffer)[last_index - oldest:], self._write_index, False

    def clear(self) -> None:
        """Drop all records. Indexes handed out earlier become invalid."""
        with self._lock:
            self._buffer.clear()
            self._write_index = 0

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def current_write_index(self) -> int:
        with self._lock:
            return self._write_index


def _format_value(value: Any) -> Any:
    if isinstance(value, float):
        return f"{value:.6f}"
    return value


class CsvRecordStream:
    """Writes records as CSV rows to an open text stream.

    Columns are the union of every sensor's record fields; fields a record
    does not carry are left empty. Floats are written with six decimals.
    """

    def __init__(self, stream: TextIO, show_header: bool = True):
        self._stream = stream
        self._writer = csv.DictWriter(
            stream, fieldnames=session_fieldnames(), restval="", extrasaction="ignore"
        )
        if show_header:
            self._writer.writeheader()
            stream.flush()

    def write(self, records: Sequence[Record]) -> None:
        self._writer.writerows({k: _format_value(v) for k, v in r.items()} for r in records)
        self._stream.flush()


@dataclass
class SessionInfo:
    """Summary of a finished recording session."""

    session_id: str
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    total_samples: int
    file_path: Path
    file_size_bytes: int
    samples_per_sensor: dict[str, int]


class RecordFileWriter:
    """Session CSV file with per-sensor sample accounting.

    Rows are held back and written in blocks of buffer_size; close() writes
    the rest and a .meta.json companion with counts and rates per sensor.
    """

    def __init__(self, filepath: Path, buffer_size: int = 100, device_info: Optional[dict[str, str]] = None):
        self._filepath = Path(filepath)
        self._buffer_size = buffer_size
        self._device_info = device_info or {}
        self._pending: list[Record] = []
        self._file_handle: Optional[TextIO] = None
        self._stream: Optional[CsvRecordStream] = None
        self._per_sensor = {sensor.value: 0 for sensor in SensorType}
        self._start_time = datetime.now(timezone.utc)
        self._lock = threading.Lock()

    @property
    def filepath(self) -> Path:
        return self._filepath

    @property
    def samples_written(self) -> int:
        with self._lock:
            return sum(self._per_sensor.values())

    def open(self) -> None:
        """Create the file and write the header row."""
        try:
            self._filepath.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = open(self._filepath, "w", newline="", encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to open recording file {self._filepath}: {e}")
            raise
        self._stream = CsvRecordStream(self._file_handle)
        logger.info(f"Opened recording file: {self._filepath}")

    def append_records(self, records: Sequence[Record]) -> None:
        with self._lock:
            if self._stream is None:
                raise RuntimeError("File not open for writing")
            for record in records:
                sensor = record.get("sensor")
                if sensor in self._per_sensor:
                    self._per_sensor[sensor] += 1
            self._pending.extend(records)
            if len(self._pending) >= self._buffer_size:
                self._stream.write(self._pending)
                self._pending = []

    def close(self) -> SessionInfo:
        """Write what is left, close the file and write the metadata companion."""
        with self._lock:
            if self._stream is None or self._file_handle is None:
                raise RuntimeError("File not open")
            try:
                self._stream.write(self._pending)
                self._pending = []
            finally:
                self._file_handle.close()
                self._file_handle = None
                self._stream = None

            end_time = datetime.now(timezone.utc)
            info = SessionInfo(
                session_id=self._filepath.stem,
                start_time=self._start_time,
                end_time=end_time,
                duration_seconds=(end_time - self._start_time).total_seconds(),
                total_samples=sum(self._per_sensor.values()),
                file_path=self._filepath,
                file_size_bytes=self._filepath.stat().st_size,
                samples_per_sensor=dict(self._per_sensor),
            )
        self._write_metadata_file(info)
        logger.info(
            f"Closed recording: {info.total_samples} records, "
            f"{info.duration_seconds:.1f}s, {info.file_size_bytes} bytes"
        )
        return info

    def _write_metadata_file(self, info: SessionInfo) -> None:
        def rate(count: int) -> float:
            return count / info.duration_seconds if info.duration_seconds > 0 else 0.0

        metadata = {
            "session_id": info.session_id,
            "start_time": info.start_time.isoformat(),
            "end_time": info.end_time.isoformat(),
            "duration_seconds": info.duration_seconds,
            "total_samples": info.total_samples,
            "samples_per_sensor": info.samples_per_sensor,
            "sample_rate_hz_per_sensor": {k: rate(v) for k, v in info.samples_per_sensor.items()},
            "file_size_bytes": info.file_size_bytes,
            "device_info": self._device_info,
        }
        try:
            with open(self._filepath.with_suffix(".meta.json"), "w", encoding="utf-8") as f:
                json.dump(metadata, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write metadata file: {e}")


class BufferDrainThread(threading.Thread):
    """Hands records appended to a RecordBuffer to consume(), off the sensor threads.

    Only records appended after the thread is created are delivered. The
    buffer is polled every POLL_INTERVAL seconds; stop() drains once more so
    nothing appended before it is lost.
    """

    POLL_INTERVAL = 0.02

    def __init__(self, buffer: RecordBuffer, consume: Callable[[list[Record]], None], name: str = "BufferDrain"):
        super().__init__(daemon=True, name=name)
        self._buffer = buffer
        self._consume = consume
        self._last_read_index = buffer.current_write_index
        self._stop_event = threading.Event()
        self.error: Optional[Exception] = None
        self.dropped_events = 0

    def run(self) -> None:
        logger.info(f"{self.name} started")
        try:
            while True:
                stopping = self._stop_event.is_set()
                self._drain()
                if stopping:
                    break
                self._stop_event.wait(self.POLL_INTERVAL)
        except Exception as e:
            logger.error(f"Error in {self.name} loop: {e}")
            self.error = e
        finally:
            logger.info(f"{self.name} finished")

    def _drain(self) -> None:
        records, next_index, dropped = self._buffer.get_since_index(self._last_read_index)
        if dropped:
            self.dropped_events += 1
            logger.warning(f"{self.name}: records lost to buffer overflow")
        if records:
            self._consume(records)
        self._last_read_index = next_index

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning(f"{self.name} did not stop in {timeout}s")


class RecorderManager:
    """Starts and stops recording sessions over a RecordBuffer.

    Session files are laid out as <output_dir>/<YYYY-MM-DD>/<prefix>_<time>.csv
    with a .meta.json file next to each.
    """

    def __init__(self, buffer: RecordBuffer, output_dir: Path, device_info: Optional[dict[str, str]] = None):
        self._buffer = buffer
        self._output_dir = Path(output_dir)
        self._device_info = device_info
        self._worker: Optional[BufferDrainThread] = None
        self._file_writer: Optional[RecordFileWriter] = None
        self._lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._file_writer is not None

    def start_recording(self, prefix: Optional[str] = None) -> Path:
        """Open a new session file and start draining the buffer into it.

        Returns:
            Path of the session CSV file.

        Raises:
            RuntimeError: If a recording is already in progress.
        """
        with self._lock:
            if self._file_writer is not None:
                raise RuntimeError("Recording already in progress")

            now = datetime.now()
            filename = f"{prefix or 'sensor_data'}_{now.strftime('%Y%m%d_%H%M%S')}.csv"
            writer = RecordFileWriter(
                self._output_dir / now.strftime("%Y-%m-%d") / filename,
                device_info=self._device_info,
            )
            writer.open()
            worker = BufferDrainThread(self._buffer, writer.append_records, name="RecordingWorker")
            worker.start()

            self._file_writer = writer
            self._worker = worker
            logger.info(f"Started recording session: {writer.filepath.stem}")
            return writer.filepath

    def stop_recording(self) -> SessionInfo:
        """Stop the worker, close the file and return the session summary.

        Raises:
            RuntimeError: If no recording is in progress.
        """
        with self._lock:
            if self._file_writer is None:
                raise RuntimeError("No recording in progress")
            writer, worker = self._file_writer, self._worker
            self._file_writer = None
            self._worker = None

        if worker is not None:
            worker.stop()
            if worker.error:
                logger.error(f"Recording worker had error: {worker.error}")
        return writer.close()
